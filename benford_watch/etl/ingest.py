import asyncio
import os
import sys
from typing import Callable, Iterable, List, Optional

import requests

from ..config import get_settings
from ..exceptions import ProducerFailure, UnsupportedSourceError
from ..fraud_engine import analyze
from ..schemas import AnalysisMode, FitTest
from .extract import magnitudes_to_tokens, tokenize

TEXT_TYPES = {"text/plain"}
TEXT_EXTENSIONS = {"txt"}
IMAGE_TYPES = {"image/png", "image/jpeg", "image/jpg"}
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg"}
JPEG_TYPES = {"image/jpeg", "image/jpg"}
JPEG_EXTENSIONS = {"jpg", "jpeg"}

ProgressCallback = Callable[[float], None]


def classify_upload(filename: str, content_type: Optional[str] = None, mode=AnalysisMode.STRUCTURED) -> str:
    """Returns "text" or "image" for a submitted file, or raises UnsupportedSourceError."""
    extension = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""

    if content_type in TEXT_TYPES or extension in TEXT_EXTENSIONS:
        return "text"

    if content_type in IMAGE_TYPES or extension in IMAGE_EXTENSIONS:
        if mode == AnalysisMode.RAW and content_type not in JPEG_TYPES and extension not in JPEG_EXTENSIONS:
            raise UnsupportedSourceError("Raw image analysis requires a JPEG file.")
        return "image"

    raise UnsupportedSourceError("Please upload a valid .txt, .png, or .jpg file.")


class TextSource:
    """Numeric tokens from an in-memory block of text."""

    name = "text"
    reports_progress = False

    def __init__(self, text: str, mode: AnalysisMode = AnalysisMode.STRUCTURED):
        self.text = text
        self.mode = mode

    async def tokens(self, on_progress: Optional[ProgressCallback] = None) -> List[str]:
        return tokenize(self.text, self.mode)


class TextFileSource:
    """Reads a UTF-8 text file from disk."""

    reports_progress = False

    def __init__(self, path: str, mode: AnalysisMode = AnalysisMode.STRUCTURED):
        self.path = path
        self.mode = mode
        self.name = os.path.basename(path)

    def _read(self) -> str:
        try:
            with open(self.path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            raise ProducerFailure(self.name, f"Could not read file: {e}", e) from e

    async def tokens(self, on_progress: Optional[ProgressCallback] = None) -> List[str]:
        text = await asyncio.to_thread(self._read)
        return tokenize(text, self.mode)


class RemoteTextSource:
    """Downloads a text document over HTTP."""

    reports_progress = False

    def __init__(self, url: str, mode: AnalysisMode = AnalysisMode.STRUCTURED, timeout: Optional[float] = None):
        self.url = url
        self.mode = mode
        self.name = url
        self.timeout = timeout or get_settings().http_timeout

    def _fetch(self) -> str:
        try:
            resp = requests.get(self.url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProducerFailure(self.name, f"Download failed: {e}", e) from e
        if resp.status_code != 200:
            raise ProducerFailure(self.name, f"Download failed with HTTP {resp.status_code}")
        return resp.text

    async def tokens(self, on_progress: Optional[ProgressCallback] = None) -> List[str]:
        text = await asyncio.to_thread(self._fetch)
        return tokenize(text, self.mode)


class OcrSource:
    """
    Text recognized from an image by an injected OCR engine.

    ``recognizer(image_bytes, report)`` must return the recognized text and
    may call ``report(fraction)`` with values in 0..1 while it works. It runs
    in a worker thread; progress is handed back to the event loop thread.
    """

    name = "ocr"
    reports_progress = True

    def __init__(self, image: bytes, recognizer: Callable[[bytes, ProgressCallback], str],
                 mode: AnalysisMode = AnalysisMode.STRUCTURED):
        self.image = image
        self.recognizer = recognizer
        self.mode = mode

    async def tokens(self, on_progress: Optional[ProgressCallback] = None) -> List[str]:
        loop = asyncio.get_running_loop()

        def report(fraction: float):
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, fraction)

        try:
            text = await asyncio.to_thread(self.recognizer, self.image, report)
        except ProducerFailure:
            raise
        except Exception as e:
            raise ProducerFailure(self.name, f"Error processing image: {e}", e) from e
        return tokenize(text or "", self.mode)


class CoefficientSource:
    """
    Raw numeric stream such as decoded JPEG DCT coefficients.

    Either pass the values directly, or pass the JPEG bytes with a
    ``decoder(data)`` that returns them; the decoder runs in a worker thread.
    Zero coefficients carry no leading digit and are dropped; the rest are
    analyzed by magnitude.
    """

    mode = AnalysisMode.RAW
    reports_progress = False

    def __init__(self, values: Iterable[float] = (), decoder: Optional[Callable[[bytes], Iterable[float]]] = None,
                 data: bytes = b"", name: str = "coefficients"):
        self.values = list(values)
        self.decoder = decoder
        self.data = data
        self.name = name

    async def _decode(self) -> List[float]:
        try:
            return list(await asyncio.to_thread(self.decoder, self.data))
        except Exception as e:
            raise ProducerFailure(self.name, f"Unable to extract DCT coefficients: {e}", e) from e

    async def tokens(self, on_progress: Optional[ProgressCallback] = None) -> List[str]:
        values = self.values if self.decoder is None else await self._decode()
        return magnitudes_to_tokens(abs(v) for v in values if v != 0)


def run_pipeline(path: str, mode: AnalysisMode = AnalysisMode.STRUCTURED, strategy: Optional[FitTest] = None):
    """Analyzes a text file from the command line, printing progress as it goes."""

    class PrintSink:
        def __init__(self):
            self.last_decile = -1

        def on_progress(self, event):
            decile = int(event.percentage // 10)
            if decile != self.last_decile:
                self.last_decile = decile
                print(f"Progress: {event.percentage:.1f}% ({event.cursor}/{event.total_tokens})")

        def on_result(self, event):
            print("--- Analysis Complete ---")
            excluded = f" (excluding {event.invalid_count} invalid)" if event.invalid_count else ""
            print(f"Valid numbers: {event.total_valid}{excluded}")
            for row in event.table:
                print(f"  {row.digit}: {row.count:>6} {row.percent:6.2f}% (expected {row.expected_percent:.1f}%)")
            print(f"Verdict: {event.status.value}")
            print(event.message)

    print(f"--- Analyzing {path} ---")
    tokens = asyncio.run(TextFileSource(path, mode).tokens())
    print(f"Extracted {len(tokens)} tokens")
    sink = PrintSink()
    return asyncio.run(analyze(tokens, mode, strategy, progress_sink=sink, result_sink=sink))


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python -m benford_watch.etl.ingest FILE [structured|raw]")
        sys.exit(2)
    run_pipeline(sys.argv[1], AnalysisMode(sys.argv[2]) if len(sys.argv) > 2 else AnalysisMode.STRUCTURED)
