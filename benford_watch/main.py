import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import get_settings
from .etl.ingest import CoefficientSource, OcrSource, RemoteTextSource, TextSource, classify_upload
from .exceptions import (
    BenfordWatchError,
    EmptySourceError,
    EngineUnavailableError,
    ProducerFailure,
    UnsupportedSourceError,
)
from .fraud_engine import AnalysisSession, CollectingSink
from .ml.benford import expected_table
from .schemas import (
    AnalysisMode,
    AnalysisResponse,
    CoefficientAnalysisRequest,
    FitTest,
    ProgressEvent,
    ResultEvent,
    SocketSubmission,
    TextAnalysisRequest,
    UrlAnalysisRequest,
)

settings = get_settings()

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Benford Watch API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# External collaborators for image uploads; deployments plug real engines in.
# recognizer(image_bytes, report) -> text
app.state.recognizer = None
# coefficient_decoder(jpeg_bytes) -> list of DCT coefficients
app.state.coefficient_decoder = None


def upload_source(data: bytes, filename: str, content_type: Optional[str], mode: AnalysisMode):
    """Picks the producer for an uploaded file body."""
    kind = classify_upload(filename, content_type, mode)

    if kind == "text":
        return TextSource(data.decode("utf-8", errors="replace"), mode)

    if mode == AnalysisMode.RAW:
        if app.state.coefficient_decoder is None:
            raise EngineUnavailableError("No coefficient decoder configured")
        return CoefficientSource(decoder=app.state.coefficient_decoder, data=data, name=filename)

    if app.state.recognizer is None:
        raise EngineUnavailableError("No OCR engine configured")
    return OcrSource(data, app.state.recognizer, mode)


async def _run(source, mode: AnalysisMode, strategy: Optional[FitTest]) -> AnalysisResponse:
    sink = CollectingSink()
    session = AnalysisSession(settings, progress_sink=sink, result_sink=sink)
    try:
        await session.submit_source(source, mode, strategy)
    except EmptySourceError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ProducerFailure as e:
        logger.warning(f"Producer failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    result = await session.wait()
    return AnalysisResponse(result=result, progress_events=len(sink.progress))


@app.get("/")
def read_root():
    return {
        "message": "Benford's Law leading-digit screening API",
        "modes": [m.value for m in AnalysisMode],
        "tests": [t.value for t in FitTest],
        "endpoints": {
            "/benford/expected": "Expected leading-digit distribution",
            "/analyze": "Analyze numbers found in a block of text",
            "/analyze/coefficients": "Analyze a raw coefficient stream",
            "/analyze/url": "Download a text document and analyze it",
            "/analyze/file": "Analyze an uploaded .txt, .png or .jpg body",
            "/ws/analyze": "Websocket with live progress; a new submission cancels the previous run",
        },
    }


@app.get("/benford/expected")
def get_expected_distribution():
    return expected_table().to_dict("records")


@app.post("/analyze", response_model=AnalysisResponse)
async def analyze_text(body: TextAnalysisRequest):
    """Extract numbers from text and test their leading digits"""
    return await _run(TextSource(body.text, body.mode), body.mode, body.strategy)


@app.post("/analyze/coefficients", response_model=AnalysisResponse)
async def analyze_coefficients(body: CoefficientAnalysisRequest):
    return await _run(CoefficientSource(body.values), AnalysisMode.RAW, body.strategy)


@app.post("/analyze/url", response_model=AnalysisResponse)
async def analyze_url(body: UrlAnalysisRequest):
    source = RemoteTextSource(body.url, body.mode, timeout=settings.http_timeout)
    return await _run(source, body.mode, body.strategy)


@app.post("/analyze/file", response_model=AnalysisResponse)
async def analyze_file(
    request: Request,
    filename: str = Query(...),
    mode: AnalysisMode = Query(AnalysisMode.STRUCTURED),
    strategy: Optional[FitTest] = Query(None),
):
    """Analyze an uploaded file sent as the raw request body"""
    content_type = request.headers.get("content-type")
    try:
        classify_upload(filename, content_type, mode)
    except UnsupportedSourceError as e:
        raise HTTPException(status_code=415, detail=str(e))

    data = await request.body()
    try:
        source = upload_source(data, filename, content_type, mode)
    except EngineUnavailableError as e:
        raise HTTPException(status_code=501, detail=str(e))
    return await _run(source, mode, strategy)


class SocketSink:
    """Streams run events to a websocket client."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def on_progress(self, event: ProgressEvent):
        await self.websocket.send_json({"type": "progress", **event.model_dump(mode="json")})

    async def on_result(self, event: ResultEvent):
        await self.websocket.send_json({"type": "result", **event.model_dump(mode="json")})


def socket_source(body: SocketSubmission):
    if body.kind == "url":
        return RemoteTextSource(body.url, body.mode, timeout=settings.http_timeout)
    if body.kind == "coefficients":
        return CoefficientSource(body.values)
    if body.kind == "image":
        return upload_source(body.image, body.filename, None, body.mode)
    return TextSource(body.text, body.mode)


async def _submit(websocket: WebSocket, session: AnalysisSession, source, body: SocketSubmission):
    mode = AnalysisMode.RAW if body.kind == "coefficients" else body.mode
    try:
        run = await session.submit_source(source, mode, body.strategy)
    except (EmptySourceError, ProducerFailure) as e:
        await websocket.send_json({"type": "error", "detail": str(e)})
        return
    if run is not None:
        logger.info(f"Websocket submission started run {run.run_id}")


@app.websocket("/ws/analyze")
async def analyze_socket(websocket: WebSocket):
    await websocket.accept()
    sink = SocketSink(websocket)
    session = AnalysisSession(settings, progress_sink=sink, result_sink=sink)
    pending = set()

    def settled(task: asyncio.Task):
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Websocket submission failed: {task.exception()!r}")

    try:
        while True:
            try:
                body = SocketSubmission.model_validate(await websocket.receive_json())
                source = socket_source(body)
            except (ValidationError, ValueError, BenfordWatchError) as e:
                await websocket.send_json({"type": "error", "detail": str(e)})
                continue
            # producers may be slow; keep reading so a newer submission can cancel
            task = asyncio.create_task(_submit(websocket, session, source, body))
            pending.add(task)
            task.add_done_callback(settled)
    except WebSocketDisconnect:
        logger.info("Websocket client disconnected")
    finally:
        session.cancel()
        for task in list(pending):
            task.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
