"""
HTTP and websocket tests for the FastAPI app. Downloads and the OCR engine
are mocked so tests run offline.
"""

import asyncio
import base64
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from tests.conftest import geometric_tokens, uniform_digit_tokens

BENFORD_TEXT = " ".join(geometric_tokens())
UNIFORM_TEXT = " ".join(uniform_digit_tokens())


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from benford_watch.main import app

    return TestClient(app)


@pytest.fixture
def app_state():
    from benford_watch.main import app

    yield app.state
    app.state.recognizer = None
    app.state.coefficient_decoder = None


def test_root_lists_endpoints(client):
    r = client.get("/")
    assert r.status_code == 200
    data = r.json()
    assert "/analyze" in data["endpoints"]
    assert data["modes"] == ["structured", "raw"]


def test_expected_distribution(client):
    r = client.get("/benford/expected")
    assert r.status_code == 200
    rows = r.json()
    assert len(rows) == 9
    assert rows[0]["digit"] == 1
    assert rows[0]["expected_percent"] == pytest.approx(30.1)


def test_analyze_consistent_text(client):
    r = client.post("/analyze", json={"text": BENFORD_TEXT})
    assert r.status_code == 200
    body = r.json()
    assert body["progress_events"] == 400
    result = body["result"]
    assert result["status"] == "consistent"
    assert result["verdict"]["strategy"] == "chi_squared"
    assert result["compliance"]["eligible"] is True
    assert sum(result["histogram"]) == 400


def test_analyze_anomalous_text(client):
    r = client.post("/analyze", json={"text": UNIFORM_TEXT})
    assert r.status_code == 200
    assert r.json()["result"]["status"] == "anomalous"


def test_analyze_small_sample_is_ineligible(client):
    r = client.post("/analyze", json={"text": "Value: 123.45 and -67"})
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["status"] == "ineligible"
    assert result["compliance"]["reason"] == "insufficient_sample"


def test_analyze_raw_mode(client):
    r = client.post("/analyze", json={"text": "12 17 3 0 abc", "mode": "raw"})
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["mode"] == "raw"
    assert result["verdict"]["strategy"] == "max_deviation"
    assert result["invalid_count"] == 2


def test_analyze_text_without_numbers(client):
    r = client.post("/analyze", json={"text": "nothing numeric here"})
    assert r.status_code == 422
    assert "No valid numbers" in r.json()["detail"]


def test_analyze_rejects_unknown_mode(client):
    r = client.post("/analyze", json={"text": "1 2 3", "mode": "fuzzy"})
    assert r.status_code == 422


def test_analyze_coefficients(client):
    r = client.post("/analyze/coefficients", json={"values": [0, -4, 12, 150, 0, 1.5]})
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["mode"] == "raw"
    assert result["total_valid"] == 4
    assert r.json()["progress_events"] == 4


def test_analyze_coefficients_all_zero(client):
    r = client.post("/analyze/coefficients", json={"values": [0, 0.0]})
    assert r.status_code == 422


@patch("benford_watch.etl.ingest.requests.get")
def test_analyze_url(mock_get, client):
    mock_get.return_value = MagicMock(status_code=200, text=BENFORD_TEXT)
    r = client.post("/analyze/url", json={"url": "https://example.org/data.txt"})
    assert r.status_code == 200
    assert r.json()["result"]["status"] == "consistent"


@patch("benford_watch.etl.ingest.requests.get")
def test_analyze_url_download_failure(mock_get, client):
    mock_get.side_effect = requests.Timeout("timed out")
    r = client.post("/analyze/url", json={"url": "https://example.org/data.txt"})
    assert r.status_code == 502
    assert "Download failed" in r.json()["detail"]


def test_analyze_file_text(client):
    r = client.post(
        "/analyze/file",
        params={"filename": "ledger.txt"},
        content=UNIFORM_TEXT.encode(),
        headers={"content-type": "text/plain"},
    )
    assert r.status_code == 200
    assert r.json()["result"]["status"] == "anomalous"


def test_analyze_file_unsupported_type(client):
    r = client.post("/analyze/file", params={"filename": "data.gif"}, content=b"GIF89a")
    assert r.status_code == 415


def test_analyze_file_raw_png_rejected(client):
    r = client.post(
        "/analyze/file",
        params={"filename": "scan.png", "mode": "raw"},
        content=b"\x89PNG",
        headers={"content-type": "image/png"},
    )
    assert r.status_code == 415
    assert "JPEG" in r.json()["detail"]


def test_analyze_file_image_without_ocr_engine(client, app_state):
    r = client.post(
        "/analyze/file",
        params={"filename": "scan.png"},
        content=b"\x89PNG",
        headers={"content-type": "image/png"},
    )
    assert r.status_code == 501


def test_analyze_file_image_with_ocr_engine(client, app_state):
    calls = []

    def recognizer(image, report):
        calls.append(image)
        report(1.0)
        return BENFORD_TEXT

    app_state.recognizer = recognizer
    r = client.post(
        "/analyze/file",
        params={"filename": "scan.png"},
        content=b"\x89PNG",
        headers={"content-type": "image/png"},
    )
    assert r.status_code == 200
    assert r.json()["result"]["status"] == "consistent"
    assert calls == [b"\x89PNG"]
    # one producer event from the recognizer, then one per token
    assert r.json()["progress_events"] == 401


def test_analyze_file_ocr_failure(client, app_state):
    def recognizer(image, report):
        raise RuntimeError("tesseract crashed")

    app_state.recognizer = recognizer
    r = client.post(
        "/analyze/file",
        params={"filename": "scan.png"},
        content=b"\x89PNG",
        headers={"content-type": "image/png"},
    )
    assert r.status_code == 502
    assert "tesseract crashed" in r.json()["detail"]


def test_analyze_file_jpeg_coefficients(client, app_state):
    app_state.coefficient_decoder = lambda data: [0, 3, -17, 240, 0, 1]
    r = client.post(
        "/analyze/file",
        params={"filename": "photo.jpg", "mode": "raw"},
        content=b"\xff\xd8\xff",
        headers={"content-type": "image/jpeg"},
    )
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["total_valid"] == 4
    assert result["verdict"]["strategy"] == "max_deviation"


def test_analyze_file_jpeg_decoder_failure(client, app_state):
    def decoder(data):
        raise ValueError("not a baseline JPEG")

    app_state.coefficient_decoder = decoder
    r = client.post(
        "/analyze/file",
        params={"filename": "photo.jpg", "mode": "raw"},
        content=b"\xff\xd8\xff",
        headers={"content-type": "image/jpeg"},
    )
    assert r.status_code == 502
    assert "Unable to extract DCT coefficients" in r.json()["detail"]


def test_slow_jpeg_decoder_keeps_event_loop_responsive(app_state):
    import httpx

    from benford_watch.main import app

    def slow_decoder(data):
        time.sleep(0.5)
        return [0, 3, -17, 240, 0, 1]

    app_state.coefficient_decoder = slow_decoder

    async def scenario():
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        tick = asyncio.create_task(ticker())
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            r = await http.post(
                "/analyze/file",
                params={"filename": "photo.jpg", "mode": "raw"},
                content=b"\xff\xd8\xff",
                headers={"content-type": "image/jpeg"},
            )
        done.set()
        await tick
        return r, gaps

    r, gaps = asyncio.run(scenario())
    assert r.status_code == 200
    assert r.json()["result"]["total_valid"] == 4
    assert max(gaps) < 0.1


def _receive_until_result(ws):
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["type"] in ("result", "error"):
            return messages


def test_websocket_streams_progress_then_result(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"text": UNIFORM_TEXT})
        messages = _receive_until_result(ws)

    progress = [m for m in messages if m["type"] == "progress"]
    result = messages[-1]
    assert len(progress) == 180
    assert progress[-1]["percentage"] == pytest.approx(100.0)
    assert result["type"] == "result"
    assert result["status"] == "anomalous"
    assert result["run_id"] == progress[0]["run_id"]


def test_websocket_reports_empty_submission(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"text": "no digits"})
        message = ws.receive_json()
    assert message["type"] == "error"
    assert "No valid numbers" in message["detail"]


def test_websocket_reports_invalid_payload(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"mode": "structured"})
        message = ws.receive_json()
    assert message["type"] == "error"


def test_websocket_answers_malformed_json(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_text("{not json")
        error = ws.receive_json()
        # the connection stays usable
        ws.send_json({"text": UNIFORM_TEXT})
        messages = _receive_until_result(ws)

    assert error["type"] == "error"
    assert messages[-1]["type"] == "result"


def test_websocket_image_reports_producer_then_run_progress(client, app_state):
    def recognizer(image, report):
        assert image == b"\x89PNG"
        report(0.5)
        report(1.0)
        return BENFORD_TEXT

    app_state.recognizer = recognizer
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({
            "kind": "image",
            "image": base64.b64encode(b"\x89PNG").decode(),
            "filename": "scan.png",
        })
        messages = _receive_until_result(ws)

    percentages = [m["percentage"] for m in messages if m["type"] == "progress"]
    assert percentages[:2] == [pytest.approx(25.0), pytest.approx(50.0)]
    assert percentages[2] > 50.0
    assert percentages == sorted(percentages)
    assert percentages[-1] == pytest.approx(100.0)
    assert len(percentages) == 402
    assert messages[-1]["status"] == "consistent"


def test_websocket_image_ocr_failure_is_reported(client, app_state):
    def recognizer(image, report):
        report(0.3)
        raise RuntimeError("tesseract crashed")

    app_state.recognizer = recognizer
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"kind": "image", "image": base64.b64encode(b"\x89PNG").decode()})
        messages = _receive_until_result(ws)

    assert messages[-1]["type"] == "error"
    assert "tesseract crashed" in messages[-1]["detail"]
    progress = [m for m in messages if m["type"] == "progress"]
    assert progress[-1]["percentage"] == 0.0


def test_websocket_image_without_engine(client, app_state):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"kind": "image", "image": base64.b64encode(b"\x89PNG").decode()})
        message = ws.receive_json()
    assert message["type"] == "error"
    assert "No OCR engine" in message["detail"]


def test_websocket_coefficients(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"kind": "coefficients", "values": [0, -4, 12, 150, 0, 1.5]})
        messages = _receive_until_result(ws)

    result = messages[-1]
    assert result["type"] == "result"
    assert result["mode"] == "raw"
    assert result["total_valid"] == 4


@patch("benford_watch.etl.ingest.requests.get")
def test_websocket_url(mock_get, client):
    mock_get.return_value = MagicMock(status_code=200, text=UNIFORM_TEXT)
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"kind": "url", "url": "https://example.org/data.txt"})
        messages = _receive_until_result(ws)

    assert messages[-1]["status"] == "anomalous"


def test_websocket_kind_requires_its_payload(client):
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_json({"kind": "url"})
        message = ws.receive_json()
    assert message["type"] == "error"
    assert "'url' is required" in message["detail"]
