"""Tests for the upload and streaming recognizers."""

from __future__ import annotations

import json
import threading
import time
from queue import Empty, Queue
from typing import List, Optional
from unittest.mock import patch

import httpx
import websocket

from config import BackendSettings
from errors import (
    AUTH_FAILED,
    BACKEND_PROTOCOL_ERROR,
    CONNECTION_ERROR,
    EMPTY_AUDIO,
    POLLING_TIMEOUT,
    TranscriptionError,
)
from lfasr_client import LfasrClient
from models import (
    AudioBlob,
    AudioFrame,
    BackendStrategy,
    CaptureMode,
    RecognitionEvent,
    RecognitionKind,
)
from recognizer import (
    BatchUploadRecognizer,
    PollingUploadRecognizer,
    StreamingSocketRecognizer,
    build_recognizer,
    capture_mode_for,
)


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _make_frame(n_samples: int = 640) -> AudioFrame:
    return AudioFrame(pcm16_bytes=b"\x01\x00" * n_samples, sample_rate=16000, channels=1, timestamp_ms=0)


def _make_blob() -> AudioBlob:
    return AudioBlob(data=b"RIFF-fake-wav", mime_type="audio/wav", sample_rate=16000, duration_ms=1200)


def _wait_for_terminal(events: list, *, timeout: float = 3.0) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if any(e.kind in (RecognitionKind.FINAL.value, RecognitionKind.ERROR.value) for e in events):
            return
        time.sleep(0.02)


def _terminal(events: List[RecognitionEvent]) -> List[RecognitionEvent]:
    return [e for e in events if e.kind in (RecognitionKind.FINAL.value, RecognitionKind.ERROR.value)]


def _lfasr_handler(words: str, processing_polls: int = 1, uploads: Optional[list] = None):
    state = {"polls": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/upload"):
            if uploads is not None:
                uploads.append(request)
            return httpx.Response(200, json={"code": "000000", "content": {"orderId": "order-9"}})
        state["polls"] += 1
        if state["polls"] <= processing_polls:
            return httpx.Response(200, json={"code": "000000", "content": {"orderInfo": {"status": 3}}})
        result = json.dumps({"lattice2": [{"json_1best": {"st": {"rt": [{"ws": [{"cw": [{"w": words}]}]}]}}}]})
        return httpx.Response(
            200,
            json={"code": "000000", "content": {"orderInfo": {"status": 4}, "orderResult": result}},
        )

    return handler


def _lfasr_client(handler) -> LfasrClient:
    return LfasrClient("app", "secret", client=httpx.Client(transport=httpx.MockTransport(handler)))


# ---------------------------------------------------------------
# Polling upload
# ---------------------------------------------------------------

def test_polling_recognizer_emits_single_final() -> None:
    uploads: list = []
    recognizer = PollingUploadRecognizer(
        _lfasr_client(_lfasr_handler("早餐二十元", uploads=uploads)), poll_interval_s=0
    )
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    q.put(_make_blob())
    q.put(None)

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    recognizer.stop()

    assert len(events) == 1
    assert events[0].kind == RecognitionKind.FINAL.value
    assert events[0].text == "早餐二十元"
    assert uploads[0].content == b"RIFF-fake-wav"
    assert uploads[0].url.params["duration"] == "1200"


def test_polling_recognizer_wraps_frames_as_wav() -> None:
    uploads: list = []
    recognizer = PollingUploadRecognizer(
        _lfasr_client(_lfasr_handler("ok", uploads=uploads)), poll_interval_s=0
    )
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    for _ in range(25):
        q.put(_make_frame())
    q.put(None)

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    recognizer.stop()

    assert events[-1].text == "ok"
    body = uploads[0].content
    assert body[:4] == b"RIFF"
    assert len(body) == 44 + 25 * 640 * 2
    assert uploads[0].url.params["duration"] == "1000"


def test_no_audio_emits_empty_audio_error() -> None:
    recognizer = PollingUploadRecognizer(_lfasr_client(_lfasr_handler("unused")), poll_interval_s=0)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    q.put(None)

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    recognizer.stop()

    assert len(events) == 1
    assert events[0].kind == RecognitionKind.ERROR.value
    assert events[0].code == EMPTY_AUDIO


def test_polling_budget_exhaustion_emits_timeout() -> None:
    recognizer = PollingUploadRecognizer(
        _lfasr_client(_lfasr_handler("never", processing_polls=100)),
        poll_attempts=3,
        poll_interval_s=0,
    )
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    q.put(_make_blob())
    q.put(None)

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    recognizer.stop()

    assert len(_terminal(events)) == 1
    assert events[0].code == POLLING_TIMEOUT


def test_missing_credentials_fail_on_start() -> None:
    recognizer = PollingUploadRecognizer(_lfasr_client(_lfasr_handler("x")), credentials_ok=False)
    q: Queue = Queue()
    try:
        recognizer.start(q, lambda e: None)
    except TranscriptionError as exc:
        assert exc.code == AUTH_FAILED
    else:
        raise AssertionError("expected AUTH_FAILED")


def test_stop_before_sentinel_emits_nothing() -> None:
    recognizer = PollingUploadRecognizer(_lfasr_client(_lfasr_handler("x")), poll_interval_s=0)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    q.put(_make_blob())

    recognizer.start(q, events.append)
    time.sleep(0.1)
    recognizer.stop()
    q.put(None)
    time.sleep(0.3)

    assert events == []


def test_restart_after_stop_during_blocked_upload() -> None:
    upload_started = threading.Event()
    release_upload = threading.Event()
    uploads: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/upload"):
            uploads.append(request)
            if len(uploads) == 1:
                upload_started.set()
                release_upload.wait(timeout=5.0)
            return httpx.Response(200, json={"code": "000000", "content": {"orderId": f"order-{len(uploads)}"}})
        result = json.dumps({"lattice2": [{"json_1best": {"st": {"rt": [{"ws": [{"cw": [{"w": "第二次"}]}]}]}}}]})
        return httpx.Response(
            200,
            json={"code": "000000", "content": {"orderInfo": {"status": 4}, "orderResult": result}},
        )

    recognizer = PollingUploadRecognizer(_lfasr_client(handler), poll_interval_s=0)
    first_events: List[RecognitionEvent] = []
    first_queue: Queue = Queue()
    first_queue.put(_make_blob())
    first_queue.put(None)
    recognizer.start(first_queue, first_events.append)
    assert upload_started.wait(timeout=3.0)

    recognizer.stop()  # first worker is still stuck in the upload

    second_events: List[RecognitionEvent] = []
    second_queue: Queue = Queue()
    recognizer.start(second_queue, second_events.append)
    second_queue.put(_make_blob())
    second_queue.put(None)
    _wait_for_terminal(second_events)

    release_upload.set()
    time.sleep(0.3)
    recognizer.stop()

    assert [(e.kind, e.text) for e in second_events] == [(RecognitionKind.FINAL.value, "第二次")]
    assert first_events == []
    assert second_queue.empty()
    assert len(uploads) == 2


# ---------------------------------------------------------------
# Batch upload
# ---------------------------------------------------------------

@patch("recognizer.reencode_to_wav")
def test_batch_recognizer_reencodes_before_upload(mock_reencode) -> None:  # noqa: ANN001
    mock_reencode.return_value = b"RIFF-normalised"
    uploads: list = []
    recognizer = BatchUploadRecognizer(
        _lfasr_client(_lfasr_handler("午餐", uploads=uploads)),
        ffmpeg_path="/opt/ffmpeg",
        poll_interval_s=0,
    )
    events: List[RecognitionEvent] = []
    q: Queue = Queue()
    q.put(AudioBlob(data=b"webm-bytes", mime_type="audio/webm", sample_rate=48000, duration_ms=900))
    q.put(None)

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    recognizer.stop()

    assert events[-1].text == "午餐"
    assert mock_reencode.call_args.kwargs["ffmpeg_path"] == "/opt/ffmpeg"
    assert uploads[0].content == b"RIFF-normalised"
    assert uploads[0].url.params["fileName"].endswith(".wav")


# ---------------------------------------------------------------
# Streaming socket
# ---------------------------------------------------------------

class _FakeSocket:
    """Answers with scripted frames once the client sends its last frame."""

    def __init__(self, script: List[dict], on_first: Optional[List[dict]] = None) -> None:
        self.sent: List[dict] = []
        self.closed = 0
        self.timeout: Optional[float] = None
        self._script = script
        self._on_first = on_first or []
        self._incoming: Queue = Queue()

    def settimeout(self, timeout: float) -> None:
        self.timeout = timeout

    def send(self, payload: str) -> None:
        message = json.loads(payload)
        self.sent.append(message)
        status = message["data"]["status"]
        if status == 0:
            for frame in self._on_first:
                self._incoming.put(json.dumps(frame))
        if status == 2:
            for frame in self._script:
                self._incoming.put(frame if isinstance(frame, str) else json.dumps(frame))

    def recv(self) -> str:
        try:
            return self._incoming.get(timeout=0.05)
        except Empty:
            raise websocket.WebSocketTimeoutException("timed out")

    def close(self) -> None:
        self.closed += 1


def _result(words: str, pgs: Optional[str] = None, status: int = 1) -> dict:
    result = {"ws": [{"cw": [{"w": words}]}]}
    if pgs:
        result["pgs"] = pgs
    return {"code": 0, "sid": "iat000", "data": {"status": status, "result": result}}


def _streaming(sock: _FakeSocket, **kwargs) -> StreamingSocketRecognizer:
    urls = []

    def connect(url, timeout):  # noqa: ANN001
        urls.append(url)
        return sock

    recognizer = StreamingSocketRecognizer("app", "key", "secret", connect=connect, **kwargs)
    recognizer.urls = urls
    return recognizer


def test_streaming_sends_first_audio_and_last_frames() -> None:
    sock = _FakeSocket([_result("好", status=2)])
    recognizer = _streaming(sock, vad_eos_ms=2500)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()

    recognizer.start(q, events.append)
    q.put(_make_frame())
    q.put(_make_frame())
    q.put(None)
    _wait_for_terminal(events)
    recognizer.stop()

    statuses = [m["data"]["status"] for m in sock.sent]
    assert statuses == [0, 1, 1, 2]
    first = sock.sent[0]
    assert first["common"] == {"app_id": "app"}
    assert first["business"]["domain"] == "iat"
    assert first["business"]["vad_eos"] == 2500
    assert first["business"]["dwa"] == "wpgs"
    assert first["data"]["format"] == "audio/L16;rate=16000"
    assert "audio" not in first["data"]
    assert sock.sent[1]["data"]["audio"] == _make_frame().to_base64()
    assert recognizer.urls[0].startswith("wss://iat-api.xfyun.cn/v2/iat?authorization=")
    assert sock.timeout == 1.0


def test_streaming_reconciles_partials_and_emits_final_once() -> None:
    sock = _FakeSocket(
        [
            _result("今天", pgs="apd"),
            _result("今天午饭", pgs="rpl"),
            _result("花了五十元", pgs="apd"),
            _result("。", pgs="apd", status=2),
            _result("ignored", pgs="apd", status=2),
        ]
    )
    recognizer = _streaming(sock)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()

    recognizer.start(q, events.append)
    q.put(_make_frame())
    q.put(None)
    _wait_for_terminal(events)
    time.sleep(0.1)
    recognizer.stop()

    partials = [e.text for e in events if e.kind == RecognitionKind.PARTIAL.value]
    assert partials == ["今天", "今天午饭", "今天午饭花了五十元", "今天午饭花了五十元。"]
    finals = [e for e in events if e.kind == RecognitionKind.FINAL.value]
    assert len(finals) == 1
    assert finals[0].text == "今天午饭花了五十元。"
    assert recognizer.sid == "iat000"
    assert sock.closed >= 1


def test_streaming_backend_error_code_is_protocol_error() -> None:
    sock = _FakeSocket([], on_first=[{"code": 10165, "message": "invalid handle", "sid": "iat001"}])
    recognizer = _streaming(sock)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()

    recognizer.start(q, events.append)
    _wait_for_terminal(events)
    q.put(None)
    recognizer.stop()

    assert len(_terminal(events)) == 1
    assert events[0].kind == RecognitionKind.ERROR.value
    assert events[0].code == BACKEND_PROTOCOL_ERROR
    assert "10165" in events[0].message


def test_streaming_invalid_frame_is_protocol_error() -> None:
    sock = _FakeSocket(["not json at all"])
    recognizer = _streaming(sock)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()

    recognizer.start(q, events.append)
    q.put(None)
    _wait_for_terminal(events)
    recognizer.stop()

    assert [e.code for e in _terminal(events)] == [BACKEND_PROTOCOL_ERROR]


def test_streaming_connect_failure_raises_connection_error() -> None:
    def connect(url, timeout):  # noqa: ANN001
        raise ConnectionRefusedError("refused")

    recognizer = StreamingSocketRecognizer("app", "key", "secret", connect=connect)
    try:
        recognizer.start(Queue(), lambda e: None)
    except TranscriptionError as exc:
        assert exc.code == CONNECTION_ERROR
        assert exc.retryable is True
    else:
        raise AssertionError("expected CONNECTION_ERROR")


def test_streaming_missing_credentials_fail_before_connecting() -> None:
    calls = []
    recognizer = StreamingSocketRecognizer("app", "", "secret", connect=lambda *a, **k: calls.append(a))
    try:
        recognizer.start(Queue(), lambda e: None)
    except TranscriptionError as exc:
        assert exc.code == AUTH_FAILED
    else:
        raise AssertionError("expected AUTH_FAILED")
    assert calls == []


def test_streaming_stop_suppresses_late_events() -> None:
    sock = _FakeSocket([_result("late", status=2)])
    recognizer = _streaming(sock)
    events: List[RecognitionEvent] = []
    q: Queue = Queue()

    recognizer.start(q, events.append)
    recognizer.stop()
    q.put(None)
    time.sleep(0.3)

    assert events == []
    assert sock.closed == 1


def test_streaming_restart_uses_a_fresh_socket() -> None:
    sockets = [_FakeSocket([_result("旧", status=2)]), _FakeSocket([_result("新", status=2)])]
    recognizer = StreamingSocketRecognizer("app", "key", "secret", connect=lambda url, timeout: sockets.pop(0))
    first: Queue = Queue()
    first_events: List[RecognitionEvent] = []
    recognizer.start(first, first_events.append)
    recognizer.stop()

    second: Queue = Queue()
    second_events: List[RecognitionEvent] = []
    recognizer.start(second, second_events.append)
    first.put(None)
    second.put(_make_frame())
    second.put(None)
    _wait_for_terminal(second_events)
    recognizer.stop()

    assert first_events == []
    assert [e.text for e in _terminal(second_events)] == ["新"]


# ---------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------

def test_build_recognizer_picks_strategy() -> None:
    base = dict(app_id="a", api_secret="s", api_key="k")
    assert isinstance(
        build_recognizer(BackendSettings(strategy=BackendStrategy.BATCH_UPLOAD, **base)), BatchUploadRecognizer
    )
    polling = build_recognizer(BackendSettings(strategy=BackendStrategy.POLLING_UPLOAD, **base))
    assert type(polling) is PollingUploadRecognizer
    streaming = build_recognizer(BackendSettings(strategy=BackendStrategy.STREAMING_SOCKET, **base))
    assert isinstance(streaming, StreamingSocketRecognizer)


def test_capture_mode_follows_strategy() -> None:
    assert capture_mode_for(BackendStrategy.STREAMING_SOCKET) == CaptureMode.STREAM
    assert capture_mode_for(BackendStrategy.POLLING_UPLOAD) == CaptureMode.BLOB
    assert capture_mode_for(BackendStrategy.BATCH_UPLOAD) == CaptureMode.BLOB
