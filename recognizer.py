"""Transcription session adapters for the iFlytek speech APIs.

Three strategies share one contract: audio arrives on a queue (``None`` ends
it) and exactly one terminal event, ``final`` or ``error``, goes back through
``on_event``.

* ``BatchUploadRecognizer`` re-encodes the recording with ffmpeg, uploads it
  and polls for the result.
* ``PollingUploadRecognizer`` uploads the recording as captured and polls.
* ``StreamingSocketRecognizer`` pushes 40 ms frames over a websocket and
  reconciles progressive results while the user is still speaking.
"""

from __future__ import annotations

import json
import logging
import threading
from queue import Empty, Queue
from typing import Any, Callable, Dict, Optional

import httpx
import websocket

from audio_transcoder import TARGET_SAMPLE_RATE, pcm_to_wav
from config import BackendSettings
from errors import (
    AUTH_FAILED,
    BACKEND_PROTOCOL_ERROR,
    CONNECTION_ERROR,
    EMPTY_AUDIO,
    TranscriptionError,
)
from interfaces import AudioItem
from lfasr_client import LfasrClient, poll_for_result
from models import (
    AudioBlob,
    AudioFrame,
    BackendStrategy,
    CaptureMode,
    RecognitionEvent,
    RecognitionKind,
)
from reconciler import TranscriptReconciler, policy_for_tag
from reencode import reencode_to_wav
from signing import build_streaming_url

logger = logging.getLogger(__name__)

STATUS_FIRST = 0
STATUS_CONTINUE = 1
STATUS_LAST = 2

EventCallback = Callable[[RecognitionEvent], None]


class _Run:
    """State of one start()/stop() cycle.

    Worker threads receive their run as an argument and never look at the
    recognizer's current run, so a thread left over from a cancelled session
    cannot read the next session's queue or emit into its callback.
    """

    def __init__(self, audio_queue: Queue[AudioItem], on_event: EventCallback) -> None:
        self.audio_queue = audio_queue
        self.on_event = on_event
        self.stop_event = threading.Event()
        self.emit_lock = threading.Lock()
        self.terminal_sent = False


class _RecognizerBase:
    """Worker-thread plumbing shared by all strategies."""

    def __init__(self) -> None:
        self._thread: Optional[threading.Thread] = None
        self._run: Optional[_Run] = None

    def start(self, audio_queue: Queue[AudioItem], on_event: EventCallback) -> None:
        current = self._run
        if current is not None and not current.stop_event.is_set() and self._thread and self._thread.is_alive():
            return
        run = self._new_run(audio_queue, on_event)
        self._open(run)
        self._run = run
        self._thread = threading.Thread(target=self._worker, args=(run,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        run = self._run
        if run is None:
            return
        run.stop_event.set()
        self._close(run)
        _join(self._thread)

    def _new_run(self, audio_queue: Queue[AudioItem], on_event: EventCallback) -> _Run:
        return _Run(audio_queue, on_event)

    def _open(self, run: _Run) -> None:
        pass

    def _close(self, run: _Run) -> None:
        pass

    def _worker(self, run: _Run) -> None:
        raise NotImplementedError

    def _emit(self, run: _Run, event: RecognitionEvent) -> None:
        with run.emit_lock:
            if run.terminal_sent or run.stop_event.is_set():
                logger.debug("dropping %s event after session end", event.kind)
                return
            if event.kind in (RecognitionKind.FINAL.value, RecognitionKind.ERROR.value):
                run.terminal_sent = True
        run.on_event(event)

    def _emit_error(self, run: _Run, exc: BaseException) -> None:
        self._emit(run, self._to_error_event(exc))

    def _to_error_event(self, exc: BaseException) -> RecognitionEvent:
        """Map an exception to a standard error event."""
        if isinstance(exc, TranscriptionError):
            code, message, retryable = exc.code, exc.message, exc.retryable
        elif isinstance(exc, (httpx.TimeoutException, httpx.TransportError, OSError)):
            code, message, retryable = CONNECTION_ERROR, str(exc), True
        else:
            code, message, retryable = BACKEND_PROTOCOL_ERROR, str(exc), False
        return RecognitionEvent(
            kind=RecognitionKind.ERROR.value,
            code=code,
            message=message,
            retryable=retryable,
        )


def _join(thread: Optional[threading.Thread], timeout: float = 0.5) -> None:
    if thread is None or thread is threading.current_thread():
        return
    if thread.is_alive():
        thread.join(timeout=timeout)


class PollingUploadRecognizer(_RecognizerBase):
    """Upload the whole recording, then poll for the transcript."""

    def __init__(
        self,
        client: LfasrClient,
        language: str = "cn",
        poll_attempts: int = 20,
        poll_interval_s: float = 5.0,
        credentials_ok: bool = True,
    ) -> None:
        super().__init__()
        self._client = client
        self._language = language
        self._poll_attempts = poll_attempts
        self._poll_interval_s = poll_interval_s
        self._credentials_ok = credentials_ok
        self._upload_count = 0

    def _open(self, run: _Run) -> None:
        if not self._credentials_ok:
            raise TranscriptionError(AUTH_FAILED, "IFLYTEK_APPID / IFLYTEK_API_SECRET not configured")

    def _worker(self, run: _Run) -> None:
        blob = self._collect_blob(run)
        if run.stop_event.is_set():
            return
        if blob is None:
            self._emit_error(run, TranscriptionError(EMPTY_AUDIO))
            return
        try:
            text = self._transcribe(blob, run.stop_event)
        except Exception as exc:
            logger.error("transcription failed: %s", exc)
            self._emit_error(run, exc)
            return
        self._emit(run, RecognitionEvent(kind=RecognitionKind.FINAL.value, text=text))

    def _collect_blob(self, run: _Run) -> Optional[AudioBlob]:
        """Consume the queue until the sentinel; frames are wrapped as WAV."""
        pcm = bytearray()
        blob: Optional[AudioBlob] = None
        sample_rate = TARGET_SAMPLE_RATE
        channels = 1
        while not run.stop_event.is_set():
            try:
                item = run.audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if item is None:
                break
            if isinstance(item, AudioBlob):
                blob = item
            elif isinstance(item, AudioFrame):
                pcm.extend(item.pcm16_bytes)
                sample_rate = item.sample_rate
                channels = item.channels
        if blob is not None:
            return blob
        if not pcm:
            return None
        frames = len(pcm) // (2 * channels)
        return AudioBlob(
            data=pcm_to_wav(bytes(pcm), sample_rate, channels),
            mime_type="audio/wav",
            sample_rate=sample_rate,
            duration_ms=int(frames * 1000 / sample_rate),
        )

    def _prepare(self, blob: AudioBlob) -> AudioBlob:
        return blob

    def _transcribe(self, blob: AudioBlob, stop_event: threading.Event) -> str:
        audio = self._prepare(blob)
        self._upload_count += 1
        ext = audio.mime_type.split(";", 1)[0].split("/")[-1] or "wav"
        job = self._client.upload(
            audio.data,
            file_name=f"recording-{self._upload_count}.{ext}",
            duration_ms=audio.duration_ms,
            language=self._language,
        )
        if stop_event.is_set():
            logger.info("session stopped during upload, not polling order %s", job.job_id)
            return ""
        return poll_for_result(
            self._client,
            job,
            attempts=self._poll_attempts,
            interval_s=self._poll_interval_s,
            wait=stop_event.wait,
        )


class BatchUploadRecognizer(PollingUploadRecognizer):
    """Normalise the recording locally before uploading it."""

    def __init__(self, client: LfasrClient, ffmpeg_path: str = "ffmpeg", **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self._ffmpeg_path = ffmpeg_path

    def _prepare(self, blob: AudioBlob) -> AudioBlob:
        wav = reencode_to_wav(blob, ffmpeg_path=self._ffmpeg_path)
        return AudioBlob(
            data=wav,
            mime_type="audio/wav",
            sample_rate=TARGET_SAMPLE_RATE,
            duration_ms=blob.duration_ms,
        )


def _result_text(result: Dict[str, Any]) -> str:
    parts = []
    for ws in result.get("ws", []) or []:
        cw = ws.get("cw") or []
        if cw:
            parts.append(str(cw[0].get("w", "")))
    return "".join(parts)


class _SocketRun(_Run):
    def __init__(self, audio_queue: Queue[AudioItem], on_event: EventCallback) -> None:
        super().__init__(audio_queue, on_event)
        self.ws: Any = None
        self.ws_lock = threading.Lock()
        self.receiver: Optional[threading.Thread] = None
        self.reconciler = TranscriptReconciler()
        self.sid = ""


class StreamingSocketRecognizer(_RecognizerBase):
    """Dictation over a signed websocket with progressive results.

    The connection is opened in ``start()`` so an auth or network failure
    surfaces before recording begins.  Audio is sent from the worker thread,
    results are read on a separate receiver thread.
    """

    def __init__(
        self,
        app_id: str,
        api_key: str,
        api_secret: str,
        host: str = "iat-api.xfyun.cn",
        path: str = "/v2/iat",
        language: str = "zh_cn",
        accent: str = "mandarin",
        vad_eos_ms: int = 3000,
        connect_timeout_s: float = 10.0,
        recv_timeout_s: float = 1.0,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__()
        self._app_id = app_id
        self._api_key = api_key
        self._api_secret = api_secret
        self._host = host
        self._path = path
        self._language = language
        self._accent = accent
        self._vad_eos_ms = vad_eos_ms
        self._connect_timeout_s = connect_timeout_s
        self._recv_timeout_s = recv_timeout_s
        self._connect = connect or websocket.create_connection

    @property
    def audio_format(self) -> str:
        return f"audio/L16;rate={TARGET_SAMPLE_RATE}"

    @property
    def sid(self) -> str:
        """Backend session id of the latest run, for support requests."""
        run = self._run
        return run.sid if isinstance(run, _SocketRun) else ""

    def _new_run(self, audio_queue: Queue[AudioItem], on_event: EventCallback) -> _SocketRun:
        return _SocketRun(audio_queue, on_event)

    def _open(self, run: _SocketRun) -> None:
        if not (self._app_id and self._api_key and self._api_secret):
            raise TranscriptionError(AUTH_FAILED, "IFLYTEK_APPID / IFLYTEK_API_KEY / IFLYTEK_API_SECRET not configured")
        url = build_streaming_url(self._api_key, self._api_secret, self._host, self._path)
        try:
            ws = self._connect(url, timeout=self._connect_timeout_s)
        except (websocket.WebSocketException, OSError) as exc:
            raise TranscriptionError(CONNECTION_ERROR, f"connect failed: {exc}", retryable=True) from exc
        ws.settimeout(self._recv_timeout_s)
        run.ws = ws
        try:
            self._send(run, self._first_frame())
        except (websocket.WebSocketException, OSError) as exc:
            self._close(run)
            raise TranscriptionError(CONNECTION_ERROR, f"handshake failed: {exc}", retryable=True) from exc
        logger.info("streaming session connected to %s", self._host)
        run.receiver = threading.Thread(target=self._receive_loop, args=(run,), daemon=True)
        run.receiver.start()

    def stop(self) -> None:
        super().stop()
        run = self._run
        if isinstance(run, _SocketRun):
            _join(run.receiver)

    def _close(self, run: _SocketRun) -> None:
        with run.ws_lock:
            ws, run.ws = run.ws, None
        if ws is None:
            return
        try:
            ws.close()
        except (websocket.WebSocketException, OSError) as exc:
            logger.debug("error while closing websocket: %s", exc)

    def _first_frame(self) -> Dict[str, Any]:
        return {
            "common": {"app_id": self._app_id},
            "business": {
                "language": self._language,
                "domain": "iat",
                "accent": self._accent,
                "vad_eos": self._vad_eos_ms,
                "dwa": "wpgs",
            },
            "data": {"status": STATUS_FIRST, "format": self.audio_format, "encoding": "raw"},
        }

    def _audio_frame(self, frame: AudioFrame) -> Dict[str, Any]:
        return {
            "data": {
                "status": STATUS_CONTINUE,
                "format": self.audio_format,
                "encoding": "raw",
                "audio": frame.to_base64(),
            }
        }

    def _last_frame(self) -> Dict[str, Any]:
        return {"data": {"status": STATUS_LAST, "format": self.audio_format, "encoding": "raw", "audio": ""}}

    def _send(self, run: _SocketRun, message: Dict[str, Any]) -> None:
        ws = run.ws
        if ws is None:
            raise websocket.WebSocketConnectionClosedException("socket already closed")
        ws.send(json.dumps(message))

    def _worker(self, run: _SocketRun) -> None:
        """Send path: forward queued frames until the sentinel or stop."""
        while not run.stop_event.is_set():
            try:
                item = run.audio_queue.get(timeout=0.2)
            except Empty:
                continue
            try:
                if item is None:
                    self._send(run, self._last_frame())
                    return
                if isinstance(item, AudioFrame):
                    self._send(run, self._audio_frame(item))
                else:
                    logger.warning("streaming session ignores %s items", type(item).__name__)
            except (websocket.WebSocketException, OSError) as exc:
                if not run.stop_event.is_set():
                    logger.error("send failed: %s", exc)
                    self._emit_error(run, TranscriptionError(CONNECTION_ERROR, f"send failed: {exc}", retryable=True))
                return

    def _receive_loop(self, run: _SocketRun) -> None:
        while not run.stop_event.is_set():
            ws = run.ws
            if ws is None:
                return
            try:
                message = ws.recv()
            except websocket.WebSocketTimeoutException:
                continue
            except (websocket.WebSocketException, OSError) as exc:
                if not run.stop_event.is_set():
                    logger.error("connection lost: %s", exc)
                    self._emit_error(run, TranscriptionError(CONNECTION_ERROR, f"connection lost: {exc}", retryable=True))
                self._close(run)
                return
            if not message:
                continue
            if self._handle_message(run, message):
                return

    def _handle_message(self, run: _SocketRun, message: Any) -> bool:
        """Process one server frame; return True when the session is over."""
        try:
            payload = json.loads(message)
        except (TypeError, ValueError):
            payload = None
        if not isinstance(payload, dict):
            self._close(run)
            self._emit_error(run, TranscriptionError(BACKEND_PROTOCOL_ERROR, f"invalid frame: {str(message)[:80]}"))
            return True

        run.sid = payload.get("sid") or run.sid
        code = payload.get("code", 0)
        if code != 0:
            logger.error("backend error code=%s message=%s sid=%s", code, payload.get("message"), run.sid)
            self._close(run)
            self._emit_error(run, TranscriptionError(BACKEND_PROTOCOL_ERROR, f"{code}: {payload.get('message', '')}"))
            return True

        data = payload.get("data") or {}
        result = data.get("result") or {}
        if result:
            pgs = result.get("pgs", data.get("pgs"))
            transcript = run.reconciler.update(_result_text(result), policy_for_tag(pgs))
            self._emit(run, RecognitionEvent(kind=RecognitionKind.PARTIAL.value, text=transcript.text))

        if data.get("status") == STATUS_LAST:
            final = run.reconciler.finalize()
            logger.info("end of utterance, sid=%s", run.sid)
            self._close(run)
            self._emit(run, RecognitionEvent(kind=RecognitionKind.FINAL.value, text=final.text))
            return True
        return False


def capture_mode_for(strategy: BackendStrategy) -> CaptureMode:
    if strategy == BackendStrategy.STREAMING_SOCKET:
        return CaptureMode.STREAM
    return CaptureMode.BLOB


def build_recognizer(settings: BackendSettings, http_client: Optional[httpx.Client] = None) -> _RecognizerBase:
    """Pick the transcription strategy named in ``settings``."""
    strategy = BackendStrategy(settings.strategy)
    if strategy == BackendStrategy.STREAMING_SOCKET:
        language = "zh_cn" if settings.language == "cn" else settings.language
        return StreamingSocketRecognizer(
            app_id=settings.app_id,
            api_key=settings.api_key,
            api_secret=settings.api_secret,
            host=settings.iat_host,
            path=settings.iat_path,
            language=language,
            vad_eos_ms=settings.vad_eos_ms,
            connect_timeout_s=settings.connect_timeout_s,
        )

    client = LfasrClient(
        app_id=settings.app_id,
        api_secret=settings.api_secret,
        host=settings.lfasr_host,
        upload_timeout_s=settings.upload_timeout_s,
        poll_timeout_s=settings.poll_timeout_s,
        client=http_client,
    )
    kwargs = dict(
        language=settings.language,
        poll_attempts=settings.poll_attempts,
        poll_interval_s=settings.poll_interval_s,
        credentials_ok=bool(settings.app_id and settings.api_secret),
    )
    if strategy == BackendStrategy.BATCH_UPLOAD:
        return BatchUploadRecognizer(client, **kwargs)
    return PollingUploadRecognizer(client, **kwargs)
