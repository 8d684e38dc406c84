"""State-machine based session orchestration."""

from __future__ import annotations

import logging
import threading
from queue import Full, Queue
from typing import Any, Callable, Optional

from audio_transcoder import AudioTranscoder
from consumers import is_unrecognized
from errors import (
    BACKEND_PROTOCOL_ERROR,
    CANCELLED,
    CONNECTION_ERROR,
    DOWNSTREAM_SUBMIT_FAILED,
    TranscriptionError,
)
from interfaces import AudioCapture, AudioItem, TranscriptConsumer, TranscriptionSession
from models import (
    AudioBlob,
    BackendStrategy,
    CaptureMode,
    DeliveryResult,
    RecognitionEvent,
    RecognitionKind,
    RecordingSession,
    SessionState,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
PartialCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]


class SessionController:
    """Sequences capture, transcoding and transcription for one gesture.

    ``IDLE -> ACQUIRING -> RECORDING -> FINALIZING -> IDLE``.  Every exit
    from ACQUIRING, RECORDING or FINALIZING releases the microphone and the
    backend session, and a session reaches its terminal outcome once.
    """

    def __init__(
        self,
        capture: AudioCapture,
        recognizer: TranscriptionSession,
        consumer: TranscriptConsumer,
        strategy: BackendStrategy = BackendStrategy.POLLING_UPLOAD,
        transcoder: Optional[AudioTranscoder] = None,
        finalize_timeout_s: float = 420.0,
        queue_maxsize: int = 500,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._capture = capture
        self._recognizer = recognizer
        self._consumer = consumer
        self._strategy = strategy
        self._transcoder = transcoder or AudioTranscoder()
        self._finalize_timeout_s = finalize_timeout_s
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._session: Optional[RecordingSession] = None
        self._queue_maxsize = queue_maxsize
        self._audio_queue: Queue[AudioItem] = Queue(maxsize=queue_maxsize)
        self.dropped_frames = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    def start_session(self) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                return
            self._session_id += 1
            session = RecordingSession(session_id=self._session_id, backend_strategy=self._strategy)
            self._session = session
            self._audio_queue = Queue(maxsize=self._queue_maxsize)
            self._transcoder.reset()
            self._transition(SessionState.ACQUIRING)
            logger.info("session %d: acquiring (%s)", session.session_id, self._strategy.value)
            try:
                self._recognizer.start(
                    self._audio_queue,
                    lambda event: self._handle_recognition_event(session, event),
                )
                on_samples = self._on_samples if self._capture.mode == CaptureMode.STREAM else None
                self._capture.start(on_samples=on_samples)
            except TranscriptionError as exc:
                self._fail(session, exc.code, exc.message)
                return
            except Exception as exc:
                logger.exception("session %d: start failed", session.session_id)
                self._fail(session, CONNECTION_ERROR, f"start failed: {exc}")
                return
            self._transition(SessionState.RECORDING)

    def stop_session(self) -> None:
        with self._lock:
            session = self._session
            if session is None:
                return
            if self._state == SessionState.FINALIZING:
                # second stop gesture: abandon the pending result
                logger.info("session %d: stopped while finalizing", session.session_id)
                self._fail(session, CANCELLED, "stopped while finalizing")
                return
            if self._state != SessionState.RECORDING:
                return
            self._transition(SessionState.FINALIZING)
            try:
                blob = self._capture.stop()
            except TranscriptionError as exc:
                self._fail(session, exc.code, exc.message)
                return
            except Exception as exc:
                logger.exception("session %d: capture stop failed", session.session_id)
                self._fail(session, CONNECTION_ERROR, f"capture stop failed: {exc}")
                return
            self._hand_over_audio(blob)

        got_final = session.done.wait(timeout=self._finalize_timeout_s)

        with self._lock:
            if session.finalized or self._session is not session:
                return
            if not got_final:
                self._fail(session, BACKEND_PROTOCOL_ERROR, "final result timeout")
                return
            self._finish(session)

    def cancel_session(self, reason: str = "cancelled") -> None:
        with self._lock:
            session = self._session
            if self._state == SessionState.IDLE or session is None:
                return
            logger.info("session %d: cancelled (%s)", session.session_id, reason)
            self._fail(session, CANCELLED, reason)

    def _on_samples(self, samples: Any, sample_rate: int) -> None:
        """Capture-thread callback; frames are queued only while recording."""
        if self._state != SessionState.RECORDING:
            return
        for frame in self._transcoder.process(samples, sample_rate):
            self._enqueue(frame)

    def _hand_over_audio(self, blob: Optional[AudioBlob]) -> None:
        if blob is not None:
            self._enqueue(blob)
        else:
            tail = self._transcoder.flush()
            if tail is not None:
                self._enqueue(tail)
        self._enqueue(None, block=True)

    def _enqueue(self, item: AudioItem, block: bool = False) -> None:
        try:
            if block:
                self._audio_queue.put(item, timeout=1.0)
            else:
                self._audio_queue.put_nowait(item)
        except Full:
            self.dropped_frames += 1
            logger.warning("audio queue full, dropped %s", type(item).__name__)

    def _handle_recognition_event(self, session: RecordingSession, event: RecognitionEvent) -> None:
        with self._lock:
            if session.finalized or self._session is not session:
                logger.debug("session %d: late %s event discarded", session.session_id, event.kind)
                return
            kind = event.kind
            if kind == RecognitionKind.PARTIAL.value:
                if self._on_partial:
                    self._on_partial(event.text)
                return
            if kind == RecognitionKind.FINAL.value:
                session.final_text = event.text
                if self._state == SessionState.RECORDING:
                    # backend detected the end of the utterance
                    self._transition(SessionState.FINALIZING)
                    self._finish(session)
                    return
                session.done.set()
                return
            if kind == RecognitionKind.ERROR.value:
                self._fail(session, event.code or BACKEND_PROTOCOL_ERROR, event.message)

    def _finish(self, session: RecordingSession) -> None:
        session.finalized = True
        session.done.set()
        self._release()
        final_text = session.final_text.strip()
        if not final_text or is_unrecognized(final_text):
            logger.info("session %d: nothing recognised", session.session_id)
            self._end(session)
            return
        result = self._deliver(final_text)
        if not result.success:
            self._emit_error(DOWNSTREAM_SUBMIT_FAILED, result.reason)
        self._end(session)

    def _deliver(self, text: str) -> DeliveryResult:
        try:
            return self._consumer.deliver(text)
        except Exception as exc:
            logger.exception("consumer raised")
            return DeliveryResult(success=False, reason=str(exc))

    def _fail(self, session: RecordingSession, code: str, message: str) -> None:
        if session.finalized:
            return
        session.finalized = True
        session.done.set()
        logger.warning("session %d failed: %s %s", session.session_id, code, message)
        self._release()
        self._emit_error(code, message)
        self._end(session)

    def _end(self, session: RecordingSession) -> None:
        session.state = SessionState.IDLE
        self._session = None
        self._transition(SessionState.IDLE)

    def _release(self) -> None:
        self._safe_stop_capture()
        self._safe_stop_recognizer()
        self._transcoder.reset()

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _safe_stop_capture(self) -> None:
        try:
            self._capture.stop()
        except TranscriptionError as exc:
            logger.debug("capture stop during teardown: %s", exc)
        except Exception:
            logger.exception("capture stop failed")

    def _safe_stop_recognizer(self) -> None:
        try:
            self._recognizer.stop()
        except Exception:
            logger.exception("recognizer stop failed")

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._session is not None:
            self._session.state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
