"""Microphone capture adapter."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, List, Optional

from audio_transcoder import TARGET_SAMPLE_RATE, pcm_to_wav
from errors import PERMISSION_DENIED, TOO_SHORT, UNSUPPORTED_ENVIRONMENT, TranscriptionError
from interfaces import SamplesCallback
from models import AudioBlob, CaptureHandle, CaptureMode

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

MIN_RECORDING_MS = 500


class MicrophoneCapture:
    """Owns the input device for one recording at a time.

    In blob mode int16 audio is buffered at 16 kHz and ``stop()`` returns a
    WAV blob.  In stream mode float32 blocks at the device rate are handed to
    ``on_samples`` as they arrive.
    """

    def __init__(
        self,
        mode: CaptureMode = CaptureMode.BLOB,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        chunk_ms: int = 100,
        min_duration_ms: int = MIN_RECORDING_MS,
    ) -> None:
        self.mode = mode
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.min_duration_ms = min_duration_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._chunks: List[Any] = []
        self._on_samples: Optional[SamplesCallback] = None
        self._handle: Optional[CaptureHandle] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self, on_samples: Optional[SamplesCallback] = None) -> CaptureHandle:
        with self._lock:
            if self._running and self._handle is not None:
                logger.warning("capture already running, not opening the device twice")
                return self._handle
            if sd is None or np is None:
                raise TranscriptionError(UNSUPPORTED_ENVIRONMENT, "sounddevice is not installed")
            if self.mode == CaptureMode.STREAM and on_samples is None:
                raise ValueError("stream mode needs an on_samples callback")

            rate = self._resolve_sample_rate()
            self._chunks = []
            self._on_samples = on_samples
            try:
                self._stream = sd.InputStream(
                    samplerate=rate,
                    channels=self.channels,
                    dtype="int16" if self.mode == CaptureMode.BLOB else "float32",
                    blocksize=int(rate * (self.chunk_ms / 1000.0)),
                    callback=self._on_audio,
                )
                self._stream.start()
            except sd.PortAudioError as exc:
                self._close_stream()
                raise TranscriptionError(PERMISSION_DENIED, str(exc)) from exc
            self._running = True
            self._handle = CaptureHandle(
                mode=self.mode,
                sample_rate=rate,
                channels=self.channels,
                started_at=time.time(),
            )
            logger.info("capture started: mode=%s rate=%s", self.mode.value, rate)
            return self._handle

    def stop(self) -> Optional[AudioBlob]:
        """Release the device; in blob mode return the recording.

        Safe to call any number of times; the device is closed once.
        """
        with self._lock:
            if not self._running:
                return None
            self._running = False
            handle = self._handle
            self._handle = None
            self._close_stream()
            chunks, self._chunks = self._chunks, []
            self._on_samples = None

        if self.mode != CaptureMode.BLOB or handle is None:
            return None
        return self._build_blob(chunks, handle.sample_rate)

    def _resolve_sample_rate(self) -> int:
        if self.mode == CaptureMode.BLOB:
            return self.sample_rate or TARGET_SAMPLE_RATE
        if self.sample_rate:
            return self.sample_rate
        try:
            info = sd.query_devices(kind="input")
        except sd.PortAudioError as exc:
            raise TranscriptionError(PERMISSION_DENIED, f"no input device: {exc}") from exc
        except ValueError as exc:
            raise TranscriptionError(PERMISSION_DENIED, f"no input device: {exc}") from exc
        return int(info["default_samplerate"])

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        logger.debug("capture device released")

    def _build_blob(self, chunks: List[Any], sample_rate: int) -> AudioBlob:
        pcm = b"".join(np.asarray(c, dtype=np.int16).tobytes() for c in chunks)
        frames = len(pcm) // (2 * self.channels)
        duration_ms = int(frames * 1000 / sample_rate)
        if duration_ms < self.min_duration_ms:
            raise TranscriptionError(TOO_SHORT, f"recording lasted {duration_ms} ms")
        return AudioBlob(
            data=pcm_to_wav(pcm, sample_rate, self.channels),
            mime_type="audio/wav",
            sample_rate=sample_rate,
            duration_ms=duration_ms,
        )

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running:
            return
        if status:
            logger.debug("input stream status: %s", status)
        if self.mode == CaptureMode.BLOB:
            self._chunks.append(np.array(indata, dtype=np.int16, copy=True))
            return
        callback = self._on_samples
        if callback is None:
            return
        data = np.asarray(indata, dtype=np.float32)
        if data.ndim > 1:
            data = data.mean(axis=1) if data.shape[1] > 1 else data[:, 0]
        rate = self._handle.sample_rate if self._handle else (self.sample_rate or TARGET_SAMPLE_RATE)
        callback(data.copy(), rate)
