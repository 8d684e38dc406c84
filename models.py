"""Core data models for the app."""

from __future__ import annotations

import base64
import threading
import time
from dataclasses import dataclass, field
from enum import Enum


class SessionState(str, Enum):
    IDLE = "IDLE"
    ACQUIRING = "ACQUIRING"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"


class BackendStrategy(str, Enum):
    BATCH_UPLOAD = "batch_upload"
    POLLING_UPLOAD = "polling_upload"
    STREAMING_SOCKET = "streaming_socket"


class CaptureMode(str, Enum):
    BLOB = "blob"
    STREAM = "stream"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"


class RemoteJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CorrectionPolicy(str, Enum):
    APPEND = "append"
    REPLACE_LAST = "replace_last"
    REVISE = "revise"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0

    @property
    def sample_count(self) -> int:
        return len(self.pcm16_bytes) // (2 * self.channels)

    def to_base64(self) -> str:
        return base64.b64encode(self.pcm16_bytes).decode("ascii")


@dataclass
class AudioBlob:
    data: bytes
    mime_type: str = "audio/wav"
    sample_rate: int = 16000
    duration_ms: int = 0


@dataclass
class CaptureHandle:
    mode: CaptureMode
    sample_rate: int
    channels: int = 1
    started_at: float = 0.0


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    retryable: bool = False


@dataclass
class RemoteJob:
    job_id: str
    status: RemoteJobStatus = RemoteJobStatus.QUEUED
    attempt: int = 0


@dataclass
class Transcript:
    text: str
    is_final: bool = False
    correction_policy: CorrectionPolicy = CorrectionPolicy.APPEND


@dataclass
class RecordingSession:
    session_id: int
    backend_strategy: BackendStrategy
    state: SessionState = SessionState.ACQUIRING
    started_at: float = field(default_factory=time.time)
    final_text: str = ""
    finalized: bool = False
    done: threading.Event = field(default_factory=threading.Event)


@dataclass
class DeliveryResult:
    success: bool
    reason: str
