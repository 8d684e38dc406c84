"""Protocol interfaces used by SessionController."""

from __future__ import annotations

from queue import Queue
from typing import Any, Callable, Optional, Protocol, Union

from models import AudioBlob, AudioFrame, CaptureHandle, CaptureMode, DeliveryResult, RecognitionEvent

AudioItem = Union[AudioFrame, AudioBlob, None]
SamplesCallback = Callable[[Any, int], None]


class AudioCapture(Protocol):
    mode: CaptureMode

    def start(self, on_samples: Optional[SamplesCallback] = None) -> CaptureHandle: ...

    def stop(self) -> Optional[AudioBlob]: ...


class TranscriptionSession(Protocol):
    def start(
        self,
        audio_queue: Queue[AudioItem],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None: ...

    def stop(self) -> None: ...


class TranscriptConsumer(Protocol):
    def deliver(self, text: str) -> DeliveryResult: ...

