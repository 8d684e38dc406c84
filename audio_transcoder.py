"""Turn raw capture samples into frames the streaming backend accepts.

Capture delivers float32 blocks at the device rate (often 44.1 or 48 kHz) with
block sizes that have nothing to do with the backend's frame size.  Each block
is resampled to the target rate, converted to int16, and pushed into an
accumulator that hands out fixed-size frames and keeps the remainder for the
next block.
"""

from __future__ import annotations

import io
import time
import wave
from typing import List, Optional

import numpy as np

from models import AudioFrame

TARGET_SAMPLE_RATE = 16000
FRAME_SAMPLES = 640  # 40 ms at 16 kHz


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale by 32767, truncating toward zero."""
    data = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (data * 32767).astype(np.int16)


def resample_linear(samples: np.ndarray, input_rate: int, output_rate: int) -> np.ndarray:
    """Linear-interpolation resampler.

    Output length is ``floor(len(samples) / (input_rate / output_rate))``.
    Output sample ``i`` sits at input position ``i * ratio`` and is weighted
    between the two nearest input samples.  Equal rates return a copy.
    """
    data = np.asarray(samples)
    if input_rate == output_rate:
        return data.copy()
    if input_rate <= 0 or output_rate <= 0:
        raise ValueError("sample rates must be positive")
    n = len(data)
    ratio = input_rate / output_rate
    out_len = (n * output_rate) // input_rate  # floor(n / ratio) without float error
    if n == 0 or out_len == 0:
        return np.zeros(0, dtype=data.dtype)

    positions = np.arange(out_len, dtype=np.float64) * ratio
    left = np.floor(positions).astype(np.int64)
    frac = positions - left
    right = np.minimum(left + 1, n - 1)
    src = data.astype(np.float64)
    out = src[left] * (1.0 - frac) + src[right] * frac

    if np.issubdtype(data.dtype, np.integer):
        info = np.iinfo(data.dtype)
        return np.clip(np.round(out), info.min, info.max).astype(data.dtype)
    return out.astype(data.dtype)


class FrameAccumulator:
    """Fixed-size framer with carry-over between pushes."""

    def __init__(self, frame_samples: int = FRAME_SAMPLES) -> None:
        if frame_samples <= 0:
            raise ValueError("frame_samples must be positive")
        self.frame_samples = frame_samples
        self._buffer = np.zeros(0, dtype=np.int16)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def push(self, samples: np.ndarray) -> List[np.ndarray]:
        data = np.asarray(samples, dtype=np.int16)
        if len(data):
            self._buffer = np.concatenate((self._buffer, data))
        whole = len(self._buffer) // self.frame_samples
        if whole == 0:
            return []
        cut = whole * self.frame_samples
        frames = [
            self._buffer[i : i + self.frame_samples].copy()
            for i in range(0, cut, self.frame_samples)
        ]
        self._buffer = self._buffer[cut:].copy()
        return frames

    def drain(self) -> np.ndarray:
        remainder = self._buffer
        self._buffer = np.zeros(0, dtype=np.int16)
        return remainder


class AudioTranscoder:
    def __init__(self, target_rate: int = TARGET_SAMPLE_RATE, frame_samples: int = FRAME_SAMPLES) -> None:
        self.target_rate = target_rate
        self._accumulator = FrameAccumulator(frame_samples)

    @property
    def pending(self) -> int:
        return self._accumulator.pending

    def process(self, samples: np.ndarray, input_rate: int) -> List[AudioFrame]:
        data = np.asarray(samples)
        if data.ndim > 1:
            data = data.mean(axis=1)
        if np.issubdtype(data.dtype, np.floating):
            pcm = float_to_int16(resample_linear(data, input_rate, self.target_rate))
        else:
            pcm = resample_linear(data.astype(np.int16), input_rate, self.target_rate)
        return [self._to_frame(chunk) for chunk in self._accumulator.push(pcm)]

    def flush(self) -> Optional[AudioFrame]:
        """Emit whatever is left as a short final frame."""
        remainder = self._accumulator.drain()
        if not len(remainder):
            return None
        return self._to_frame(remainder)

    def reset(self) -> None:
        self._accumulator.drain()

    def _to_frame(self, pcm: np.ndarray) -> AudioFrame:
        return AudioFrame(
            pcm16_bytes=pcm.astype("<i2").tobytes(),
            sample_rate=self.target_rate,
            channels=1,
            timestamp_ms=int(time.time() * 1000),
        )


def encode_frame(frame: AudioFrame) -> str:
    return frame.to_base64()


def pcm_to_wav(
    pcm: bytes,
    sample_rate: int = TARGET_SAMPLE_RATE,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Wrap raw PCM bytes in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()
