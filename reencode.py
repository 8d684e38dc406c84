"""Local re-encode step for batch uploads (ffmpeg subprocess)."""

from __future__ import annotations

import logging
import os
import secrets
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from errors import AUDIO_CONVERSION_FAILED, EMPTY_AUDIO, UNSUPPORTED_ENVIRONMENT, TranscriptionError
from models import AudioBlob

logger = logging.getLogger(__name__)

# Trim leading silence, reverse, trim again, reverse back.
SILENCE_FILTER = (
    "silenceremove=start_periods=1:start_duration=0.5:start_threshold=-50dB,"
    "areverse,"
    "silenceremove=start_periods=1:start_duration=0.5:start_threshold=-50dB,"
    "areverse"
)

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
}


def _extension_for(mime_type: str) -> str:
    base = mime_type.split(";", 1)[0].strip().lower()
    if base in _EXTENSIONS:
        return _EXTENSIONS[base]
    return base.split("/")[-1] or "tmp"


def build_ffmpeg_command(ffmpeg_path: str, input_path: str, output_path: str) -> list:
    return [
        ffmpeg_path,
        "-i", input_path,
        "-vn",
        "-af", SILENCE_FILTER,
        "-acodec", "pcm_s16le",
        "-ar", "16000",
        "-ac", "1",
        "-y", output_path,
    ]


def _remove(path: Path) -> None:
    try:
        path.unlink()
        logger.debug("deleted temp file %s", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("could not delete temp file %s: %s", path, exc)


def reencode_to_wav(
    blob: AudioBlob,
    ffmpeg_path: str = "ffmpeg",
    timeout_s: float = 60.0,
    tmp_dir: Optional[str] = None,
) -> bytes:
    """Convert ``blob`` to 16 kHz mono 16-bit WAV with silence trimmed.

    Both temp files live only for the duration of this call.
    """
    if not blob.data:
        raise TranscriptionError(EMPTY_AUDIO, "no audio to convert")

    directory = Path(tmp_dir or tempfile.gettempdir())
    suffix = secrets.token_hex(6)
    input_path = directory / f"input-{suffix}.{_extension_for(blob.mime_type)}"
    output_path = directory / f"output-{suffix}.wav"

    try:
        input_path.write_bytes(blob.data)
        cmd = build_ffmpeg_command(ffmpeg_path, os.fspath(input_path), os.fspath(output_path))
        logger.info("re-encoding %d bytes of %s", len(blob.data), blob.mime_type)
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=timeout_s, text=True)
        except FileNotFoundError as exc:
            raise TranscriptionError(UNSUPPORTED_ENVIRONMENT, f"ffmpeg not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscriptionError(AUDIO_CONVERSION_FAILED, "ffmpeg timed out") from exc
        if result.returncode != 0:
            logger.error("ffmpeg failed (%s): %s", result.returncode, result.stderr)
            raise TranscriptionError(AUDIO_CONVERSION_FAILED, f"ffmpeg exited with {result.returncode}")

        try:
            converted = output_path.read_bytes()
        except FileNotFoundError as exc:
            raise TranscriptionError(AUDIO_CONVERSION_FAILED, "ffmpeg produced no output") from exc
        if not converted:
            raise TranscriptionError(EMPTY_AUDIO, "converted audio file is empty")
        logger.info("converted audio to WAV, %d bytes", len(converted))
        return converted
    finally:
        _remove(input_path)
        _remove(output_path)
