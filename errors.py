"""Shared error codes and user-facing messages."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
UNSUPPORTED_ENVIRONMENT = "UNSUPPORTED_ENVIRONMENT"
TOO_SHORT = "TOO_SHORT"
EMPTY_AUDIO = "EMPTY_AUDIO"
AUDIO_CONVERSION_FAILED = "AUDIO_CONVERSION_FAILED"
AUTH_FAILED = "AUTH_FAILED"
UPLOAD_FAILED = "UPLOAD_FAILED"
POLLING_TIMEOUT = "POLLING_TIMEOUT"
BACKEND_TRANSCRIPTION_FAILED = "BACKEND_TRANSCRIPTION_FAILED"
BACKEND_PROTOCOL_ERROR = "BACKEND_PROTOCOL_ERROR"
CONNECTION_ERROR = "CONNECTION_ERROR"
DOWNSTREAM_SUBMIT_FAILED = "DOWNSTREAM_SUBMIT_FAILED"
CANCELLED = "CANCELLED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access was denied or no input device exists.",
    UNSUPPORTED_ENVIRONMENT: "Audio capture is not available in this environment.",
    TOO_SHORT: "Recording was too short, hold the key a little longer.",
    EMPTY_AUDIO: "No audio was captured.",
    AUDIO_CONVERSION_FAILED: "Audio could not be converted for upload.",
    AUTH_FAILED: "Transcription credentials are missing or invalid.",
    UPLOAD_FAILED: "Audio upload was rejected, please retry.",
    POLLING_TIMEOUT: "Transcription did not finish in time, please retry.",
    BACKEND_TRANSCRIPTION_FAILED: "The transcription service could not process the audio.",
    BACKEND_PROTOCOL_ERROR: "The transcription service returned an error.",
    CONNECTION_ERROR: "Could not reach the transcription service.",
    DOWNSTREAM_SUBMIT_FAILED: "The transcript could not be submitted.",
    CANCELLED: "Recording cancelled.",
}


class TranscriptionError(Exception):
    """Error carrying one of the codes above."""

    def __init__(self, code: str, message: str = "", retryable: bool = False) -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)
        self.retryable = retryable

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"
