"""Downstream consumers for finished transcripts."""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from errors import DOWNSTREAM_SUBMIT_FAILED
from models import DeliveryResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)

# Placeholder text some backends return instead of an empty result.
UNRECOGNIZED_MARKERS = ("未识别到内容", "结果解析错误")


def is_unrecognized(text: str) -> bool:
    stripped = text.strip()
    return not stripped or stripped in UNRECOGNIZED_MARKERS


class ExpenseLogSink:
    """Post the spoken expense to the trip's expense-logging endpoint."""

    def __init__(
        self,
        endpoint: str,
        plan_id: str,
        timeout_s: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._endpoint = endpoint
        self._plan_id = plan_id
        self._client = client or httpx.Client(timeout=timeout_s)

    def deliver(self, text: str) -> DeliveryResult:
        if is_unrecognized(text):
            return DeliveryResult(success=False, reason="nothing recognised, please retry")
        if not self._plan_id:
            return DeliveryResult(success=False, reason=f"{DOWNSTREAM_SUBMIT_FAILED}: no plan selected")
        try:
            response = self._client.post(self._endpoint, json={"text": text, "plan_id": self._plan_id})
        except httpx.HTTPError as exc:
            logger.error("expense submit failed: %s", exc)
            return DeliveryResult(success=False, reason=f"{DOWNSTREAM_SUBMIT_FAILED}: {exc}")
        if response.status_code >= 400:
            logger.error("expense submit rejected: http=%s", response.status_code)
            return DeliveryResult(
                success=False,
                reason=f"{DOWNSTREAM_SUBMIT_FAILED}: http {response.status_code}",
            )
        return DeliveryResult(success=True, reason=self._describe(response))

    def _describe(self, response: httpx.Response) -> str:
        try:
            logged = response.json().get("logged") or {}
        except (ValueError, AttributeError):
            return "ok"
        parts = [str(logged.get(k, "")) for k in ("item", "amount", "currency")]
        summary = " ".join(p for p in parts if p)
        return summary or "ok"


class PromptFieldSink:
    """Paste the transcript into the focused itinerary prompt field."""

    def __init__(self, restore_delay_s: float = 0.1, paste_modifier: Optional[object] = None) -> None:
        self._restore_delay_s = restore_delay_s
        self._paste_modifier = paste_modifier

    def deliver(self, text: str) -> DeliveryResult:
        if is_unrecognized(text):
            return DeliveryResult(success=False, reason="nothing recognised, please retry")
        if pyperclip is None or Controller is None or Key is None:
            return DeliveryResult(success=False, reason="clipboard/keyboard dependency missing")

        old_clip: Optional[str] = None
        try:
            old_clip = pyperclip.paste()
            pyperclip.copy(text)
            modifier = self._paste_modifier or Key.ctrl
            keyboard = Controller()
            keyboard.press(modifier)
            keyboard.press("v")
            keyboard.release("v")
            keyboard.release(modifier)
            time.sleep(self._restore_delay_s)
            return DeliveryResult(success=True, reason="ok")
        except Exception as exc:
            logger.error("paste into prompt field failed: %s", exc)
            return DeliveryResult(success=False, reason=f"{DOWNSTREAM_SUBMIT_FAILED}: {exc}")
        finally:
            if old_clip is not None:
                self._restore_clipboard(old_clip)

    def _restore_clipboard(self, value: str) -> None:
        try:
            pyperclip.copy(value)
        except Exception as exc:
            logger.warning("could not restore clipboard: %s", exc)
