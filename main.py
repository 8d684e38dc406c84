"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from config import JsonConfigStore
from consumers import ExpenseLogSink, PromptFieldSink
from errors import ERROR_MESSAGES
from hotkey import PushToTalkHotkey
from interfaces import TranscriptConsumer
from models import BackendStrategy, SessionState
from recognizer import build_recognizer, capture_mode_for
from recorder import MicrophoneCapture
from session_controller import SessionController

logger = logging.getLogger("tripvoice")


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Push-to-talk voice input for trip expenses and itinerary prompts.")
    parser.add_argument("--consumer", choices=["expense", "prompt"], default=None,
                        help="where finished transcripts go (default from config)")
    parser.add_argument("--strategy", choices=[s.value for s in BackendStrategy], default=None,
                        help="transcription backend strategy (default from config)")
    parser.add_argument("--plan-id", default=None, help="trip plan that expenses are logged against")
    parser.add_argument("--config", type=Path, default=None, help="path to config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def _build_consumer(kind: str, store: JsonConfigStore, plan_id: Optional[str]) -> TranscriptConsumer:
    settings = store.get_consumer_settings()
    if kind == "prompt":
        modifier = None
        if sys.platform == "darwin":
            from pynput.keyboard import Key

            modifier = Key.cmd
        return PromptFieldSink(paste_modifier=modifier)
    return ExpenseLogSink(
        endpoint=settings.expense_endpoint,
        plan_id=plan_id or settings.plan_id,
        timeout_s=settings.request_timeout_s,
    )


class App:
    def __init__(self, args: argparse.Namespace) -> None:
        self.config_store = JsonConfigStore(path=args.config)
        backend = self.config_store.get_backend_settings()
        if args.strategy:
            backend.strategy = BackendStrategy(args.strategy)
        consumer_kind = args.consumer or self.config_store.get_consumer_settings().kind

        self.controller = SessionController(
            capture=MicrophoneCapture(mode=capture_mode_for(backend.strategy)),
            recognizer=build_recognizer(backend),
            consumer=_build_consumer(consumer_kind, self.config_store, args.plan_id),
            strategy=backend.strategy,
            on_state_change=self._on_state_change,
            on_partial=self._on_partial,
            on_error=self._on_error,
        )
        self.hotkey = PushToTalkHotkey(
            hotkey_name=self.config_store.get_hotkey(),
            cancel_key_name=self.config_store.get_cancel_hotkey(),
        )
        logger.info("ready: strategy=%s consumer=%s hotkey=%s",
                    backend.strategy.value, consumer_kind, self.config_store.get_hotkey())

    # ------------------------------------------------------------------
    # Callbacks (called from worker threads)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        logger.info("%s -> %s", from_state.value, to_state.value)
        if to_state == SessionState.RECORDING:
            print("Listening...", flush=True)
        elif to_state == SessionState.FINALIZING:
            print("Transcribing...", flush=True)

    def _on_partial(self, text: str) -> None:
        print(f"\r{text}", end="", flush=True)

    def _on_error(self, code: str, message: str) -> None:
        print(f"\n{ERROR_MESSAGES.get(code, code)} ({message})", file=sys.stderr, flush=True)

    # ------------------------------------------------------------------
    # Hotkey handlers
    # ------------------------------------------------------------------

    def _on_hotkey_press(self) -> None:
        self.controller.start_session()

    def _on_hotkey_release(self) -> None:
        # stop_session waits for the transcript; keep the listener free
        threading.Thread(target=self.controller.stop_session, daemon=True).start()

    def _on_cancel(self) -> None:
        self.controller.cancel_session("cancel key")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        self.hotkey.start(
            on_press=self._on_hotkey_press,
            on_release=self._on_hotkey_release,
            on_cancel=self._on_cancel,
        )
        try:
            self.hotkey.join()
        except KeyboardInterrupt:
            pass
        finally:
            self.quit()
        return 0

    def quit(self) -> None:
        self.hotkey.stop()
        self.controller.cancel_session("app quit")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        app = App(args)
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    try:
        return app.run()
    except RuntimeError as exc:
        logger.error("hotkeys unavailable: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
