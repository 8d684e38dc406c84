"""Simple JSON-based config store."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from models import BackendStrategy


@dataclass
class BackendSettings:
    strategy: BackendStrategy = BackendStrategy.POLLING_UPLOAD
    app_id: str = ""
    api_secret: str = ""
    api_key: str = ""
    language: str = "cn"
    lfasr_host: str = "raasr.xfyun.cn"
    iat_host: str = "iat-api.xfyun.cn"
    iat_path: str = "/v2/iat"
    poll_interval_s: float = 5.0
    poll_attempts: int = 20
    upload_timeout_s: float = 120.0
    poll_timeout_s: float = 10.0
    connect_timeout_s: float = 10.0
    vad_eos_ms: int = 3000


@dataclass
class ConsumerSettings:
    kind: str = "expense"
    expense_endpoint: str = "http://localhost:3000/api/log-expense"
    plan_id: str = ""
    request_timeout_s: float = 15.0


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "tripvoice" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "Key.alt_l"))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_cancel_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("cancel_hotkey", "Key.esc"))

    def get_strategy(self) -> BackendStrategy:
        data = self._read_all()
        try:
            return BackendStrategy(data.get("strategy", BackendStrategy.POLLING_UPLOAD.value))
        except ValueError:
            return BackendStrategy.POLLING_UPLOAD

    def set_strategy(self, strategy: BackendStrategy) -> None:
        self._set("strategy", BackendStrategy(strategy).value)

    def get_backend_settings(self) -> BackendSettings:
        """Settings for the transcription backend; environment wins over the file."""
        data = self._read_all()
        settings = BackendSettings(strategy=self.get_strategy())
        settings.app_id = os.getenv("IFLYTEK_APPID") or str(data.get("app_id", ""))
        settings.api_secret = os.getenv("IFLYTEK_API_SECRET") or str(data.get("api_secret", ""))
        settings.api_key = os.getenv("IFLYTEK_API_KEY") or self.get_api_key()
        settings.language = str(data.get("language", settings.language))
        for name in ("poll_interval_s", "upload_timeout_s", "poll_timeout_s", "connect_timeout_s"):
            if name in data:
                setattr(settings, name, float(data[name]))
        if "poll_attempts" in data:
            settings.poll_attempts = int(data["poll_attempts"])
        return settings

    def get_consumer_settings(self) -> ConsumerSettings:
        data = self._read_all()
        settings = ConsumerSettings()
        settings.kind = str(data.get("consumer", settings.kind))
        settings.expense_endpoint = os.getenv("TRIPVOICE_EXPENSE_ENDPOINT") or str(
            data.get("expense_endpoint", settings.expense_endpoint)
        )
        settings.plan_id = os.getenv("TRIPVOICE_PLAN_ID") or str(data.get("plan_id", ""))
        return settings

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
