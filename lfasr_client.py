"""HTTP client for the file transcription API (upload + result polling)."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from errors import (
    BACKEND_TRANSCRIPTION_FAILED,
    CANCELLED,
    CONNECTION_ERROR,
    POLLING_TIMEOUT,
    UPLOAD_FAILED,
    TranscriptionError,
)
from models import RemoteJob, RemoteJobStatus
from signing import signed_params

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/v2/api/upload"
RESULT_PATH = "/v2/api/getResult"
SUCCESS_CODE = "000000"

ORDER_STATUS = {
    -1: RemoteJobStatus.FAILED,
    0: RemoteJobStatus.QUEUED,
    3: RemoteJobStatus.PROCESSING,
    4: RemoteJobStatus.COMPLETED,
}


def _json_value(value: Any) -> Any:
    """Accept either an already-decoded object or a JSON string."""
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


def _words_from_1best(one_best: Any) -> str:
    sentence = one_best.get("st", {}) if isinstance(one_best, dict) else {}
    parts: List[str] = []
    for rt in sentence.get("rt", []) or []:
        for ws in rt.get("ws", []) or []:
            cw = ws.get("cw") or []
            if cw:
                parts.append(str(cw[0].get("w", "")))
    return "".join(parts)


def extract_order_text(order_result: Any) -> str:
    """Flatten an ``orderResult`` payload to plain text.

    ``lattice2`` is preferred over ``lattice``; their ``json_1best`` entries
    come as objects or as JSON strings depending on the list.  Anything that
    does not parse yields "" and a warning.
    """
    if order_result in (None, ""):
        return ""
    try:
        result = _json_value(order_result)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        logger.warning("could not parse orderResult: %s", exc)
        return ""
    if not isinstance(result, dict):
        logger.warning("unexpected orderResult type: %s", type(result).__name__)
        return ""

    lattices = result.get("lattice2") or result.get("lattice") or []
    texts: List[str] = []
    for item in lattices:
        try:
            one_best = _json_value(item.get("json_1best"))
            texts.append(_words_from_1best(one_best))
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("skipping unparseable lattice entry: %s", exc)
    return "".join(texts)


def parse_order_status(envelope: Dict[str, Any]) -> RemoteJobStatus:
    info = (envelope.get("content") or {}).get("orderInfo") or {}
    try:
        code = int(info.get("status"))
    except (TypeError, ValueError):
        return RemoteJobStatus.PROCESSING
    return ORDER_STATUS.get(code, RemoteJobStatus.PROCESSING)


class LfasrClient:
    def __init__(
        self,
        app_id: str,
        api_secret: str,
        host: str = "raasr.xfyun.cn",
        upload_timeout_s: float = 120.0,
        poll_timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._app_id = app_id
        self._api_secret = api_secret
        self._base_url = f"https://{host}"
        self._upload_timeout_s = upload_timeout_s
        self._poll_timeout_s = poll_timeout_s
        self._client = client or httpx.Client()

    def close(self) -> None:
        self._client.close()

    def upload(self, audio: bytes, file_name: str, duration_ms: int, language: str = "cn") -> RemoteJob:
        params = signed_params(self._app_id, self._api_secret)
        params.update(
            {
                "fileName": file_name,
                "fileSize": str(len(audio)),
                "duration": str(max(duration_ms, 1)),
                "language": language,
            }
        )
        logger.info("uploading %s (%d bytes)", file_name, len(audio))
        try:
            response = self._client.post(
                self._base_url + UPLOAD_PATH,
                params=params,
                content=audio,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self._upload_timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TranscriptionError(UPLOAD_FAILED, f"upload timed out: {exc}", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(CONNECTION_ERROR, f"upload failed: {exc}", retryable=True) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        content = payload.get("content") or {}
        if response.status_code >= 400 or payload.get("code") != SUCCESS_CODE or not content.get("orderId"):
            desc = payload.get("descInfo", "")
            logger.error("upload rejected: http=%s code=%s desc=%s", response.status_code, payload.get("code"), desc)
            raise TranscriptionError(UPLOAD_FAILED, f"upload failed: {payload.get('code')} - {desc or 'no detail'}")

        job = RemoteJob(job_id=str(content["orderId"]))
        logger.info("upload accepted, order %s", job.job_id)
        return job

    def get_result(self, order_id: str) -> Dict[str, Any]:
        """One signed poll request; transport errors propagate as httpx errors."""
        params = signed_params(self._app_id, self._api_secret)
        params.update({"orderId": order_id, "resultType": "transfer"})
        response = self._client.get(self._base_url + RESULT_PATH, params=params, timeout=self._poll_timeout_s)
        response.raise_for_status()
        return response.json()


def poll_for_result(
    client: LfasrClient,
    job: RemoteJob,
    attempts: int = 20,
    interval_s: float = 5.0,
    wait: Optional[Callable[[float], bool]] = None,
) -> str:
    """Poll until the order completes, fails, or the attempt budget runs out.

    ``wait(seconds)`` sleeps between attempts and returns True when the
    caller has been cancelled.
    """
    wait = wait or (lambda _s: False)
    for attempt in range(1, attempts + 1):
        job.attempt = attempt
        try:
            envelope = client.get_result(job.job_id)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("poll %d/%d for order %s failed: %s", attempt, attempts, job.job_id, exc)
        else:
            if isinstance(envelope, dict) and envelope.get("code") == SUCCESS_CODE and envelope.get("content"):
                job.status = parse_order_status(envelope)
                if job.status == RemoteJobStatus.COMPLETED:
                    logger.info("order %s finished after %d polls", job.job_id, attempt)
                    return extract_order_text(envelope["content"].get("orderResult"))
                if job.status == RemoteJobStatus.FAILED:
                    fail_type = (envelope["content"].get("orderInfo") or {}).get("failType")
                    logger.error("order %s failed, failType=%s", job.job_id, fail_type)
                    raise TranscriptionError(BACKEND_TRANSCRIPTION_FAILED, f"failType={fail_type}")
                logger.info("order %s still %s (poll %d/%d)", job.job_id, job.status.value, attempt, attempts)
            else:
                code = envelope.get("code") if isinstance(envelope, dict) else None
                logger.warning("poll %d/%d for order %s returned code=%s", attempt, attempts, job.job_id, code)

        if attempt < attempts and wait(interval_s):
            raise TranscriptionError(CANCELLED, "polling cancelled")

    job.status = RemoteJobStatus.FAILED
    raise TranscriptionError(POLLING_TIMEOUT, f"order {job.job_id} not finished after {attempts} polls")
