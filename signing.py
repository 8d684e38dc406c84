"""Request signing for the transcription backend."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from email.utils import formatdate
from typing import Dict, Optional
from urllib.parse import urlencode


def current_ts() -> str:
    return str(int(time.time()))


def generate_signa(app_id: str, ts: str, api_secret: str) -> str:
    """base64(HMAC-SHA1(api_secret, hex(MD5(app_id + ts))))"""
    base_string = (app_id + ts).encode("utf-8")
    md5_hex = hashlib.md5(base_string).hexdigest()
    digest = hmac.new(api_secret.encode("utf-8"), md5_hex.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_params(app_id: str, api_secret: str, ts: Optional[str] = None) -> Dict[str, str]:
    """Fresh ``appId``/``signa``/``ts`` triple for one HTTP request."""
    ts = ts or current_ts()
    return {"appId": app_id, "signa": generate_signa(app_id, ts, api_secret), "ts": ts}


def rfc1123_date(timestamp: Optional[float] = None) -> str:
    return formatdate(timeval=timestamp, localtime=False, usegmt=True)


def build_authorization(
    api_key: str,
    api_secret: str,
    host: str,
    date: str,
    path: str,
) -> str:
    signature_origin = f"host: {host}\ndate: {date}\nGET {path} HTTP/1.1"
    signature = base64.b64encode(
        hmac.new(api_secret.encode("utf-8"), signature_origin.encode("utf-8"), hashlib.sha256).digest()
    ).decode("ascii")
    authorization_origin = (
        f'api_key="{api_key}", algorithm="hmac-sha256", '
        f'headers="host date request-line", signature="{signature}"'
    )
    return base64.b64encode(authorization_origin.encode("utf-8")).decode("ascii")


def build_streaming_url(
    api_key: str,
    api_secret: str,
    host: str,
    path: str = "/v2/iat",
    date: Optional[str] = None,
) -> str:
    """Signed ``wss://`` URL; the signature is valid for a few minutes only."""
    date = date or rfc1123_date()
    query = urlencode(
        {
            "authorization": build_authorization(api_key, api_secret, host, date, path),
            "date": date,
            "host": host,
        }
    )
    return f"wss://{host}{path}?{query}"
