"""
Outbound HTTP for external sources.

`SourceClient.fetch(source)` performs one authenticated GET against the
source's endpoint and returns the raw body; parsing is the adapter's job.
`SourceClient.push(source, sku, document)` upserts one item on the
source's push endpoint: GET {push_url}/{sku}, then PUT it when it exists or
POST to {push_url} when the source answers 404.

Transport failures are mapped onto the adapter error tree so the
orchestrator can decide what to retry:

    401 / 403                         -> AuthError
    408 / 429 / 5xx, refused, timeout -> NetworkError (retryable)
    any other 4xx                     -> RemoteRequestError
    body that cannot be decoded       -> FormatError
    body larger than max_body_bytes   -> FormatError
"""

from __future__ import annotations

import base64
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
import zlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from stockdb import vault
from stockdb.errors import AuthError, FormatError, NetworkError, RemoteRequestError, ValidationError

from . import models

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = float(os.getenv("SYNC_HTTP_TIMEOUT_SEC", "30"))
DEFAULT_MAX_BODY_BYTES = int(os.getenv("SYNC_MAX_RESPONSE_BYTES", str(50 * 1024 * 1024)))
PROBE_TIMEOUT_SEC = 5.0
USER_AGENT = "stockdb-sync/1.0"

RETRYABLE_STATUS = {408, 429}
FETCH_ACCEPT = "application/json, text/csv, application/xml;q=0.9, */*;q=0.5"


@dataclass
class FetchResponse:
    status: int
    body: bytes
    content_type: Optional[str]
    elapsed_ms: int


@dataclass
class PushResponse:
    method: str
    status: int
    url: str
    elapsed_ms: int

    @property
    def created(self) -> bool:
        return self.method == "POST"


@dataclass
class ConnectionProbe:
    ok: bool
    status: Optional[int]
    response_time_ms: int
    error_code: Optional[str] = None
    error: Optional[str] = None


def auth_headers(auth_type, credentials: Dict[str, str]) -> Dict[str, str]:
    auth_type = models.SourceAuthType(auth_type or models.SourceAuthType.NONE)
    if auth_type == models.SourceAuthType.NONE:
        return {}
    if auth_type == models.SourceAuthType.API_KEY:
        if not credentials.get("api_key"):
            raise AuthError("Source is configured for API key auth but has no api_key.")
        return {credentials.get("header_name") or "X-API-Key": credentials["api_key"]}
    if auth_type == models.SourceAuthType.BEARER:
        if not credentials.get("token"):
            raise AuthError("Source is configured for bearer auth but has no token.")
        return {"Authorization": f"Bearer {credentials['token']}"}
    username = credentials.get("username") or ""
    password = credentials.get("password") or ""
    if not username:
        raise AuthError("Source is configured for basic auth but has no username.")
    encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {encoded}"}


def _too_large(limit: int, details: dict) -> FormatError:
    return FormatError(
        f"Response body is larger than {limit} bytes.",
        details=dict(details, limit=limit),
    )


def _decode_body(body: bytes, encoding: Optional[str], limit: int, details: dict) -> bytes:
    """Undo gzip/deflate without letting the inflated body grow past `limit`."""
    encoding = (encoding or "").lower()
    if encoding not in ("gzip", "deflate"):
        return body
    wbits = 16 + zlib.MAX_WBITS if encoding == "gzip" else zlib.MAX_WBITS
    inflater = zlib.decompressobj(wbits)
    try:
        out = inflater.decompress(body, limit + 1)
    except zlib.error as exc:
        raise FormatError(
            "Response body could not be decompressed.",
            details=dict(details, encoding=encoding),
        ) from exc
    if len(out) > limit:
        raise _too_large(limit, details)
    if not inflater.eof:
        raise FormatError("Response body could not be decompressed.", details=dict(details, encoding=encoding))
    return out


class SourceClient:
    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        opener=None,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ):
        self.timeout = timeout
        self.max_body_bytes = max_body_bytes
        self._open = opener or urllib.request.urlopen

    def _request(
        self,
        source: models.ExternalSource,
        url: str,
        *,
        method: str = "GET",
        document: Any = None,
        accept: str = "application/json",
    ) -> urllib.request.Request:
        credentials = vault.decrypt_credentials(source.credentials_encrypted)
        data = None
        if document is not None:
            data = json.dumps(document, separators=(",", ":"), default=str).encode("utf-8")
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Accept", accept)
        req.add_header("Accept-Encoding", "gzip, deflate")
        req.add_header("User-Agent", USER_AGENT)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        for name, value in auth_headers(source.auth_type, credentials).items():
            req.add_header(name, value)
        return req

    def _send(
        self,
        source: models.ExternalSource,
        req: urllib.request.Request,
        *,
        timeout: Optional[float] = None,
    ) -> FetchResponse:
        started = time.monotonic()
        details = {"source_id": source.id, "url": req.full_url, "method": req.get_method()}
        try:
            with self._open(req, timeout=timeout or self.timeout) as resp:
                raw = resp.read(self.max_body_bytes + 1)
                if len(raw) > self.max_body_bytes:
                    raise _too_large(self.max_body_bytes, details)
                status = getattr(resp, "status", None) or resp.getcode()
                content_type = resp.headers.get("Content-Type")
                body = _decode_body(raw, resp.headers.get("Content-Encoding"), self.max_body_bytes, details)
        except urllib.error.HTTPError as exc:
            raise self._map_http_error(exc.code, details) from exc
        except urllib.error.URLError as exc:
            reason = exc.reason
            if isinstance(reason, (socket.timeout, TimeoutError)):
                raise NetworkError("Source request timed out.", details=details) from exc
            raise NetworkError(f"Source is unreachable: {reason}", details=details) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise NetworkError("Source request timed out.", details=details) from exc
        except (ConnectionError, OSError) as exc:
            raise NetworkError(f"Source connection failed: {exc}", details=details) from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "source request completed",
            extra={
                "source_id": source.id,
                "method": details["method"],
                "status": status,
                "bytes": len(body),
                "elapsed_ms": elapsed_ms,
            },
        )
        return FetchResponse(status=status, body=body, content_type=content_type, elapsed_ms=elapsed_ms)

    def fetch(self, source: models.ExternalSource, *, timeout: Optional[float] = None) -> FetchResponse:
        if not source.endpoint_url:
            raise ValidationError(
                "Source has no endpoint_url configured.",
                details={"source_id": source.id},
            )
        req = self._request(source, source.endpoint_url, accept=FETCH_ACCEPT)
        return self._send(source, req, timeout=timeout)

    def push(
        self,
        source: models.ExternalSource,
        sku: str,
        document: Any,
        *,
        timeout: Optional[float] = None,
    ) -> PushResponse:
        base = (getattr(source, "push_url", None) or "").rstrip("/")
        if not base:
            raise ValidationError("Source has no push_url configured.", details={"source_id": source.id})
        item_url = f"{base}/{urllib.parse.quote(sku, safe='')}"
        try:
            self._send(source, self._request(source, item_url), timeout=timeout)
        except RemoteRequestError as exc:
            if exc.details.get("status") != 404:
                raise
            method, url = "POST", base
        else:
            method, url = "PUT", item_url
        response = self._send(source, self._request(source, url, method=method, document=document), timeout=timeout)
        return PushResponse(method=method, status=response.status, url=url, elapsed_ms=response.elapsed_ms)

    @staticmethod
    def _map_http_error(code: int, details: dict):
        details = dict(details, status=code)
        if code in (401, 403):
            return AuthError(f"Source rejected credentials (HTTP {code}).", details=details)
        if code in RETRYABLE_STATUS or code >= 500:
            return NetworkError(f"Source temporarily unavailable (HTTP {code}).", details=details)
        return RemoteRequestError(f"Source rejected the request (HTTP {code}).", details=details)

    def probe(self, source: models.ExternalSource) -> ConnectionProbe:
        started = time.monotonic()
        try:
            response = self.fetch(source, timeout=PROBE_TIMEOUT_SEC)
        except (AuthError, NetworkError, RemoteRequestError, FormatError, ValidationError) as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return ConnectionProbe(
                ok=False,
                status=exc.details.get("status"),
                response_time_ms=elapsed_ms,
                error_code=exc.code,
                error=exc.message,
            )
        return ConnectionProbe(ok=True, status=response.status, response_time_ms=response.elapsed_ms)
