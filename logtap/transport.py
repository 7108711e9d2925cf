"""
HTTP transport for logtap batches.

One POST per batch to {base_url}/api/{project_id}{path}. Every outcome is
folded into a boolean: 2xx is success, anything else (status, timeout,
connection error) is failure and never raises.
"""

import gzip
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx

from .models import SDK_NAME, SDK_VERSION, Record

logger = logging.getLogger(__name__)


class Compressor(Protocol):
    """Body compression capability; encoding is the Content-Encoding value."""

    encoding: str | None

    def compress(self, body: bytes) -> bytes: ...


class IdentityCompressor:
    encoding = None

    def compress(self, body: bytes) -> bytes:
        return body


class GzipCompressor:
    encoding = "gzip"

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, body: bytes) -> bytes:
        return gzip.compress(body, compresslevel=self.level)


@dataclass
class DeliveryResult:
    """Outcome of a single POST; status is None for transport errors."""

    ok: bool
    status: int | None = None
    error: str | None = None


class Transport:
    """
    Sends batches with a shared httpx.AsyncClient.

    The client is created lazily and closed by aclose() unless it was
    supplied by the caller. A closed transport fails every send.
    """

    def __init__(
        self,
        base_url: str,
        project_id: str,
        project_key: str | None = None,
        timeout: float = 5.0,
        compressor: Compressor | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.project_key = project_key
        self.timeout = timeout
        self.compressor = compressor or IdentityCompressor()
        self._client = http_client
        self._owns_client = http_client is None
        self.closed = False

        self.last_error: str | None = None
        self.last_status: int | None = None

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/api/{quote(self.project_id, safe='')}{path}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _encode(self, batch: Sequence[Record]) -> tuple[bytes, str | None]:
        body = json.dumps([record.to_payload() for record in batch], separators=(",", ":")).encode("utf-8")
        if self.compressor.encoding is None:
            return body, None
        try:
            return self.compressor.compress(body), self.compressor.encoding
        except Exception as e:
            logger.debug(f"Compression unavailable, sending uncompressed: {e}")
            return body, None

    def _headers(self, content_encoding: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{SDK_NAME}/{SDK_VERSION}",
        }
        if self.project_key:
            headers["X-Project-Key"] = self.project_key
        if content_encoding:
            headers["Content-Encoding"] = content_encoding
        return headers

    async def send(self, path: str, batch: Sequence[Record]) -> DeliveryResult:
        """POST one batch and describe what happened."""
        try:
            body, content_encoding = self._encode(batch)
        except (TypeError, ValueError) as e:
            return self._record(DeliveryResult(ok=False, error=f"encode failed: {e}"))
        if self.closed:
            return self._record(DeliveryResult(ok=False, error="transport closed"))

        try:
            response = await self._get_client().post(
                self.url_for(path),
                content=body,
                headers=self._headers(content_encoding),
                timeout=self.timeout if self.timeout > 0 else None,
            )
        except httpx.TimeoutException as e:
            return self._record(DeliveryResult(ok=False, error=f"timeout: {e}"))
        except httpx.HTTPError as e:
            return self._record(DeliveryResult(ok=False, error=str(e) or type(e).__name__))
        except Exception as e:
            # e.g. a non-ASCII header value or an http client closed by its owner
            logger.debug(f"Unexpected error posting to {path}: {e!r}")
            return self._record(DeliveryResult(ok=False, error=f"{type(e).__name__}: {e}"))

        if 200 <= response.status_code < 300:
            return self._record(DeliveryResult(ok=True, status=response.status_code))
        return self._record(
            DeliveryResult(
                ok=False,
                status=response.status_code,
                error=f"HTTP {response.status_code}: {response.reason_phrase}",
            )
        )

    async def post(self, path: str, batch: Sequence[Record]) -> bool:
        return (await self.send(path, batch)).ok

    def _record(self, result: DeliveryResult) -> DeliveryResult:
        self.last_status = result.status
        if not result.ok:
            self.last_error = result.error
        return result

    async def aclose(self):
        self.closed = True
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
