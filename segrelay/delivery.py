"""HTTP delivery of segments to the remote endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping

import aiohttp

from segrelay.segments import SegmentDescriptor

log = logging.getLogger("segrelay.delivery")

_ERROR_BODY_LIMIT = 200


class DeliveryFailure(Exception):
    """Transient delivery error: transport failure or a non-2xx response."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SegmentUploader:
    """Minimal protocol for delivery backends."""

    async def deliver(self, descriptor: SegmentDescriptor, payload: bytes) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpSegmentUploader(SegmentUploader):
    """POST each segment as a multipart form (blob + filename)."""

    def __init__(
        self,
        endpoint: str,
        *,
        field_name: str = "file",
        timeout: float = 60.0,
        token_provider: Callable[[], str | None] | None = None,
        extra_fields: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if not endpoint:
            raise ValueError("upload endpoint must be configured")
        self.endpoint = endpoint
        self.field_name = field_name
        self.timeout = aiohttp.ClientTimeout(total=float(timeout))
        self.token_provider = token_provider
        self.extra_fields = dict(extra_fields or {})
        self.headers = {str(k): str(v) for k, v in (headers or {}).items() if str(k).strip()}
        self._session: aiohttp.ClientSession | None = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    def _build_form(self, descriptor: SegmentDescriptor, payload: bytes) -> aiohttp.FormData:
        form = aiohttp.FormData()
        form.add_field(
            self.field_name,
            payload,
            filename=descriptor.filename,
            content_type=descriptor.content_type,
        )
        for key, value in self.extra_fields.items():
            form.add_field(key, value)
        return form

    def _request_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.token_provider is not None:
            token = self.token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def deliver(self, descriptor: SegmentDescriptor, payload: bytes) -> None:
        session = self._ensure_session()
        form = self._build_form(descriptor, payload)
        try:
            async with session.post(
                self.endpoint, data=form, headers=self._request_headers()
            ) as response:
                if not 200 <= response.status < 300:
                    body = (await response.text(errors="replace"))[:_ERROR_BODY_LIMIT]
                    raise DeliveryFailure(
                        f"endpoint returned {response.status} for {descriptor.filename}: {body}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailure(
                f"transport error for {descriptor.filename}: {exc!r}"
            ) from exc
        log.debug("delivered %s (%d bytes)", descriptor.filename, len(payload))

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()
