"""HTTP transport to the external inference service.

Unary calls POST JSON to ``/invoke``; streaming calls POST to
``/invoke/stream`` and yield the raw response body chunk by chunk. Every
failure surfaces as ``TransportError`` with a classification kind.
"""

import logging
from typing import AsyncIterator

import httpx

from ..errors import NetworkTransportError, TransportError

logger = logging.getLogger(__name__)

_STATUS_KINDS = {
    400: "validation_error",
    401: "access_denied",
    403: "access_denied",
    404: "resource_not_found",
    408: "request_timeout",
    422: "validation_error",
    429: "throttled",
    500: "internal_server_error",
    502: "service_unavailable",
    503: "service_unavailable",
    504: "request_timeout",
}


def kind_for_status(status_code: int) -> str:
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    return "invalid_request" if status_code < 500 else "internal_server_error"


def _network_error(exc: httpx.TransportError) -> NetworkTransportError:
    if isinstance(exc, httpx.TimeoutException):
        code = "ETIMEDOUT"
    elif isinstance(exc, httpx.ConnectError):
        code = "ENOTFOUND"
    else:
        code = "ECONNRESET"
    return NetworkTransportError(f"Inference transport error: {exc}", kind="networking_error",
                                 code=code)


class InferenceClient:
    def __init__(self, base_url: str, timeout_ms: int, api_key: str | None = None,
                 client: httpx.AsyncClient | None = None):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_ms / 1000.0),
        )

    async def invoke(self, payload: dict) -> dict:
        try:
            response = await self._client.post("/invoke", json=payload)
        except httpx.TransportError as e:
            raise _network_error(e) from e
        _raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise TransportError("Malformed inference response", kind="invalid_request") from e

    async def stream(self, payload: dict) -> AsyncIterator[bytes]:
        try:
            async with self._client.stream("POST", "/invoke/stream", json=payload) as response:
                if response.is_error:
                    await response.aread()
                    _raise_for_status(response)
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.TransportError as e:
            raise _network_error(e) from e

    async def aclose(self):
        await self._client.aclose()


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    kind = kind_for_status(response.status_code)
    logger.warning("Inference service returned %d (%s)", response.status_code, kind)
    raise TransportError(
        f"Inference service returned HTTP {response.status_code}",
        kind=kind,
        status_code=response.status_code,
    )
