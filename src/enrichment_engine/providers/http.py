"""
Generic JSON-over-HTTP provider.

POSTs ``{body_field: record.key}`` with the credential secret in a header and
maps the response onto the engine's error taxonomy:

    429            -> RateLimited (Retry-After honoured when given in seconds)
    401, 403       -> AuthFailed
    404            -> RecordNotFound
    other 4xx      -> PermanentError
    5xx, transport -> TransientError
    {"found": false} with 2xx -> RecordNotFound
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

import httpx
from loguru import logger

from ..coordinator.types import Credential, EnrichmentResult, Record
from ..errors import AuthFailed, PermanentError, RateLimited, RecordNotFound, TransientError


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None  # HTTP-date form not supported


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"_raw": response.text}


def _message(response: httpx.Response, data: Any) -> str:
    detail = ""
    if isinstance(data, Mapping):
        detail = str(data.get("message") or data.get("error") or data.get("_raw") or "")
    reason = response.reason_phrase or ""
    return f"HTTP {response.status_code} {reason} {detail}".strip()


def pluck(data: Any, path: str) -> Any:
    """Dotted lookup (``"company.name"``); None when any step is missing."""
    cur = data
    for part in path.split("."):
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(part)
    return cur


class HttpJsonProvider:
    """Provider backed by one JSON endpoint.

    Args:
        url: Endpoint receiving the POST
        body_field: JSON body field carrying the record key
        output_fields: Response paths copied into the result row; when empty,
            every top-level scalar of the response is kept
        auth_header: Header carrying the credential secret
        verify_url: Optional GET endpoint used to precheck credentials
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        url: str,
        *,
        body_field: str = "key",
        output_fields: Sequence[str] = (),
        auth_header: str = "x-api-key",
        verify_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.body_field = body_field
        self.output_fields = tuple(output_fields)
        self.auth_header = auth_header
        self.verify_url = verify_url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "HttpJsonProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def enrich(self, record: Record, credential: Credential) -> EnrichmentResult:
        try:
            response = await self._client.post(
                self.url,
                json={self.body_field: record.key},
                headers={self.auth_header: credential.secret},
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"transport error: {type(exc).__name__}: {exc}") from exc

        data = _body(response)
        status = response.status_code
        if status >= 400:
            message = _message(response, data)
            if status == 429:
                raise RateLimited(message, retry_after=_retry_after(response))
            if status in (401, 403):
                raise AuthFailed(message)
            if status == 404:
                raise RecordNotFound(message)
            if status >= 500:
                raise TransientError(message)
            raise PermanentError(message)

        if not isinstance(data, Mapping):
            raise PermanentError(f"unexpected response body: {str(data)[:200]}")
        if data.get("found") is False:
            raise RecordNotFound(str(data.get("message") or "not found"))

        return EnrichmentResult.success(record, self._project(data))

    def _project(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        if self.output_fields:
            return {f: pluck(data, f) for f in self.output_fields}
        return {
            k: v for k, v in data.items() if v is None or isinstance(v, (str, int, float, bool))
        }

    async def verify(self, credential: Credential) -> bool:
        """False only when the provider rejects the credential outright."""
        if not self.verify_url:
            return True
        try:
            response = await self._client.get(
                self.verify_url, headers={self.auth_header: credential.secret}
            )
        except httpx.TransportError as exc:
            logger.warning(f"Precheck for {credential.id} could not reach provider: {exc}")
            return True

        if response.status_code in (401, 403):
            return False
        if response.status_code >= 400:
            logger.warning(
                f"Precheck for {credential.id} returned HTTP {response.status_code}; keeping key"
            )
        return True
