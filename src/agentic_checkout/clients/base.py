"""Shared httpx plumbing for the upstream adapters.

Every transport or HTTP failure leaves this module as an
:class:`~agentic_checkout.errors.UpstreamError`; callers never see httpx
exceptions.  There is deliberately no retry loop here.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from agentic_checkout.errors import UpstreamError, UpstreamFailure, UpstreamFailureKind

logger = structlog.get_logger(__name__)

_DEFAULT_TIMEOUT = 15.0


def _error_fields(response: httpx.Response) -> tuple[str, str | None, str | None]:
    """Extract ``(message, code, decline_code)`` from an error body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text[:200] or response.reason_phrase or "Upstream error"), None, None

    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            message = error.get("message") or error.get("detail") or response.reason_phrase
            return str(message), error.get("code"), error.get("decline_code")
        if isinstance(error, str):
            return str(body.get("message") or error), body.get("code"), None
    return response.reason_phrase or "Upstream error", None, None


class UpstreamClient:
    """Lazy ``httpx.AsyncClient`` owner with failure normalization.

    Parameters
    ----------
    service:
        Name reported in :class:`UpstreamFailure` and log events.
    base_url:
        Root URL of the upstream API.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional transport override (``httpx.MockTransport`` in tests).
    """

    service = "upstream"

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _fail(self, kind: UpstreamFailureKind, message: str, **extra: Any) -> UpstreamError:
        failure = UpstreamFailure(service=self.service, kind=kind, message=message, **extra)
        logger.warning(
            "upstream_request_failed",
            service=self.service,
            kind=kind.value,
            status_code=failure.status_code,
            code=failure.code,
        )
        return UpstreamError(failure)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                headers=headers,
                json=json_body,
            )
        except httpx.TimeoutException as exc:
            raise self._fail(UpstreamFailureKind.TIMEOUT, f"{self.service} request timed out") from exc
        except httpx.RequestError as exc:
            raise self._fail(
                UpstreamFailureKind.CONNECTION, f"{self.service} is unreachable: {type(exc).__name__}"
            ) from exc

        if response.is_error:
            message, code, decline_code = _error_fields(response)
            raise self._fail(
                UpstreamFailureKind.HTTP_STATUS,
                message,
                status_code=response.status_code,
                code=code,
                decline_code=decline_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise self._fail(
                UpstreamFailureKind.MALFORMED_RESPONSE, f"{self.service} returned a non-JSON body"
            ) from exc
        if not isinstance(data, dict):
            raise self._fail(
                UpstreamFailureKind.MALFORMED_RESPONSE, f"{self.service} returned an unexpected body"
            )
        return data

    def _require(self, data: dict[str, Any], *fields: str) -> None:
        missing = [f for f in fields if not data.get(f)]
        if missing:
            raise self._fail(
                UpstreamFailureKind.MALFORMED_RESPONSE,
                f"{self.service} response missing {', '.join(missing)}",
            )
