"""
network.py
──────────
Outbound HTTP for the engine, built on a shared ``httpx.AsyncClient``.

Two calls only:

• ``fetch(request)``: forward a page request, snapshot the response.
• ``submit(record)``: deliver a queued form submission as form data.

Transport failures and timeouts are raised as ``NetworkError``; an HTTP error
status is *not* a failure here, it is returned as a normal snapshot and the
caller decides what a non-2xx means.
"""

from __future__ import annotations

from typing import Optional

import httpx

from errors import NetworkError
from logging_config import get_logger
from models import FetchRequest, QueuedSubmission, ResponseSnapshot, ResponseSource

logger = get_logger(__name__)

USER_AGENT = "portfolio-offline-engine/1.0"

# Headers that describe the upstream connection rather than the resource.
_HOP_BY_HOP = frozenset((
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
    "content-encoding", "content-length", "host",
))


def _clean_headers(headers) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if k.lower() not in _HOP_BY_HOP}


class Fetcher:
    """Thin async wrapper around one ``httpx.AsyncClient``."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def fetch(self, request: FetchRequest, timeout: Optional[float] = None) -> ResponseSnapshot:
        """
        Send ``request`` and return the response snapshot.

        ``timeout`` overrides the client's own transport timeout; ``None``
        leaves the client default in place.
        """
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.request(
                request.method,
                request.url,
                headers=_clean_headers(request.headers),
                content=request.body or None,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(request.url, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(request.url, str(exc) or type(exc).__name__) from exc

        return ResponseSnapshot(
            status=resp.status_code,
            headers=_clean_headers(resp.headers),
            body=resp.content,
            url=request.identity,
            source=ResponseSource.NETWORK,
        )

    async def submit(self, submission: QueuedSubmission) -> ResponseSnapshot:
        """Deliver ``submission.payload`` to its destination with its recorded method."""
        method = submission.method.upper()
        kwargs: dict = {"headers": {"Accept": "application/json"}}
        if method == "GET":
            kwargs["params"] = submission.payload
        else:
            kwargs["data"] = submission.payload

        try:
            resp = await self._client.request(method, submission.destination, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(submission.destination, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(submission.destination, str(exc) or type(exc).__name__) from exc

        logger.debug(
            "submission_delivered",
            submission_id=submission.id,
            status=resp.status_code,
        )
        return ResponseSnapshot(
            status=resp.status_code,
            headers=_clean_headers(resp.headers),
            body=resp.content,
            url=submission.destination,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
