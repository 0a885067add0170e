"""aiohttp transport for the talkwire RPC dispatcher."""

from __future__ import annotations

import logging
from types import TracebackType

import aiohttp

from talkwire_core.errors import TransportError, TransportResponseError, TransportTimeout
from talkwire_core.rpc import TransportRequest

_LOGGER = logging.getLogger(__name__)


class AiohttpTransport:
    """Sends dispatcher requests over HTTPS.

    Requests with a body are POSTed, body-less ones use GET. The response
    body is returned as-is; decoding is the dispatcher's job.

    A session passed in is borrowed and never closed; otherwise one is
    created on first use and closed by ``close``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        scheme: str = "https",
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._scheme = scheme

    def _url(self, request: TransportRequest) -> str:
        return f"{self._scheme}://{request.endpoint}{request.path}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def __call__(self, request: TransportRequest) -> bytes:
        """Perform one request.

        Raises:
            TransportResponseError: If the server answers with a non-2xx status.
            TransportTimeout: If the request times out.
            TransportError: If the network request fails.
        """
        session = self._get_session()
        url = self._url(request)
        headers = dict(request.headers)
        timeout = aiohttp.ClientTimeout(total=request.timeout)
        try:
            if request.body is None:
                context = session.get(url, headers=headers, timeout=timeout)
            else:
                context = session.post(
                    url, data=request.body, headers=headers, timeout=timeout
                )
            async with context as resp:
                if not 200 <= resp.status < 300:
                    raise TransportResponseError(
                        resp.status, f"{request.path} returned HTTP {resp.status}"
                    )
                body: bytes = await resp.read()
        except TimeoutError as err:
            raise TransportTimeout(f"{request.path} timed out") from err
        except aiohttp.ClientError as err:
            raise TransportError(f"{request.path} failed: {err}") from err
        _LOGGER.debug("[%s] %s -> %d bytes", request.endpoint, request.path, len(body))
        return body

    async def close(self) -> None:
        """Close the session if this transport created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> AiohttpTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
