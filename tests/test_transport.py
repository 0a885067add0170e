"""Test the aiohttp transport adapter."""

from __future__ import annotations

from unittest.mock import MagicMock

import aiohttp
import pytest

from talkwire_core.errors import TransportError, TransportResponseError, TransportTimeout
from talkwire_core.rpc import TransportRequest
from talkwire_transport import AiohttpTransport

from .conftest import create_mock_response


def make_request(body: bytes | None = b"\x82\x21\x00\x04noop\x00") -> TransportRequest:
    return TransportRequest(
        endpoint="legy.line-apps.com",
        path="/S4",
        body=body,
        headers={"X-Line-Access": "tok", "Content-Type": "application/x-thrift"},
        timeout=30.0,
    )


class TestAiohttpTransport:
    """Test request mapping and error translation."""

    async def test_post_with_body(self, mock_session: MagicMock) -> None:
        """Test a request with a body is POSTed to the channel URL."""
        mock_session.post.return_value = create_mock_response(read_data=b"reply")
        transport = AiohttpTransport(mock_session)

        body = await transport(make_request())

        assert body == b"reply"
        mock_session.post.assert_called_once()
        call = mock_session.post.call_args
        assert call.args[0] == "https://legy.line-apps.com/S4"
        assert call.kwargs["data"] == b"\x82\x21\x00\x04noop\x00"
        assert call.kwargs["headers"]["X-Line-Access"] == "tok"
        assert call.kwargs["timeout"].total == 30.0

    async def test_get_without_body(self, mock_session: MagicMock) -> None:
        """Test a body-less request uses GET."""
        mock_session.get.return_value = create_mock_response(read_data=b"{}")
        transport = AiohttpTransport(mock_session)

        body = await transport(make_request(body=None))

        assert body == b"{}"
        mock_session.get.assert_called_once()
        mock_session.post.assert_not_called()

    async def test_non_2xx_raises_response_error(self, mock_session: MagicMock) -> None:
        """Test an HTTP error status is reported with its status code."""
        mock_session.post.return_value = create_mock_response(status=410)
        transport = AiohttpTransport(mock_session)

        with pytest.raises(TransportResponseError, match="HTTP 410") as exc_info:
            await transport(make_request())
        assert exc_info.value.status == 410

    async def test_timeout(self, mock_session: MagicMock) -> None:
        """Test a timeout maps to TransportTimeout."""
        mock_session.post.side_effect = TimeoutError()
        transport = AiohttpTransport(mock_session)

        with pytest.raises(TransportTimeout, match="timed out"):
            await transport(make_request())

    async def test_client_error(self, mock_session: MagicMock) -> None:
        """Test aiohttp client errors map to TransportError."""
        mock_session.post.side_effect = aiohttp.ClientConnectionError("refused")
        transport = AiohttpTransport(mock_session)

        with pytest.raises(TransportError, match="refused") as exc_info:
            await transport(make_request())
        assert not isinstance(exc_info.value, TransportTimeout)

    async def test_borrowed_session_is_not_closed(self, mock_session: MagicMock) -> None:
        """Test close() leaves a caller-provided session open."""
        async with AiohttpTransport(mock_session):
            pass

        mock_session.close.assert_not_called()

    async def test_custom_scheme(self, mock_session: MagicMock) -> None:
        """Test the URL scheme can be overridden for local servers."""
        mock_session.post.return_value = create_mock_response(read_data=b"")
        transport = AiohttpTransport(mock_session, scheme="http")

        await transport(make_request())

        assert mock_session.post.call_args.args[0] == "http://legy.line-apps.com/S4"
