"""
Unit tests for the Birdeye trend client (clients/trend_client.py)
"""

import asyncio
import json

import aiohttp
import pytest

from sandwich_bot.clients.trend_client import BirdeyeTrendClient
from sandwich_bot.core.config import TrendConfig
from sandwich_bot.core.errors import (
    ErrorKind,
    MalformedInputError,
    TransientNetworkError,
    TrendRefreshError
)
from sandwich_bot.core.trend_cache import TrendCache


class FakeResponse:

    def __init__(self, status=200, payload=None, text="", json_error=None):
        self.status = status
        self._payload = payload
        self._text = text
        self._json_error = json_error

    async def json(self, content_type=None):
        if self._json_error is not None:
            raise self._json_error
        return self._payload

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def _payload(*addresses):
    return {"success": True, "data": {"tokens": [{"address": a, "symbol": a[:3]} for a in addresses]}}


@pytest.fixture
def trend_config():
    return TrendConfig(api_key="key-123", limit=25)


class TestFetchTrending:

    @pytest.mark.asyncio
    async def test_returns_addresses_in_rank_order(self, trend_config):
        session = FakeSession(FakeResponse(payload=_payload("MintA", "MintB", "MintC")))
        client = BirdeyeTrendClient(trend_config, session=session)

        assert await client.fetch_trending() == ["MintA", "MintB", "MintC"]

    @pytest.mark.asyncio
    async def test_request_parameters(self, trend_config):
        session = FakeSession(FakeResponse(payload=_payload("MintA")))
        client = BirdeyeTrendClient(trend_config, session=session)

        await client.fetch_trending()

        request = session.requests[0]
        assert request["url"] == "https://public-api.birdeye.so/defi/tokenlist"
        assert request["params"]["sort_by"] == "v24hUSD"
        assert request["params"]["sort_type"] == "desc"
        assert request["params"]["limit"] == 25
        assert request["headers"]["X-API-KEY"] == "key-123"

    @pytest.mark.asyncio
    async def test_duplicates_and_missing_addresses_skipped(self, trend_config):
        payload = {"data": {"tokens": [
            {"address": "MintA"},
            {"symbol": "NOADDR"},
            {"address": "MintB"},
            {"address": "MintA"},
            "garbage"
        ]}}
        client = BirdeyeTrendClient(trend_config, session=FakeSession(FakeResponse(payload=payload)))

        assert await client.fetch_trending() == ["MintA", "MintB"]

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self, trend_config):
        session = FakeSession(FakeResponse(status=429, text="rate limited"))
        client = BirdeyeTrendClient(trend_config, session=session)

        with pytest.raises(TransientNetworkError) as exc_info:
            await client.fetch_trending()
        assert exc_info.value.context["status"] == 429

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
    async def test_transport_error_is_transient(self, trend_config, error):
        client = BirdeyeTrendClient(trend_config, session=FakeSession(error=error))

        with pytest.raises(TransientNetworkError):
            await client.fetch_trending()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"data": None}, {"data": {"tokens": "nope"}}, ["list"]])
    async def test_unexpected_shape_is_malformed(self, trend_config, payload):
        client = BirdeyeTrendClient(trend_config, session=FakeSession(FakeResponse(payload=payload)))

        with pytest.raises(MalformedInputError):
            await client.fetch_trending()

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self, trend_config):
        # Gateways answer 200 with an HTML maintenance page
        response = FakeResponse(
            text="<html>maintenance</html>",
            json_error=json.JSONDecodeError("Expecting value", "<html>maintenance</html>", 0)
        )
        client = BirdeyeTrendClient(trend_config, session=FakeSession(response))

        with pytest.raises(MalformedInputError) as exc_info:
            await client.fetch_trending()
        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)

    @pytest.mark.asyncio
    async def test_non_json_body_fails_refresh_and_keeps_snapshot(self, trend_config):
        session = FakeSession(FakeResponse(payload=_payload("MintA")))
        cache = TrendCache(BirdeyeTrendClient(trend_config, session=session))
        good = await cache.refresh()

        session.response = FakeResponse(json_error=json.JSONDecodeError("Expecting value", "", 0))
        with pytest.raises(TrendRefreshError) as exc_info:
            await cache.refresh()

        assert exc_info.value.kind == ErrorKind.MALFORMED_INPUT
        assert cache.current() is good

    @pytest.mark.asyncio
    async def test_close_leaves_shared_session_open(self, trend_config):
        session = FakeSession(FakeResponse(payload=_payload("MintA")))
        client = BirdeyeTrendClient(trend_config, session=session)

        await client.close()

        assert session.closed is False
