import asyncio
import tempfile
from pathlib import Path

import httpx
import pytest

from openweather import (
    OpenWeatherAPIError,
    OpenWeatherClient,
    OpenWeatherConnectionError,
    OpenWeatherRateLimitError,
    OpenWeatherValidationError,
    RequestKind,
    Settings,
)
from openweather.models import CacheEntry, CityMatch, FetchResult
from openweather.types import CACHE_PREFIX


CURRENT = {"name": "Paris", "main": {"temp": 18.2}, "cod": 200}
FORECAST = {"cod": "200", "list": [{"dt": 1700000000, "main": {"temp": 12.0}}]}
GEOCODING = [
    {"name": "Portland", "state": "Oregon", "country": "US", "lat": 45.52, "lon": -122.67},
    {"name": "Portland", "country": "JM", "lat": 18.1, "lon": -77.1},
]


class Recorder:
    """MockTransport handler that records requests."""

    def __init__(self, responder=None):
        self.requests = []
        self.responder = responder or (lambda request: httpx.Response(200, json=CURRENT))

    def __call__(self, request):
        self.requests.append(request)
        return self.responder(request)


class GatedHandler:
    """Async handler holding each response until its gate is opened."""

    def __init__(self, payloads):
        self.payloads = payloads
        self.gates = [asyncio.Event() for _ in payloads]
        self.requests = []

    async def __call__(self, request):
        index = len(self.requests)
        self.requests.append(request)
        await self.gates[index].wait()
        return httpx.Response(200, json=self.payloads[index])

    async def wait_for_requests(self, count):
        for _ in range(1000):
            if len(self.requests) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} requests, got {len(self.requests)}")


def make_client(handler, cache, limiter, clock, **kwargs):
    return OpenWeatherClient(
        api_key="test-key",
        cache=cache,
        rate_limiter=limiter,
        clock=clock,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def seed(storage, key, payload, written_at):
    entry = CacheEntry(key=key, payload=payload, written_at=written_at)
    storage.set_item(CACHE_PREFIX + key, entry.model_dump_json())


def connect_error(request):
    raise httpx.ConnectError("connection refused", request=request)


class TestCacheFirst:
    @pytest.mark.asyncio
    async def test_fresh_entry_skips_limiter_and_network(self, cache, limiter, clock):
        handler = Recorder()
        cache.put("current_Paris", CURRENT)
        before = limiter.call_count

        async with make_client(handler, cache, limiter, clock) as client:
            result = await client.acquire(RequestKind.CURRENT, "Paris", False)

        assert result.came_from_cache is True
        assert result.data == CURRENT
        assert limiter.call_count == before
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_cached_entry_reports_age(self, cache, storage, limiter, clock):
        seed(storage, "current_London", {"name": "London"}, clock.now - 30)

        async with make_client(Recorder(), cache, limiter, clock) as client:
            result = await client.acquire("current", "London", False)

        assert result.came_from_cache is True
        assert result.age_seconds == 30
        assert result.data == {"name": "London"}

    @pytest.mark.asyncio
    async def test_forced_refresh_uses_limiter_and_rewrites_entry(
        self, cache, limiter, clock
    ):
        handler = Recorder(lambda r: httpx.Response(200, json={"name": "Paris", "v": 2}))
        cache.put("current_Paris", CURRENT)
        clock.advance(10)

        async with make_client(handler, cache, limiter, clock) as client:
            result = await client.acquire(RequestKind.CURRENT, "Paris", True)

        assert result == FetchResult(data={"name": "Paris", "v": 2}, came_from_cache=False, age_seconds=0)
        assert limiter.call_count == 1
        assert len(handler.requests) == 1
        entry = cache.peek("current_Paris")
        assert entry.written_at == clock.now
        assert entry.payload["v"] == 2

    @pytest.mark.asyncio
    async def test_stale_entry_triggers_fetch(self, cache, limiter, clock):
        handler = Recorder()
        cache.put("current_Paris", {"old": True})
        clock.advance(61)

        async with make_client(handler, cache, limiter, clock) as client:
            result = await client.get_current("Paris")

        assert result.came_from_cache is False
        assert len(handler.requests) == 1
        assert cache.get("current_Paris").payload == CURRENT

    @pytest.mark.asyncio
    async def test_non_finite_timestamp_is_refetched(
        self, storage, cache, limiter, clock
    ):
        raw = '{"key": "current_Paris", "payload": {}, "written_at": NaN}'
        storage.set_item(CACHE_PREFIX + "current_Paris", raw)
        handler = Recorder()

        async with make_client(handler, cache, limiter, clock) as client:
            result = await client.acquire(RequestKind.CURRENT, "Paris")

        assert result.came_from_cache is False
        assert len(handler.requests) == 1
        assert cache.get("current_Paris").payload == CURRENT


class TestRequests:
    @pytest.mark.asyncio
    async def test_current_params(self, cache, limiter, clock):
        handler = Recorder()
        async with make_client(handler, cache, limiter, clock) as client:
            await client.get_current(" Paris ")

        request = handler.requests[0]
        assert request.url.path == "/data/2.5/weather"
        assert request.url.params["q"] == "Paris"
        assert request.url.params["units"] == "metric"
        assert request.url.params["appid"] == "test-key"

    @pytest.mark.asyncio
    async def test_forecast_endpoint(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(200, json=FORECAST))
        async with make_client(handler, cache, limiter, clock) as client:
            result = await client.get_forecast("Paris")

        assert handler.requests[0].url.path == "/data/2.5/forecast"
        assert result.data == FORECAST
        assert cache.get("forecast_Paris") is not None

    @pytest.mark.asyncio
    async def test_coordinates_params(self, cache, limiter, clock):
        handler = Recorder()
        async with make_client(handler, cache, limiter, clock) as client:
            await client.get_by_coordinates(48.85, 2.35)

        params = handler.requests[0].url.params
        assert params["lat"] == "48.85"
        assert params["lon"] == "2.35"
        assert "q" not in params
        assert cache.get("coords_48.85_2.35") is not None

    @pytest.mark.asyncio
    async def test_no_appid_without_key(self, cache, limiter, clock):
        handler = Recorder()
        client = OpenWeatherClient(
            cache=cache,
            rate_limiter=limiter,
            clock=clock,
            transport=httpx.MockTransport(handler),
        )
        await client.get_current("Paris")
        await client.close()

        assert "appid" not in handler.requests[0].url.params


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_formats_matches(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(200, json=GEOCODING))
        async with make_client(handler, cache, limiter, clock) as client:
            matches = await client.search_cities("Portl")

        request = handler.requests[0]
        assert request.url.path == "/geo/1.0/direct"
        assert request.url.params["limit"] == "5"
        assert [m.display for m in matches] == ["Portland, Oregon, US", "Portland, JM"]
        assert isinstance(matches[0], CityMatch)
        assert cache.get("search_Portl").payload == GEOCODING

    @pytest.mark.asyncio
    async def test_short_query_does_nothing(self, cache, limiter, clock):
        handler = Recorder()
        async with make_client(handler, cache, limiter, clock) as client:
            assert await client.search_cities("P") == []
            assert await client.search_cities("") == []

        assert handler.requests == []
        assert limiter.call_count == 0

    @pytest.mark.asyncio
    async def test_search_served_from_cache(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(200, json=GEOCODING))
        async with make_client(handler, cache, limiter, clock) as client:
            await client.search_cities("Portl")
            matches = await client.search_cities("Portl")

        assert len(handler.requests) == 1
        assert len(matches) == 2

    @pytest.mark.asyncio
    async def test_malformed_items_are_skipped(self, cache, limiter, clock):
        payload = GEOCODING + [
            {"name": "Nowhere", "country": "US"},
            {"name": None, "country": "US", "lat": 1.0, "lon": 2.0},
            "Portland",
        ]
        handler = Recorder(lambda r: httpx.Response(200, json=payload))
        async with make_client(handler, cache, limiter, clock) as client:
            matches = await client.search_cities("Portl")

        assert [m.display for m in matches] == ["Portland, Oregon, US", "Portland, JM"]

    @pytest.mark.asyncio
    async def test_non_list_search_body_is_api_error(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(200, json={"cod": 200}))
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherAPIError, match="Malformed response"):
                await client.search_cities("Portl")


class TestFailures:
    @pytest.mark.asyncio
    async def test_budget_exhausted_leaves_cache_unchanged(
        self, cache, limiter, clock
    ):
        handler = Recorder()
        cache.put("current_Tokyo", {"name": "Tokyo"})
        before = cache.peek("current_Tokyo")
        limiter.call_count = 50

        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherRateLimitError) as exc_info:
                await client.acquire(RequestKind.CURRENT, "Tokyo", True)

        assert exc_info.value.retry_after == 60
        assert "Please wait" in str(exc_info.value)
        assert handler.requests == []
        assert cache.peek("current_Tokyo") == before

    @pytest.mark.asyncio
    async def test_budget_exhausted_does_not_fall_back_to_stale(
        self, cache, limiter, clock
    ):
        handler = Recorder()
        cache.put("current_Tokyo", {"name": "Tokyo"})
        clock.advance(61)
        for _ in range(50):
            assert limiter.admit()

        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherRateLimitError):
                await client.get_current("Tokyo")

        assert handler.requests == []
        assert cache.get("current_Tokyo") is None
        assert cache.peek("current_Tokyo").payload == {"name": "Tokyo"}

    @pytest.mark.asyncio
    async def test_transport_error_leaves_cache_unchanged(self, cache, limiter, clock):
        cache.put("current_Paris", CURRENT)
        before = cache.peek("current_Paris")

        async with make_client(connect_error, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherConnectionError) as exc_info:
                await client.acquire(RequestKind.CURRENT, "Paris", True)

        assert "Network error" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert cache.peek("current_Paris") == before

    @pytest.mark.asyncio
    async def test_timeout_is_connection_error(self, cache, limiter, clock):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(timeout, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherConnectionError):
                await client.get_current("Paris")

    @pytest.mark.asyncio
    async def test_upstream_message_surfaced_verbatim(self, cache, limiter, clock):
        handler = Recorder(
            lambda r: httpx.Response(404, json={"cod": "404", "message": "city not found"})
        )
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherAPIError) as exc_info:
                await client.get_current("Atlantis")

        assert exc_info.value.reason == "city not found"
        assert exc_info.value.status_code == 404
        assert cache.peek("current_Atlantis") is None

    @pytest.mark.asyncio
    async def test_upstream_error_without_json(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(502, text="Bad Gateway"))
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherAPIError) as exc_info:
                await client.get_current("Paris")

        assert exc_info.value.reason == "Failed to fetch weather data"

    @pytest.mark.asyncio
    async def test_malformed_success_body(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(200, text="<html>"))
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherAPIError):
                await client.get_current("Paris")

    @pytest.mark.asyncio
    async def test_no_automatic_retry(self, cache, limiter, clock):
        handler = Recorder(lambda r: httpx.Response(500, json={"message": "boom"}))
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherAPIError):
                await client.get_current("Paris")

        assert len(handler.requests) == 1
        assert limiter.call_count == 1


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_latitude(self, cache, limiter, clock):
        handler = Recorder()
        async with make_client(handler, cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherValidationError) as exc_info:
                await client.get_by_coordinates(91.0, 0.0)

        assert "Latitude must be in range" in str(exc_info.value)
        assert handler.requests == []
        assert limiter.call_count == 0

    @pytest.mark.asyncio
    async def test_invalid_longitude(self, cache, limiter, clock):
        async with make_client(Recorder(), cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherValidationError):
                await client.get_by_coordinates(0.0, 181.0)

    @pytest.mark.asyncio
    async def test_unknown_kind(self, cache, limiter, clock):
        async with make_client(Recorder(), cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherValidationError):
                await client.acquire("history", "Paris")

    @pytest.mark.asyncio
    async def test_empty_city(self, cache, limiter, clock):
        async with make_client(Recorder(), cache, limiter, clock) as client:
            with pytest.raises(OpenWeatherValidationError):
                await client.get_current("  ")


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_call(
        self, cache, limiter, clock
    ):
        handler = GatedHandler([CURRENT])
        async with make_client(handler, cache, limiter, clock) as client:
            first = asyncio.ensure_future(client.get_current("Paris"))
            await handler.wait_for_requests(1)
            second = asyncio.ensure_future(client.get_current("Paris", force_refresh=True))
            await asyncio.sleep(0)
            handler.gates[0].set()
            results = await asyncio.gather(first, second)

        assert [r.data for r in results] == [CURRENT, CURRENT]
        assert len(handler.requests) == 1
        assert limiter.call_count == 1
        assert client._in_flight == {}

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_waiter(self, cache, limiter, clock):
        gate = asyncio.Event()
        requests = []

        async def failing(request):
            requests.append(request)
            await gate.wait()
            raise httpx.ConnectError("offline", request=request)

        async with make_client(failing, cache, limiter, clock) as client:
            first = asyncio.ensure_future(client.get_current("Paris"))
            for _ in range(100):
                if requests:
                    break
                await asyncio.sleep(0)
            second = asyncio.ensure_future(client.get_current("Paris"))
            await asyncio.sleep(0)
            gate.set()
            outcomes = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(o, OpenWeatherConnectionError) for o in outcomes)
        assert len(requests) == 1
        assert client._in_flight == {}

    @pytest.mark.asyncio
    async def test_without_coalescing_each_call_is_charged(
        self, cache, limiter, clock
    ):
        handler = GatedHandler([CURRENT, CURRENT])
        async with make_client(handler, cache, limiter, clock, coalesce=False) as client:
            first = asyncio.ensure_future(client.get_current("Paris"))
            second = asyncio.ensure_future(client.get_current("Paris"))
            await handler.wait_for_requests(2)
            for gate in handler.gates:
                gate.set()
            await asyncio.gather(first, second)

        assert len(handler.requests) == 2
        assert limiter.call_count == 2

    @pytest.mark.asyncio
    async def test_out_of_order_response_does_not_regress_cache(
        self, cache, limiter, clock
    ):
        handler = GatedHandler([{"v": 1}, {"v": 2}])
        async with make_client(handler, cache, limiter, clock, coalesce=False) as client:
            older = asyncio.ensure_future(client.get_current("Paris", True))
            await handler.wait_for_requests(1)
            newer = asyncio.ensure_future(client.get_current("Paris", True))
            await handler.wait_for_requests(2)

            handler.gates[1].set()
            assert (await newer).data == {"v": 2}
            handler.gates[0].set()
            assert (await older).data == {"v": 1}

        assert cache.peek("current_Paris").payload == {"v": 2}
        assert client._issued == {}
        assert client._accepted == {}
        assert client._outstanding == {}

    @pytest.mark.asyncio
    async def test_ordering_state_released_after_each_request(
        self, cache, limiter, clock
    ):
        def respond(request):
            if request.url.path.endswith("/weather"):
                connect_error(request)
            return httpx.Response(200, json=[])

        async with make_client(Recorder(respond), cache, limiter, clock) as client:
            for query in ["Po", "Por", "Port", "Portl"]:
                await client.search_cities(query)
            with pytest.raises(OpenWeatherConnectionError):
                await client.get_current("Paris")

        assert client._issued == {}
        assert client._accepted == {}
        assert client._outstanding == {}


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_collects_results_and_failures(self, cache, limiter, clock):
        def responder(request):
            if request.url.params["q"] == "Atlantis":
                return httpx.Response(404, json={"message": "city not found"})
            if request.url.path.endswith("/forecast"):
                return httpx.Response(200, json=FORECAST)
            return httpx.Response(200, json=CURRENT)

        handler = Recorder(responder)
        async with make_client(handler, cache, limiter, clock) as client:
            results = await client.refresh(lambda: ["Paris", "Atlantis"])

        assert len(results) == 4
        assert results[(RequestKind.FORECAST, "Paris")].data == FORECAST
        assert isinstance(results[(RequestKind.CURRENT, "Atlantis")], OpenWeatherAPIError)
        assert len(handler.requests) == 4

    @pytest.mark.asyncio
    async def test_refresh_forces_by_default(self, cache, limiter, clock):
        handler = Recorder()
        cache.put("current_Paris", {"old": True})
        async with make_client(handler, cache, limiter, clock) as client:
            await client.refresh(["Paris"], kinds=[RequestKind.CURRENT])

        assert len(handler.requests) == 1
        assert cache.get("current_Paris").payload == CURRENT


class TestCacheSurface:
    @pytest.mark.asyncio
    async def test_cache_age_survives_staleness(self, cache, limiter, clock):
        async with make_client(Recorder(), cache, limiter, clock) as client:
            await client.get_current("Paris")
            clock.advance(75)

            assert client.cache_age_seconds(RequestKind.CURRENT, "Paris") == 75
            assert client.cache_age_seconds("forecast", "Paris") is None

    def test_clear_all_and_stats(self, cache, limiter, clock):
        client = make_client(Recorder(), cache, limiter, clock)
        cache.put("current_Paris", CURRENT)
        clock.advance(61)
        cache.put("forecast_Paris", FORECAST)

        stats = client.stats()
        assert (stats.total, stats.fresh, stats.stale) == (2, 1, 1)

        assert client.sweep_expired() == 1
        assert client.clear_all() == 1
        assert client.stats().total == 0

    def test_invalidate(self, cache, limiter, clock):
        client = make_client(Recorder(), cache, limiter, clock)
        cache.put("coords_48.85_2.35", CURRENT)
        client.invalidate(RequestKind.COORDINATES, (48.85, 2.35))
        assert cache.peek("coords_48.85_2.35") is None


class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager(self, cache, limiter, clock):
        async with make_client(Recorder(), cache, limiter, clock) as client:
            assert client._client is not None
        assert client._client is None

    @pytest.mark.asyncio
    async def test_close_idempotent(self, cache, limiter, clock):
        client = make_client(Recorder(), cache, limiter, clock)
        await client.close()
        await client.close()

    @pytest.mark.asyncio
    async def test_ensure_client_creates_once(self, cache, limiter, clock):
        client = make_client(Recorder(), cache, limiter, clock)
        c1 = await client._ensure_client()
        c2 = await client._ensure_client()
        assert c1 is c2
        await client.close()

    def test_default_cache_is_file_backed(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = OpenWeatherClient(cache_dir=Path(tmpdir))
            client.cache.put("current_Paris", CURRENT)
            assert any(Path(tmpdir).iterdir())

    def test_from_settings(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            settings = Settings(api_key="k", cache_dir=Path(tmpdir), max_calls=3, cache_ttl=120)
            client = OpenWeatherClient.from_settings(settings)

            assert client.rate_limiter.max_calls == 3
            assert client.cache.ttl == 120
            assert client._api_key == "k"


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.api_key is None
        assert settings.cache_ttl == 60
        assert settings.max_calls == 50
        assert settings.api_url == "https://api.openweathermap.org/data/2.5"

    def test_from_env(self):
        settings = Settings.from_env(
            {
                "OPENWEATHER_API_KEY": "abc",
                "OPENWEATHER_MAX_CALLS": "10",
                "OPENWEATHER_CACHE_DIR": "/tmp/ow-cache",
            }
        )
        assert settings.api_key == "abc"
        assert settings.max_calls == 10
        assert settings.cache_dir == Path("/tmp/ow-cache")

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            Settings.from_env({"OPENWEATHER_CACHE_TTL": "-5"})
