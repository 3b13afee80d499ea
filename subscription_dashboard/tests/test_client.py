"""Client layer: envelope unwrapping, single-flight refresh, activation polling, cache."""

import asyncio
import json

import httpx
import pytest

from subscription_dashboard.client.activation import ActivationState, backoff_delay, wait_for_activation
from subscription_dashboard.client.api_client import ApiError, SubscriptionClient
from subscription_dashboard.client.cache import SubscriptionCache
from subscription_dashboard.client.single_flight import SingleFlight

ACTIVE = {"id": "sub_1", "status": "active", "plan_id": "starter"}


def _ok(data):
    return httpx.Response(200, json={"success": True, "data": data})


def _client(handler, **kwargs):
    kwargs.setdefault("single_flight", SingleFlight())
    return SubscriptionClient("http://api.test", transport=httpx.MockTransport(handler), **kwargs)


async def _no_sleep(delay):
    return None


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_success_data_unwrapped(self):
        client = _client(lambda request: _ok({"subscription": ACTIVE}))
        assert await client.get_current_subscription() == ACTIVE
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_envelope_raises(self):
        def handler(request):
            return httpx.Response(
                409,
                json={"success": False, "message": "You already have an active subscription", "error": {"code": "already_subscribed", "request_id": "rid-1"}},
            )

        async with _client(handler, user_id="user_alice") as client:
            with pytest.raises(ApiError) as exc_info:
                await client.subscribe("starter")
        assert exc_info.value.status == 409
        assert exc_info.value.code == "already_subscribed"
        assert exc_info.value.request_id == "rid-1"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_non_envelope_rejected(self):
        async with _client(lambda request: httpx.Response(200, json={"plans": []})) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.list_plans()
        assert exc_info.value.code == "invalid_envelope"

    @pytest.mark.asyncio
    async def test_sends_user_header_and_json_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok({"id": "sub_2"})

        async with _client(handler, user_id="user_alice") as client:
            await client.upgrade("enterprise")
        assert seen[0].headers["X-User-Id"] == "user_alice"
        assert json.loads(seen[0].content) == {"new_plan_id": "enterprise"}


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        flight = SingleFlight()
        calls = 0

        async def refresh():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "new-token"

        results = await asyncio.gather(*(flight.do("cred", refresh) for _ in range(5)))

        assert results == ["new-token"] * 5
        assert calls == 1
        assert not flight.in_flight("cred")

    @pytest.mark.asyncio
    async def test_failure_shared_then_cleared(self):
        flight = SingleFlight()

        async def broken():
            await asyncio.sleep(0.01)
            raise RuntimeError("refresh failed")

        results = await asyncio.gather(flight.do("cred", broken), flight.do("cred", broken), return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)

        async def fixed():
            return "ok"

        assert await flight.do("cred", fixed) == "ok"

    @pytest.mark.asyncio
    async def test_concurrent_401s_refresh_once(self):
        refreshes = 0

        async def token_provider():
            nonlocal refreshes
            refreshes += 1
            await asyncio.sleep(0.01)
            return "fresh"

        def handler(request):
            if request.headers.get("Authorization") != "Bearer fresh":
                return httpx.Response(401, json={"success": False, "message": "Token expired", "error": {"code": "unauthenticated", "request_id": "r"}})
            return _ok({"subscription": ACTIVE})

        async with _client(handler, token="stale", token_provider=token_provider) as client:
            results = await asyncio.gather(*(client.get_current_subscription() for _ in range(3)))

        assert results == [ACTIVE] * 3
        assert refreshes == 1


class TestActivation:
    def test_backoff_is_bounded(self):
        delays = [backoff_delay(n, 1.0, 8.0) for n in range(1, 7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]

    @pytest.mark.asyncio
    async def test_active_after_a_few_polls(self):
        polls = {"me": 0}

        def handler(request):
            if request.url.path == "/api/subscriptions/me":
                polls["me"] += 1
                return _ok({"subscription": ACTIVE if polls["me"] >= 3 else None})
            return _ok({"session_id": "cs_1", "status": "complete", "payment_status": "paid"})

        async with _client(handler) as client:
            result = await wait_for_activation(client, "cs_1", sleep=_no_sleep)

        assert result.state == ActivationState.ACTIVE
        assert result.attempts == 3
        assert result.subscription == ACTIVE

    @pytest.mark.asyncio
    async def test_paid_but_not_visible_is_delayed(self):
        def handler(request):
            if request.url.path == "/api/subscriptions/me":
                return _ok({"subscription": None})
            return _ok({"session_id": "cs_1", "status": "complete", "payment_status": "paid"})

        async with _client(handler) as client:
            result = await wait_for_activation(client, "cs_1", attempts=4, sleep=_no_sleep)

        assert result.state == ActivationState.DELAYED
        assert result.attempts == 4

    @pytest.mark.asyncio
    async def test_unknown_status_is_processing_not_failed(self):
        def handler(request):
            if request.url.path == "/api/subscriptions/me":
                return _ok({"subscription": None})
            return httpx.Response(503, json={"success": False, "message": "down", "error": {"code": "upstream_unavailable", "request_id": "r"}})

        async with _client(handler) as client:
            result = await wait_for_activation(client, "cs_1", attempts=3, sleep=_no_sleep)

        assert result.state == ActivationState.PROCESSING

    @pytest.mark.asyncio
    async def test_expired_session_fails(self):
        def handler(request):
            if request.url.path == "/api/subscriptions/me":
                return _ok({"subscription": None})
            return _ok({"session_id": "cs_1", "status": "expired", "payment_status": "unpaid"})

        async with _client(handler) as client:
            result = await wait_for_activation(client, "cs_1", sleep=_no_sleep)

        assert result.state == ActivationState.FAILED
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts_only(self):
        delays = []

        async def record(delay):
            delays.append(delay)

        async with _client(lambda request: _ok({"subscription": None})) as client:
            await wait_for_activation(client, attempts=4, base_delay=0.5, max_delay=1.0, sleep=record)

        assert delays == [0.5, 1.0, 1.0]


class TestCache:
    @pytest.mark.asyncio
    async def test_cache_until_invalidated(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return _ok({"subscription": ACTIVE})

        now = {"t": 0.0}
        async with _client(handler) as client:
            cache = SubscriptionCache(client, ttl=30.0, clock=lambda: now["t"])
            assert await cache.get() == ACTIVE
            assert await cache.get() == ACTIVE
            assert calls["n"] == 1

            cache.on_change({"type": "subscription.cancelled"})
            await cache.get()
            assert calls["n"] == 2

            now["t"] = 31.0
            await cache.get()
            assert calls["n"] == 3

            cache.on_change({"type": "pong"})
            await cache.get()
            assert calls["n"] == 3
