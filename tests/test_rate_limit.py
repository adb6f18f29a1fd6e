import pytest

from campauth.service.errors import RateLimited
from campauth.service.rate_limit import (
    AUTH_SCOPE,
    GENERAL_SCOPE,
    RateLimitDecision,
    RateLimiter,
    client_address,
    scope_for_path,
)
from campauth.storage.counters import MemoryCounterStore


@pytest.fixture
def make_limiter(make_services, clock):
    def _build(**overrides):
        values = {"auth_rate_limit": 3, "auth_rate_limit_window_seconds": 60}
        values.update(overrides)
        settings = make_services(**values).settings
        return RateLimiter(settings, MemoryCounterStore(clock=clock.time))

    return _build


class TestScopes:
    @pytest.mark.parametrize(
        "path,scope",
        [
            ("/v1/auth/login", AUTH_SCOPE),
            ("/v1/auth/refresh-token", AUTH_SCOPE),
            ("/v1/2fa/verify-login", AUTH_SCOPE),
            ("/v1/auth/me", GENERAL_SCOPE),
            ("/v1/2fa/setup", GENERAL_SCOPE),
            ("/healthz", None),
        ],
    )
    def test_scope_for_path(self, path, scope):
        assert scope_for_path(path) == scope


class TestClientAddress:
    def test_uses_peer_by_default(self):
        assert client_address("10.0.0.1", "198.51.100.7", trust_forwarded_for=False) == "10.0.0.1"

    def test_trusts_first_forwarded_hop(self):
        value = client_address("10.0.0.1", "198.51.100.7, 10.0.0.2", trust_forwarded_for=True)
        assert value == "198.51.100.7"

    def test_ignores_unparseable_forwarded_value(self):
        assert client_address("10.0.0.1", "nonsense", trust_forwarded_for=True) == "10.0.0.1"

    def test_unknown_when_nothing_usable(self):
        assert client_address(None, None, trust_forwarded_for=False) == "unknown"


class TestRateLimiter:
    async def test_budget_then_rejection(self, make_limiter, clock):
        limiter = make_limiter()

        remaining = [(await limiter.enforce(AUTH_SCOPE, "10.0.0.1")).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(RateLimited) as excinfo:
            await limiter.enforce(AUTH_SCOPE, "10.0.0.1")
        assert excinfo.value.retry_after == 60
        assert excinfo.value.detail == {"scope": AUTH_SCOPE, "limit": 3}

    async def test_window_slides(self, make_limiter, clock):
        limiter = make_limiter()
        await limiter.enforce(AUTH_SCOPE, "10.0.0.1")
        clock.advance(30)
        await limiter.enforce(AUTH_SCOPE, "10.0.0.1")
        await limiter.enforce(AUTH_SCOPE, "10.0.0.1")

        decision = await limiter.check(AUTH_SCOPE, "10.0.0.1")
        assert not decision.allowed
        assert decision.reset_seconds == 30

        clock.advance(31)
        assert (await limiter.check(AUTH_SCOPE, "10.0.0.1")).allowed

    async def test_clients_and_scopes_are_separate(self, make_limiter, clock):
        limiter = make_limiter()
        for _ in range(3):
            await limiter.enforce(AUTH_SCOPE, "10.0.0.1")

        assert (await limiter.check(AUTH_SCOPE, "10.0.0.2")).allowed
        assert (await limiter.check(GENERAL_SCOPE, "10.0.0.1")).allowed

    async def test_zero_limit_disables_scope(self, make_limiter, clock):
        limiter = make_limiter(auth_rate_limit=0)

        for _ in range(10):
            decision = await limiter.enforce(AUTH_SCOPE, "10.0.0.1")
        assert decision.allowed


class TestHeaders:
    def test_apply_headers(self):
        headers = {}
        RateLimitDecision(True, 10, 7, 60).apply_headers(headers)

        assert headers == {
            "RateLimit-Limit": "10",
            "RateLimit-Remaining": "7",
            "RateLimit-Reset": "60",
        }

    def test_disabled_limit_sets_nothing(self):
        headers = {}
        RateLimitDecision(True, 0, 0, 0).apply_headers(headers)
        assert headers == {}
