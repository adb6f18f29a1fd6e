import pytest

from campauth.service.errors import AuthenticationRequired, TokenExpired
from campauth.service.session_guard import SessionGuard, extract_bearer, parse_route_pattern


@pytest.fixture
def guard(services):
    return SessionGuard(services.tokens)


@pytest.fixture
def bearer(services):
    account = services.store.create_account("guest@example.com", is_owner=True)
    issued = services.tokens.issue_access_token(account)
    return account, issued, f"Bearer {issued.token}"


class TestHelpers:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

    def test_parse_route_pattern(self):
        method, pattern = parse_route_pattern("get ^/v1/catalog/.*$")
        assert method == "GET"
        assert pattern.match("/v1/catalog/sites")

    def test_parse_route_pattern_rejects_missing_regex(self):
        with pytest.raises(ValueError):
            parse_route_pattern("GET")


class TestPublicRoutes:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/v1/auth/login"),
            ("POST", "/v1/auth/refresh-token"),
            ("POST", "/v1/2fa/verify-login"),
            ("GET", "/healthz"),
            ("OPTIONS", "/v1/auth/me"),
        ],
    )
    def test_defaults(self, guard, method, path):
        assert guard.is_public(method, path)

    @pytest.mark.parametrize(
        "method,path",
        [("GET", "/v1/auth/login"), ("GET", "/v1/auth/me"), ("POST", "/v1/auth/login/extra")],
    )
    def test_protected(self, guard, method, path):
        assert not guard.is_public(method, path)

    def test_extra_patterns(self, services):
        guard = SessionGuard(
            services.tokens, extra_public_patterns=["GET ^/v1/catalog/.*$", "* ^/status$"]
        )
        assert guard.is_public("GET", "/v1/catalog/sites")
        assert guard.is_public("POST", "/status")
        assert not guard.is_public("POST", "/v1/catalog/sites")


class TestEvaluate:
    async def test_valid_token_attaches_identity(self, guard, bearer):
        account, issued, header = bearer

        outcome = await guard.evaluate("GET", "/v1/auth/me", header)

        assert outcome.authenticated
        assert outcome.identity.account_id == account.id
        assert outcome.identity.token_id == issued.claims.jti
        assert outcome.identity.has_role("owner")
        assert not outcome.identity.has_role("admin")

    async def test_missing_token_on_protected_route(self, guard):
        outcome = await guard.evaluate("GET", "/v1/auth/me", None)

        assert outcome.kind == "rejected"
        assert isinstance(outcome.error, AuthenticationRequired)

    async def test_missing_token_on_public_route(self, guard):
        outcome = await guard.evaluate("POST", "/v1/auth/login", None)
        assert outcome.kind == "anonymous"
        assert outcome.identity is None

    async def test_public_route_still_identifies_caller(self, guard, bearer):
        account, _, header = bearer

        outcome = await guard.evaluate("POST", "/v1/auth/logout", header)
        assert outcome.authenticated
        assert outcome.identity.account_id == account.id

    async def test_garbage_token_on_public_route_is_anonymous(self, guard):
        outcome = await guard.evaluate("POST", "/v1/auth/logout", "Bearer junk")
        assert outcome.kind == "anonymous"

    async def test_garbage_token_rejected(self, guard):
        outcome = await guard.evaluate("GET", "/v1/auth/me", "Bearer junk")

        assert outcome.kind == "rejected"
        assert outcome.error.error_code == "unauthorized"

    async def test_expired_token_reports_expiry(self, guard, bearer, services):
        _, _, header = bearer
        services.clock.advance(services.settings.access_token_ttl_seconds + 1)

        outcome = await guard.evaluate("GET", "/v1/auth/me", header)
        assert isinstance(outcome.error, TokenExpired)

    async def test_denylisted_token_rejected(self, guard, bearer, services):
        _, issued, header = bearer
        await services.tokens.denylist_access_token(
            issued.claims.jti, issued.claims.expires_at_dt
        )

        outcome = await guard.evaluate("GET", "/v1/auth/me", header)

        assert outcome.kind == "rejected"
        assert outcome.error.message == "access token has been revoked"
