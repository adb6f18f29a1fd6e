"""Tests for access token signing, refresh rotation and the access denylist."""

import asyncio
import json

import pytest

from campauth.service.errors import (
    TokenExpired,
    TokenInvalid,
    TokenMalformed,
    TokenNotFound,
    TokenRevoked,
)
from campauth.service.keys import SigningKeyProvider
from campauth.service.tokens import ClientContext, _decode_segment, _encode_segment
from campauth.storage.common import hash_token

OLD_SECRET = "previous-signing-secret-abcdefghijklmnop"
NEW_SECRET = "current-signing-secret-qrstuvwxyz0123456"


def _forge(header: dict, payload: dict, signature: bytes = b"") -> str:
    return ".".join(
        [
            _encode_segment(json.dumps(header).encode()),
            _encode_segment(json.dumps(payload).encode()),
            _encode_segment(signature),
        ]
    )


def _split(token: str):
    header_b64, payload_b64, sig_b64 = token.split(".")
    return header_b64, payload_b64, sig_b64


@pytest.fixture
def account(services):
    return services.store.create_account("traveller@example.com", is_admin=True)


class TestAccessTokens:
    def test_issued_token_verifies_with_claims(self, services, account):
        issued = services.tokens.issue_access_token(account)
        claims = services.tokens.verify_access_token(issued.token)

        assert claims.subject == account.id
        assert claims.roles == frozenset({"user", "admin"})
        assert claims.jti == issued.claims.jti
        assert claims.expires_at - claims.issued_at == services.settings.access_token_ttl_seconds

    def test_header_names_signing_key(self, services, account):
        issued = services.tokens.issue_access_token(account)
        header_b64, _, _ = _split(issued.token)
        header = json.loads(_decode_segment(header_b64))
        assert header == {"alg": "HS256", "typ": "JWT", "kid": services.keys.active.kid}

    def test_valid_until_just_before_expiry(self, services, account):
        issued = services.tokens.issue_access_token(account)
        services.clock.advance(services.settings.access_token_ttl_seconds - 1)

        assert services.tokens.verify_access_token(issued.token).subject == account.id

    def test_expired_one_second_after_ttl(self, services, account):
        issued = services.tokens.issue_access_token(account)
        services.clock.advance(services.settings.access_token_ttl_seconds + 1)

        with pytest.raises(TokenExpired):
            services.tokens.verify_access_token(issued.token)

    def test_expired_exactly_at_exp(self, services, account):
        issued = services.tokens.issue_access_token(account)
        services.clock.advance(services.settings.access_token_ttl_seconds)

        with pytest.raises(TokenExpired):
            services.tokens.verify_access_token(issued.token)

    def test_leeway_extends_acceptance(self, make_services):
        services = make_services(jwt_leeway_seconds=30)
        account = services.store.create_account("leeway@example.com")
        issued = services.tokens.issue_access_token(account)
        services.clock.advance(services.settings.access_token_ttl_seconds + 10)

        assert services.tokens.verify_access_token(issued.token).subject == account.id

    def test_tampered_payload_rejected(self, services, account):
        issued = services.tokens.issue_access_token(account)
        header_b64, _, sig_b64 = _split(issued.token)
        forged_payload = _encode_segment(
            json.dumps({"sub": account.id, "roles": ["owner"], "typ": "access"}).encode()
        )

        with pytest.raises(TokenInvalid):
            services.tokens.verify_access_token(f"{header_b64}.{forged_payload}.{sig_b64}")

    def test_alg_none_rejected(self, services, account):
        issued = services.tokens.issue_access_token(account)
        forged = _forge(
            {"alg": "none", "typ": "JWT", "kid": services.keys.active.kid},
            {"sub": account.id, "typ": "access", "exp": 9999999999, "iat": 0, "jti": "x"},
        )
        assert issued.token != forged

        with pytest.raises(TokenInvalid):
            services.tokens.verify_access_token(forged)

    def test_unknown_kid_rejected(self, services, account):
        forged = _forge(
            {"alg": "HS256", "typ": "JWT", "kid": "not-a-key"},
            {"sub": account.id},
            b"sig",
        )
        with pytest.raises(TokenInvalid):
            services.tokens.verify_access_token(forged)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_malformed_tokens(self, services, token):
        with pytest.raises(TokenMalformed):
            services.tokens.verify_access_token(token)

    def test_non_json_segments_are_malformed(self, services):
        token = ".".join(_encode_segment(b"not json") for _ in range(3))
        with pytest.raises(TokenMalformed):
            services.tokens.verify_access_token(token)

    def test_wrong_audience_rejected(self, make_services):
        issuer = make_services()
        verifier = make_services(jwt_audience="partner-portal")
        account = issuer.store.create_account("aud@example.com")
        token = issuer.tokens.issue_access_token(account).token

        with pytest.raises(TokenInvalid):
            verifier.tokens.verify_access_token(token)

    def test_token_signed_with_retired_key_still_verifies(self, make_services):
        before = make_services(jwt_secret=OLD_SECRET)
        after = make_services(jwt_secret=NEW_SECRET, jwt_previous_secrets=[OLD_SECRET])
        account = before.store.create_account("rotate@example.com")
        token = before.tokens.issue_access_token(account).token

        assert after.tokens.verify_access_token(token).subject == account.id
        assert after.keys.active.kid != before.keys.active.kid

    def test_token_rejected_once_key_dropped(self, make_services):
        before = make_services(jwt_secret=OLD_SECRET)
        after = make_services(jwt_secret=NEW_SECRET)
        account = before.store.create_account("dropped@example.com")
        token = before.tokens.issue_access_token(account).token

        with pytest.raises(TokenInvalid):
            after.tokens.verify_access_token(token)


class TestRefreshTokens:
    async def test_refresh_token_stored_hashed(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())

        record = services.store.get_refresh_token_by_hash(hash_token(pair.refresh_token))
        assert record is not None
        assert pair.refresh_token not in {r.token_hash for r in services.store.refresh_tokens.values()}

    async def test_redeem_rotates_and_is_single_use(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())

        new_pair, redeemed_for = await services.tokens.redeem_refresh_token(
            pair.refresh_token, ClientContext()
        )
        assert redeemed_for.id == account.id
        assert new_pair.refresh_token != pair.refresh_token
        assert services.tokens.verify_access_token(new_pair.access_token).subject == account.id

        with pytest.raises(TokenRevoked):
            await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

    async def test_successor_shares_family(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())
        new_pair, _ = await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

        first = services.store.get_refresh_token_by_hash(hash_token(pair.refresh_token))
        second = services.store.get_refresh_token_by_hash(hash_token(new_pair.refresh_token))
        assert second.family_id == first.family_id
        assert second.predecessor_id == first.id
        assert first.revoked_reason == "rotated"

    async def test_concurrent_redemptions_yield_one_success(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())

        results = await asyncio.gather(
            *[
                services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())
                for _ in range(5)
            ],
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert all(isinstance(f, (TokenRevoked, TokenNotFound)) for f in failures)

    async def test_reuse_of_rotated_token_revokes_family(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())
        rotated, _ = await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

        with pytest.raises(TokenRevoked):
            await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())
        # The legitimate successor is burned too
        with pytest.raises(TokenRevoked):
            await services.tokens.redeem_refresh_token(rotated.refresh_token, ClientContext())

    async def test_reuse_detection_can_be_disabled(self, make_services):
        services = make_services(refresh_reuse_revokes_family=False)
        account = services.store.create_account("reuse@example.com")
        pair = await services.tokens.issue_token_pair(account, ClientContext())
        rotated, _ = await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

        with pytest.raises(TokenRevoked):
            await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())
        again, _ = await services.tokens.redeem_refresh_token(rotated.refresh_token, ClientContext())
        assert again.refresh_token

    async def test_unknown_refresh_token(self, services):
        with pytest.raises(TokenNotFound):
            await services.tokens.redeem_refresh_token("never-issued", ClientContext())

    async def test_expired_refresh_token(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())
        services.clock.advance(services.settings.refresh_token_ttl_minutes * 60 + 1)

        with pytest.raises(TokenExpired):
            await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

    async def test_remember_me_extends_and_is_inherited(self, services, account):
        start = services.clock.now()
        pair = await services.tokens.issue_token_pair(account, ClientContext(remember_me=True))
        ttl_seconds = services.settings.remember_me_refresh_ttl_minutes * 60
        assert (pair.refresh_expires_at - start).total_seconds() == ttl_seconds

        services.clock.advance(60)
        rotated, _ = await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())
        assert (rotated.refresh_expires_at - services.clock.now()).total_seconds() == ttl_seconds

    async def test_inactive_account_cannot_refresh(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())
        services.store.accounts[account.id].is_active = False

        with pytest.raises(TokenRevoked):
            await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

    async def test_revoke_all_invalidates_every_refresh_token(self, services, account):
        pairs = [await services.tokens.issue_token_pair(account, ClientContext()) for _ in range(3)]

        revoked = await services.tokens.revoke_all(account.id)

        assert revoked == 3
        for pair in pairs:
            with pytest.raises(TokenRevoked):
                await services.tokens.redeem_refresh_token(pair.refresh_token, ClientContext())

    async def test_revoke_plaintext_is_idempotent(self, services, account):
        pair = await services.tokens.issue_token_pair(account, ClientContext())

        first = await services.tokens.revoke_plaintext(pair.refresh_token)
        second = await services.tokens.revoke_plaintext(pair.refresh_token)
        unknown = await services.tokens.revoke_plaintext("unknown")

        assert first is not None and second is not None
        assert unknown is None


class TestDenylist:
    async def test_denylisted_until_expiry(self, services, account):
        issued = services.tokens.issue_access_token(account)
        claims = issued.claims

        await services.tokens.denylist_access_token(claims.jti, claims.expires_at_dt)
        assert await services.tokens.is_access_token_denylisted(claims.jti)

        services.clock.advance(services.settings.access_token_ttl_seconds + 1)
        assert not await services.tokens.is_access_token_denylisted(claims.jti)

    async def test_expired_token_not_recorded(self, services, account):
        claims = services.tokens.issue_access_token(account).claims
        services.clock.advance(services.settings.access_token_ttl_seconds + 5)

        await services.tokens.denylist_access_token(claims.jti, claims.expires_at_dt)
        assert not await services.counters.exists(f"denylist:access:{claims.jti}")


class TestChallenges:
    async def test_challenge_is_single_use(self, services, account):
        plaintext, record = await services.tokens.issue_challenge(account, ClientContext())

        peeked = await services.tokens.peek_challenge(plaintext)
        assert peeked.id == record.id
        await services.tokens.consume_challenge(peeked)

        with pytest.raises(TokenRevoked):
            await services.tokens.consume_challenge(peeked)
        with pytest.raises(TokenRevoked):
            await services.tokens.peek_challenge(plaintext)

    async def test_challenge_expires(self, services, account):
        plaintext, _ = await services.tokens.issue_challenge(account, ClientContext())
        services.clock.advance(services.settings.two_factor_challenge_ttl_seconds + 1)

        with pytest.raises(TokenExpired):
            await services.tokens.peek_challenge(plaintext)

    async def test_unknown_challenge(self, services):
        with pytest.raises(TokenNotFound):
            await services.tokens.peek_challenge("nope")


class TestSigningKeys:
    def test_short_secret_refused(self):
        with pytest.raises(ValueError):
            SigningKeyProvider("too-short")

    def test_short_retired_secret_refused(self):
        with pytest.raises(ValueError):
            SigningKeyProvider(NEW_SECRET, ["short"])

    def test_kid_is_stable_fingerprint(self):
        first = SigningKeyProvider(NEW_SECRET)
        second = SigningKeyProvider(NEW_SECRET, [OLD_SECRET])

        assert first.active.kid == second.active.kid
        assert NEW_SECRET not in first.active.kid
        assert second.for_kid(SigningKeyProvider(OLD_SECRET).active.kid) is not None
        assert second.for_kid(None) is None
