import pytest
from pydantic import ValidationError

from campauth.config import MIN_SIGNING_SECRET_LENGTH, Settings, get_settings, reset_settings_cache

SECRET = "s" * MIN_SIGNING_SECRET_LENGTH


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=SECRET)

        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.lockout_threshold == 5
        assert settings.jwt_leeway_seconds == 0
        assert settings.require_verified_email is True
        assert settings.refresh_reuse_revokes_family is True

    def test_missing_secret_refused(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_short_secret_refused(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="s" * (MIN_SIGNING_SECRET_LENGTH - 1))

    def test_short_previous_secret_refused(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_previous_secrets="too-short")

    def test_csv_lists(self):
        settings = Settings(
            jwt_secret=SECRET,
            jwt_previous_secrets=f"{'a' * 40}, {'b' * 40}",
            public_route_patterns="GET ^/v1/catalog$,",
        )
        assert settings.jwt_previous_secrets == ["a" * 40, "b" * 40]
        assert settings.public_route_patterns == ["GET ^/v1/catalog$"]

    def test_mfa_keys_follow_jwt_rotation(self):
        retired = "a" * 40
        settings = Settings(jwt_secret=SECRET, jwt_previous_secrets=retired)

        assert settings.mfa_key_material() == [SECRET, retired]
        assert settings.backup_code_peppers() == [SECRET, retired]

    def test_dedicated_mfa_keys_take_precedence(self):
        settings = Settings(
            jwt_secret=SECRET, mfa_encryption_key="mfa-key", backup_code_pepper="pepper"
        )

        assert settings.mfa_key_material() == ["mfa-key"]
        assert settings.backup_code_peppers() == ["pepper"]

    def test_blank_redis_url_is_none(self):
        assert Settings(jwt_secret=SECRET, redis_url="  ").redis_url is None

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_seconds", "lockout_threshold", "two_factor_max_attempts"]
    )
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, **{field: 0})

    def test_negative_leeway_refused(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_leeway_seconds=-1)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("REQUIRE_VERIFIED_EMAIL", "false")

        settings = Settings.from_env()

        assert settings.lockout_threshold == 7
        assert settings.require_verified_email is False

    def test_cache_reset(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "9")
        try:
            assert get_settings().lockout_threshold == 9
            assert get_settings() is get_settings()
        finally:
            reset_settings_cache()
