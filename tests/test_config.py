import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_names_are_honored(self, monkeypatch):
        monkeypatch.setenv("LOGIN_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("LOGIN_WINDOW_SECONDS", "60")
        monkeypatch.setenv("OTP_WINDOW", "2")
        monkeypatch.setenv("AUTH_PRODUCTION", "false")
        settings = Settings.from_env()
        assert settings.login_max_attempts == 7
        assert settings.login_window_seconds == 60
        assert settings.otp_window == 2
        assert settings.production is False

    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.login_max_attempts == 5
        assert settings.login_window_seconds == 900
        assert settings.login_lockout_seconds == 600
        assert settings.refresh_token_ttl_days == 30
        assert settings.password_reset_ttl_minutes == 60
        assert (settings.otp_window, settings.otp_time_step, settings.otp_digits) == (1, 30, 6)
        assert settings.redis_url is None

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("LOGIN_MAX_ATTEMPTS", "9")
        reset_settings_cache()
        assert get_settings().login_max_attempts == 9


class TestValidation:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("login_max_attempts", 0),
            ("login_lockout_seconds", -1),
            ("refresh_token_ttl_days", 0),
            ("otp_window", 11),
            ("otp_digits", 5),
        ],
    )
    def test_rejects_out_of_range(self, field, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, **{field: value})

    def test_blank_redis_url_means_disabled(self):
        assert Settings(jwt_secret="x" * 40, redis_url="  ").redis_url is None

    def test_production_and_test_mode_are_exclusive(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, production=True, test_mode=True)

    def test_generated_jwt_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None).jwt_secret
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first
        assert Settings(jwt_secret=None).jwt_secret == first
