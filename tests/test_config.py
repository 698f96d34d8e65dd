import pytest
from pydantic import ValidationError

from tenantguard.config import Settings, get_settings, reset_settings_cache


def test_defaults_describe_a_standard_deployment():
    settings = Settings(jwt_secret="x" * 32)

    assert settings.session_ttl_seconds == 30 * 60
    assert settings.login_max_failed_attempts == 5
    assert settings.login_lock_minutes == 15
    assert settings.super_admin_role_id == 1
    assert settings.wildcard_permission == "*:*:*"
    assert settings.deny_on_logout is True


def test_from_env_reads_named_variables(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SESSION_TTL_MINUTES", "45")
    monkeypatch.setenv("LOGIN_MAX_FAILED_ATTEMPTS", "3")
    monkeypatch.setenv("DENY_ON_LOGOUT", "false")
    monkeypatch.setenv("KEY_PREFIX", "tg:")

    settings = Settings.from_env()

    assert settings.session_ttl_seconds == 45 * 60
    assert settings.login_max_failed_attempts == 3
    assert settings.deny_on_logout is False
    assert settings.key_prefix == "tg:"


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LOGIN_LOCK_MINUTES", raising=False)
    (tmp_path / ".env").write_text("LOGIN_LOCK_MINUTES=30\n")

    assert Settings.from_env().login_lock_minutes == 30


def test_get_settings_is_cached(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings() is not first


@pytest.mark.parametrize(
    "field",
    ["session_ttl_minutes", "login_max_failed_attempts", "login_lock_minutes", "permission_cache_ttl_seconds"],
)
def test_non_positive_durations_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, **{field: 0})


def test_other_validators():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, store_timeout_seconds=0)
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, jwt_leeway_seconds=-1)
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, wildcard_permission="  ")
    assert Settings(jwt_secret="x" * 32, wildcard_permission=" * ").wildcard_permission == "*"


def test_generated_secret_is_persisted(tmp_path):
    secret_dir = tmp_path / "secrets"

    first = Settings(secret_dir=str(secret_dir), jwt_secret=None)
    second = Settings(secret_dir=str(secret_dir), jwt_secret=None)

    assert first.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (secret_dir / ".jwt_secret").read_text() == first.jwt_secret
