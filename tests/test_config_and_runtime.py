"""Tests for settings and runtime wiring.

Tests for:
- Environment parsing and validation
- Runtime fallbacks allowed only in TEST_MODE / dev fallback
- Log redaction of codes, tokens and addresses
"""

import pytest
from pydantic import ValidationError

from deskgate.config import IdentityBackend, Settings
from deskgate.logging import _redact_pii, redact_email, sanitize_error_message
from deskgate.service.captcha import HCaptchaVerifier, StaticCaptchaVerifier
from deskgate.service.email import ConsoleCodeNotifier, EmailCodeNotifier
from deskgate.service.identity import LocalIdentityProvider, SupabaseIdentityProvider
from deskgate.service.runtime import Runtime, _mask_url_password
from deskgate.storage.memory import MemoryStore


def _settings(**overrides):
    base = dict(
        use_memory_store=True,
        test_mode=True,
        identity_backend=IdentityBackend.LOCAL,
        operator_email="ops@deskgate.test",
        operator_password="Operator-Passw0rd!",
    )
    base.update(overrides)
    return Settings(**base)


class TestSettings:
    """Tests for Settings defaults and validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.mfa_code_digits == 6
        assert settings.mfa_code_ttl_seconds == 600
        assert settings.mfa_resend_cooldown_seconds == 30
        assert settings.mfa_max_issuances == 3
        assert settings.mfa_resend_window_seconds == 3600
        assert settings.admin_fast_path_enabled is False

    def test_fast_path_requires_operator_credentials(self):
        with pytest.raises(ValidationError):
            Settings(admin_fast_path_enabled=True, operator_email="ops@deskgate.test")

    def test_operator_email_is_normalized(self):
        assert Settings(operator_email="  Ops@DeskGate.TEST ").operator_email == "ops@deskgate.test"

    def test_origins_split(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MFA_RESEND_COOLDOWN_SECONDS", "45")
        monkeypatch.setenv("HCAPTCHA_SECRET", "0xabc")
        settings = Settings.from_env()
        assert settings.mfa_resend_cooldown_seconds == 45
        assert settings.captcha_secret == "0xabc"


class TestRuntimeWiring:
    """Tests for Runtime collaborator selection."""

    def test_test_mode_uses_local_fallbacks(self):
        runtime = Runtime(_settings())
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.identity, LocalIdentityProvider)
        assert isinstance(runtime.captcha_verifier, StaticCaptchaVerifier)
        assert isinstance(runtime.notifier, ConsoleCodeNotifier)
        assert runtime.notifier.reveal is False

    def test_configured_providers_are_used(self):
        runtime = Runtime(
            _settings(
                identity_backend=IdentityBackend.SUPABASE,
                supabase_url="https://proj.supabase.co",
                supabase_anon_key="anon",
                captcha_secret="0xsecret",
                smtp_host="smtp.example",
                email_from_address="desk@example.com",
            )
        )
        assert isinstance(runtime.identity, SupabaseIdentityProvider)
        assert isinstance(runtime.captcha_verifier, HCaptchaVerifier)
        assert isinstance(runtime.notifier, EmailCodeNotifier)

    def test_missing_captcha_secret_outside_test_mode(self):
        with pytest.raises(RuntimeError, match="HCAPTCHA_SECRET"):
            Runtime(_settings(test_mode=False, allow_redis_fallback_dev=True))

    def test_missing_smtp_outside_dev_fallback(self):
        with pytest.raises(RuntimeError, match="SMTP_HOST"):
            Runtime(
                _settings(
                    test_mode=False,
                    identity_backend=IdentityBackend.SUPABASE,
                    supabase_url="https://proj.supabase.co",
                    supabase_anon_key="anon",
                    captcha_secret="0xsecret",
                )
            )

    def test_local_identity_outside_dev_fallback(self):
        with pytest.raises(RuntimeError, match="IDENTITY_BACKEND=local"):
            Runtime(_settings(test_mode=False))

    def test_supabase_backend_needs_url_outside_dev_fallback(self):
        with pytest.raises(RuntimeError, match="SUPABASE_URL"):
            Runtime(
                _settings(
                    test_mode=False,
                    identity_backend=IdentityBackend.SUPABASE,
                    captcha_secret="0xsecret",
                )
            )

    def test_attempt_lifetime_covers_resend_window(self):
        runtime = Runtime(_settings(mfa_resend_window_seconds=7200))
        assert runtime.auth.attempt_ttl_seconds == 7200

    def test_operator_registered_with_local_provider(self):
        runtime = Runtime(_settings())
        assert runtime.identity._principals["ops@deskgate.test"][0].email == "ops@deskgate.test"


class TestRedaction:
    """Tests for log redaction helpers."""

    def test_codes_fully_masked(self):
        event = _redact_pii(None, "info", {"event": "x", "code": "123456", "mfa_code": "654321"})
        assert event["code"] == "***"
        assert event["mfa_code"] == "***"

    def test_tokens_and_emails_partially_masked(self):
        event = _redact_pii(
            None, "info", {"session_token": "abcdefghijkl", "email": "agent@desk.example"}
        )
        assert event["session_token"] == "ab***kl"
        assert event["email"] == "ag***le"

    def test_redact_email(self):
        assert redact_email("agent@desk.example") == "ag***@desk.example"
        assert redact_email("nonsense") == "redacted"

    def test_sanitize_error_message(self):
        cleaned = sanitize_error_message("Error connecting to redis://:pw@cache:6379/0")
        assert "pw@" not in cleaned

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:secret@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
