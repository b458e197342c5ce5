from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from deskgate.config import IdentityBackend, Settings, get_settings, reset_settings_cache
from deskgate.logging import get_logger
from deskgate.service.admin import AdminResolver
from deskgate.service.auth import AuthOrchestrator
from deskgate.service.captcha import CaptchaGate, HCaptchaVerifier, StaticCaptchaVerifier
from deskgate.service.email import CodeNotifier, ConsoleCodeNotifier, EmailCodeNotifier
from deskgate.service.identity import (
    CredentialValidator,
    IdentityProvider,
    LocalIdentityProvider,
    SupabaseIdentityProvider,
)
from deskgate.service.mfa import MFAIssuer, MFAVerifier
from deskgate.service.sessions import SessionManager
from deskgate.storage.memory import MemoryStore
from deskgate.storage.models import utcnow
from deskgate.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.clock = utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            identity_backend=self.settings.identity_backend.value,
        )
        self.dev_fallback = self.settings.test_mode or self.settings.allow_redis_fallback_dev

        self.store = self._build_store()
        self.identity = self._build_identity_provider()
        self.captcha_verifier = self._build_captcha_verifier()
        self.notifier = self._build_notifier()

        settings = self.settings
        self.captcha = CaptchaGate(
            self.captcha_verifier, timeout_seconds=settings.provider_timeout_seconds
        )
        self.credentials = CredentialValidator(
            self.identity, timeout_seconds=settings.provider_timeout_seconds
        )
        self.mfa_issuer = MFAIssuer(
            self.store,
            self.notifier,
            code_digits=settings.mfa_code_digits,
            code_ttl_seconds=settings.mfa_code_ttl_seconds,
            cooldown_seconds=settings.mfa_resend_cooldown_seconds,
            max_issuances=settings.mfa_max_issuances,
            window_seconds=settings.mfa_resend_window_seconds,
            notify_timeout_seconds=settings.provider_timeout_seconds,
            clock=self.clock,
        )
        self.mfa_verifier = MFAVerifier(
            self.store, code_digits=settings.mfa_code_digits, clock=self.clock
        )
        self.admin = AdminResolver(
            self.store, operator_email=settings.operator_email, clock=self.clock
        )
        self.sessions = SessionManager(
            self.store,
            ttl_minutes=settings.session_ttl_minutes,
            idle_timeout_minutes=settings.session_idle_timeout_minutes,
            clock=self.clock,
        )
        self.auth = AuthOrchestrator(
            store=self.store,
            captcha=self.captcha,
            credentials=self.credentials,
            issuer=self.mfa_issuer,
            verifier=self.mfa_verifier,
            admin=self.admin,
            sessions=self.sessions,
            operator_email=settings.operator_email,
            operator_password=settings.operator_password,
            admin_fast_path_enabled=settings.admin_fast_path_enabled,
            attempt_ttl_seconds=max(
                settings.mfa_code_ttl_seconds, settings.mfa_resend_window_seconds
            ),
            clock=self.clock,
        )
        logger.info("runtime_init_completed", store_type=type(self.store).__name__)

    def _build_store(self):
        settings = self.settings
        if settings.use_memory_store:
            return MemoryStore()

        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                store = RedisStore(
                    settings.redis_url,
                    socket_timeout=settings.redis_socket_timeout,
                    history_seconds=settings.session_history_days * 24 * 3600,
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.dev_fallback:
            raise RuntimeError(
                "Redis is required for codes, resend counters and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running without Redis; sign-in state is in-memory and not shared across instances.",
        )
        return MemoryStore()

    def _build_identity_provider(self) -> IdentityProvider:
        settings = self.settings
        if settings.identity_backend is IdentityBackend.SUPABASE:
            if settings.supabase_url and settings.supabase_anon_key:
                return SupabaseIdentityProvider(
                    settings.supabase_url,
                    settings.supabase_anon_key,
                    timeout=settings.provider_timeout_seconds,
                )
            if not self.dev_fallback:
                raise RuntimeError(
                    "SUPABASE_URL and SUPABASE_ANON_KEY are required for IDENTITY_BACKEND=supabase"
                )
            logger.warning("identity_provider_fallback_local")
        elif not self.dev_fallback:
            raise RuntimeError(
                "IDENTITY_BACKEND=local is limited to TEST_MODE or ALLOW_REDIS_FALLBACK_DEV"
            )

        provider = LocalIdentityProvider()
        if settings.operator_email and settings.operator_password:
            provider.register(
                settings.operator_email, settings.operator_password, "Operator"
            )
        return provider

    def _build_captcha_verifier(self):
        settings = self.settings
        if settings.captcha_secret:
            return HCaptchaVerifier(
                settings.captcha_secret,
                site_key=settings.captcha_site_key,
                verify_url=settings.captcha_verify_url,
                timeout=settings.provider_timeout_seconds,
            )
        if not settings.test_mode:
            raise RuntimeError("HCAPTCHA_SECRET is required outside TEST_MODE")
        logger.warning("captcha_static_verifier", message="TEST_MODE accepts any captcha token.")
        return StaticCaptchaVerifier()

    def _build_notifier(self) -> CodeNotifier:
        settings = self.settings
        notifier = EmailCodeNotifier(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        if notifier.is_configured:
            return notifier
        if not self.dev_fallback:
            raise RuntimeError("SMTP_HOST and EMAIL_FROM_ADDRESS are required to deliver codes")
        logger.warning("email_console_fallback", message="Codes are not emailed.")
        return ConsoleCodeNotifier(reveal=not settings.test_mode)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared Runtime, creating it on first use (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.store.close())
            except RuntimeError:
                asyncio.run(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
