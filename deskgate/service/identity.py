from __future__ import annotations

import asyncio
import secrets
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Set, Tuple

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from deskgate.logging import get_logger, sanitize_error_message
from deskgate.service.errors import InvalidCredentialsError, ProviderUnavailableError
from deskgate.storage.models import Principal, normalize_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderSignIn:
    """A verified principal plus whatever session the provider opened doing it."""

    principal: Principal
    access_token: Optional[str] = None


class IdentityProvider(Protocol):
    async def validate_credentials(self, email: str, password: str) -> ProviderSignIn: ...

    async def sign_out(self, access_token: str) -> None: ...


class SupabaseIdentityProvider:
    """GoTrue REST adapter: password grant to verify, logout to drop the session."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self, bearer: Optional[str] = None) -> dict:
        headers = {"apikey": self.anon_key, "Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def validate_credentials(self, email: str, password: str) -> ProviderSignIn:
        url = f"{self.base_url}/auth/v1/token"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    params={"grant_type": "password"},
                    json={"email": email, "password": password},
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_unreachable", error=sanitize_error_message(str(exc))
            )
            raise ProviderUnavailableError() from exc

        if response.status_code in (400, 401, 422):
            raise InvalidCredentialsError()
        if response.status_code >= 300:
            logger.error("identity_provider_error", status_code=response.status_code)
            raise ProviderUnavailableError()

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("identity_provider_bad_response", error=str(exc))
            raise ProviderUnavailableError() from exc

        user = payload.get("user") if isinstance(payload, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            logger.error("identity_provider_bad_response", error="missing user")
            raise ProviderUnavailableError()

        metadata = user.get("user_metadata") or {}
        principal = Principal(
            id=str(user["id"]),
            email=normalize_email(user.get("email") or email),
            display_name=metadata.get("full_name") or metadata.get("name"),
        )
        return ProviderSignIn(principal=principal, access_token=payload.get("access_token"))

    async def sign_out(self, access_token: str) -> None:
        url = f"{self.base_url}/auth/v1/logout"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, headers=self._headers(access_token))
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_unreachable", error=sanitize_error_message(str(exc))
            )
            raise ProviderUnavailableError() from exc
        # 401/404: the token is already unusable, nothing is left behind
        if response.status_code >= 300 and response.status_code not in (401, 404):
            logger.error("identity_provider_sign_out_failed", status_code=response.status_code)
            raise ProviderUnavailableError()


class LocalIdentityProvider:
    """In-process principal registry with argon2id hashes for tests and local dev.

    Every successful verification opens an incidental access token, like a
    hosted provider would, so callers must sign it out again.
    """

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)
        self._principals: Dict[str, Tuple[Principal, str]] = {}
        self._lock = threading.Lock()
        self.active_tokens: Set[str] = set()
        # Unknown emails still pay for one verification
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def register(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        principal_id: Optional[str] = None,
    ) -> Principal:
        principal = Principal(
            id=principal_id or str(uuid.uuid4()),
            email=normalize_email(email),
            display_name=display_name,
        )
        digest = self._hasher.hash(password)
        with self._lock:
            self._principals[principal.email] = (principal, digest)
        return principal

    async def validate_credentials(self, email: str, password: str) -> ProviderSignIn:
        with self._lock:
            entry = self._principals.get(normalize_email(email))
        principal, digest = entry if entry else (None, self._dummy_hash)
        try:
            self._hasher.verify(digest, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            raise InvalidCredentialsError()
        if principal is None:
            raise InvalidCredentialsError()
        token = secrets.token_urlsafe(32)
        with self._lock:
            self.active_tokens.add(token)
        return ProviderSignIn(principal=principal, access_token=token)

    async def sign_out(self, access_token: str) -> None:
        with self._lock:
            self.active_tokens.discard(access_token)


class CredentialValidator:
    """Password check as a probe: any provider session it opens is closed again."""

    def __init__(self, provider: IdentityProvider, *, timeout_seconds: float = 10.0) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def validate(self, email: str, password: str) -> Principal:
        email = normalize_email(email)
        if not email or not password:
            raise InvalidCredentialsError()
        try:
            sign_in = await asyncio.wait_for(
                self.provider.validate_credentials(email, password),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("identity_provider_timeout", timeout_seconds=self.timeout_seconds)
            raise ProviderUnavailableError() from exc

        if sign_in.access_token:
            try:
                await asyncio.wait_for(
                    self.provider.sign_out(sign_in.access_token),
                    timeout=self.timeout_seconds,
                )
            except (asyncio.TimeoutError, ProviderUnavailableError) as exc:
                logger.error(
                    "credential_probe_sign_out_failed",
                    principal_id=sign_in.principal.id,
                )
                raise ProviderUnavailableError() from exc
        return sign_in.principal
