from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import httpx

from deskgate.logging import get_logger, sanitize_error_message
from deskgate.service.errors import (
    CaptchaInvalidError,
    CaptchaMissingError,
    CaptchaProviderError,
)

logger = get_logger(__name__)

HCAPTCHA_VERIFY_URL = "https://api.hcaptcha.com/siteverify"


@dataclass(frozen=True)
class CaptchaResult:
    valid: bool
    reason: Optional[str] = None


class CaptchaVerifier(Protocol):
    async def verify_token(self, token: str, remote_ip: Optional[str] = None) -> bool: ...


class HCaptchaVerifier:
    """Server-side check of an hCaptcha response token against ``siteverify``."""

    def __init__(
        self,
        secret: str,
        *,
        site_key: Optional[str] = None,
        verify_url: str = HCAPTCHA_VERIFY_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.site_key = site_key
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    async def verify_token(self, token: str, remote_ip: Optional[str] = None) -> bool:
        data = {"secret": self.secret, "response": token}
        if self.site_key:
            data["sitekey"] = self.site_key
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            logger.error(
                "captcha_verifier_unreachable",
                error=sanitize_error_message(str(exc)),
            )
            raise CaptchaProviderError() from exc
        except ValueError as exc:
            logger.error("captcha_verifier_bad_response", error=str(exc))
            raise CaptchaProviderError() from exc

        if not isinstance(payload, dict) or "success" not in payload:
            logger.error("captcha_verifier_bad_response", error="missing success flag")
            raise CaptchaProviderError()

        if not payload["success"]:
            logger.info("captcha_rejected", error_codes=payload.get("error-codes") or [])
        return bool(payload["success"])


class StaticCaptchaVerifier:
    """Deterministic verifier for TEST_MODE: accepts listed tokens, or any token."""

    def __init__(self, accepted_tokens: Optional[Iterable[str]] = None) -> None:
        self.accepted_tokens = set(accepted_tokens) if accepted_tokens is not None else None

    async def verify_token(self, token: str, remote_ip: Optional[str] = None) -> bool:
        if self.accepted_tokens is None:
            return True
        return token in self.accepted_tokens


class CaptchaGate:
    """Fails closed: nothing passes unless the verifier positively says yes."""

    def __init__(self, verifier: CaptchaVerifier, *, timeout_seconds: float = 10.0) -> None:
        self.verifier = verifier
        self.timeout_seconds = timeout_seconds

    async def verify(
        self, token: Optional[str], *, remote_ip: Optional[str] = None
    ) -> CaptchaResult:
        """Check ``token``; raises CaptchaProviderError when no verdict is available."""
        if not token or not token.strip():
            return CaptchaResult(valid=False, reason=CaptchaMissingError.error_code)
        try:
            valid = await asyncio.wait_for(
                self.verifier.verify_token(token.strip(), remote_ip),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("captcha_verifier_timeout", timeout_seconds=self.timeout_seconds)
            raise CaptchaProviderError() from exc
        if not valid:
            return CaptchaResult(valid=False, reason=CaptchaInvalidError.error_code)
        return CaptchaResult(valid=True)

    async def require(self, token: Optional[str], *, remote_ip: Optional[str] = None) -> None:
        result = await self.verify(token, remote_ip=remote_ip)
        if result.valid:
            return
        if result.reason == CaptchaMissingError.error_code:
            raise CaptchaMissingError()
        raise CaptchaInvalidError()
