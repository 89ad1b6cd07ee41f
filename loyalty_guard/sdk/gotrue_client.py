"""
GoTrue identity provider adapter.

Implements the identity collaborator contract over the GoTrue REST API
(the auth service behind Supabase). Session claims are read from the access
token; signature verification is the server's job.

SECURITY:
- Access and refresh tokens are never logged
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

import httpx
import jwt

from ..core.errors import (
    AuthError,
    ExpiredChallengeError,
    IdentityProviderError,
    InvalidCodeError,
    LoyaltyGuardError,
    MFAChallengeError,
    MFAEnrollmentError,
)
from ..core.identity import (
    AssuranceLevel,
    AssuranceLevels,
    AuthEvent,
    AuthStateCallback,
    Challenge,
    EnrolledFactor,
    MFAFactor,
    Session,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# GoTrue error_code -> exception raised at the boundary
_ERROR_CODES: Dict[str, Type[LoyaltyGuardError]] = {
    "invalid_credentials": AuthError,
    "email_not_confirmed": AuthError,
    "user_not_found": AuthError,
    "mfa_verification_failed": InvalidCodeError,
    "mfa_challenge_expired": ExpiredChallengeError,
    "mfa_factor_not_found": MFAChallengeError,
    "too_many_enrolled_mfa_factors": MFAEnrollmentError,
    "mfa_factor_name_conflict": MFAEnrollmentError,
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def session_from_token(access_token: str, email: Optional[str] = None) -> Session:
    """Build a Session from the claims of a GoTrue access token."""
    claims = jwt.decode(access_token, options={"verify_signature": False})
    return Session(
        user_id=claims["sub"],
        email=claims.get("email") or email or "",
        access_token=access_token,
        assurance_level=AssuranceLevel(claims.get("aal", "aal1")),
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
    )


class _Subscription:
    def __init__(self, provider: "GoTrueIdentityProvider", callback: AuthStateCallback):
        self._provider = provider
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._provider._callbacks:
            self._provider._callbacks.remove(self._callback)


class GoTrueMFA:
    """Multi-factor endpoints of the GoTrue API."""

    def __init__(self, provider: "GoTrueIdentityProvider"):
        self._provider = provider

    async def enroll(self, friendly_name: str, issuer: str) -> EnrolledFactor:
        data = await self._provider._request(
            "POST",
            "/factors",
            json={"factor_type": "totp", "friendly_name": friendly_name, "issuer": issuer},
            authenticated=True,
            default_error=MFAEnrollmentError,
        )
        totp = data.get("totp") or {}
        return EnrolledFactor(
            id=data["id"],
            friendly_name=data.get("friendly_name") or friendly_name,
            secret=totp.get("secret", ""),
            qr_code=totp.get("qr_code", ""),
            uri=totp.get("uri", ""),
        )

    async def challenge(self, factor_id: str) -> Challenge:
        data = await self._provider._request(
            "POST",
            f"/factors/{factor_id}/challenge",
            authenticated=True,
            default_error=MFAChallengeError,
        )
        return Challenge(
            id=data["id"],
            factor_id=factor_id,
            expires_at=_parse_timestamp(data["expires_at"]),
        )

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session:
        data = await self._provider._request(
            "POST",
            f"/factors/{factor_id}/verify",
            json={"challenge_id": challenge_id, "code": code},
            authenticated=True,
            default_error=MFAChallengeError,
        )
        session = self._provider._store_session(data)
        self._provider._emit(AuthEvent.MFA_CHALLENGE_VERIFIED, session)
        return session

    async def unenroll(self, factor_id: str) -> None:
        await self._provider._request(
            "DELETE",
            f"/factors/{factor_id}",
            authenticated=True,
            default_error=MFAChallengeError,
        )

    async def list_factors(self) -> List[MFAFactor]:
        user = await self._provider.get_user()
        return [
            MFAFactor(
                id=f["id"],
                friendly_name=f.get("friendly_name") or "",
                factor_type=f.get("factor_type", "totp"),
                status=f.get("status", "unverified"),
                created_at=_parse_timestamp(f.get("created_at")),
            )
            for f in user.get("factors") or []
        ]

    async def get_authenticator_assurance_level(self) -> AssuranceLevels:
        """Current level from the token; next is aal2 once a factor is verified."""
        session = self._provider._session
        if session is None:
            return AssuranceLevels(current=AssuranceLevel.AAL1, next=AssuranceLevel.AAL1)
        factors = await self.list_factors()
        has_verified = any(f.verified for f in factors)
        return AssuranceLevels(
            current=session.assurance_level,
            next=AssuranceLevel.AAL2 if has_verified else session.assurance_level,
        )


class GoTrueIdentityProvider:
    """
    Async identity provider over the GoTrue REST API.

    Auth-state events are delivered on the next loop iteration, never from
    inside the call that caused them.

    SECURITY: tokens must never be logged.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the provider.

        Args:
            url: Project URL (default: from SUPABASE_URL env)
            api_key: Anonymous API key (default: from SUPABASE_ANON_KEY env)
            timeout: Request timeout in seconds
            http_client: Preconfigured client, mainly for tests
        """
        url = url or os.getenv("SUPABASE_URL")
        self.api_key = api_key or os.getenv("SUPABASE_ANON_KEY")
        if not url or not self.api_key:
            raise ValueError(
                "GoTrue URL and API key are required. Set SUPABASE_URL and "
                "SUPABASE_ANON_KEY or pass url and api_key."
            )
        self.base_url = f"{url.rstrip('/')}/auth/v1"
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._session: Optional[Session] = None
        self._refresh_token: Optional[str] = None
        self._callbacks: List[AuthStateCallback] = []
        self.mfa = GoTrueMFA(self)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GoTrueIdentityProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Contract

    async def get_session(self) -> Optional[Session]:
        """Current session, refreshed first if the access token expired."""
        if self._session is not None and self._session.is_expired() and self._refresh_token:
            await self.refresh_session()
        return self._session

    def on_auth_state_change(self, callback: AuthStateCallback) -> _Subscription:
        self._callbacks.append(callback)
        return _Subscription(self, callback)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            default_error=AuthError,
        )
        session = self._store_session(data)
        logger.info("Signed in", extra={"user_id": session.user_id})
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        """Register. Returns None while email confirmation is pending."""
        data = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password},
        )
        if not data.get("access_token"):
            logger.info("Sign-up pending confirmation")
            return None
        session = self._store_session(data)
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        if self._session is None:
            return
        try:
            await self._request("POST", "/logout", authenticated=True)
        finally:
            self._session = None
            self._refresh_token = None
            self._emit(AuthEvent.SIGNED_OUT, None)

    # Extras

    async def refresh_session(self) -> Session:
        if not self._refresh_token:
            raise AuthError("No refresh token available")
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self._refresh_token},
            default_error=AuthError,
        )
        session = self._store_session(data)
        self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def get_user(self) -> Dict[str, Any]:
        return await self._request("GET", "/user", authenticated=True)

    # Internals

    def _store_session(self, data: Dict[str, Any]) -> Session:
        user = data.get("user") or {}
        session = session_from_token(data["access_token"], email=user.get("email"))
        self._session = session
        self._refresh_token = data.get("refresh_token") or self._refresh_token
        return session

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        loop = asyncio.get_running_loop()
        for callback in list(self._callbacks):
            loop.call_soon(self._deliver, callback, event, session)

    def _deliver(self, callback: AuthStateCallback, event: AuthEvent, session: Optional[Session]) -> None:
        if callback not in self._callbacks:
            return
        try:
            callback(event, session)
        except Exception:
            logger.exception("Auth state callback failed", extra={"event": event.value})

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
        default_error: Type[LoyaltyGuardError] = IdentityProviderError,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the GoTrue API.

        Returns:
            Response data as dictionary

        Raises:
            AuthError, MFAError or IdentityProviderError: On API errors
        """
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if authenticated:
            if self._session is None:
                raise AuthError("Not authenticated")
            headers["Authorization"] = f"Bearer {self._session.access_token}"

        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{endpoint}",
                json=json,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            logger.error("GoTrue request timeout", extra={"endpoint": endpoint, "error": str(e)})
            raise IdentityProviderError(f"Request timeout: {e}", code="timeout") from e
        except httpx.RequestError as e:
            logger.error("GoTrue connection error", extra={"endpoint": endpoint, "error": str(e)})
            raise IdentityProviderError(f"Connection error: {e}", code="connection_error") from e

        if response.status_code >= 400:
            raise self._error_for(response, endpoint, default_error)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _error_for(
        self,
        response: httpx.Response,
        endpoint: str,
        default_error: Type[LoyaltyGuardError],
    ) -> LoyaltyGuardError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error_code") or body.get("error")
        message = (
            body.get("msg")
            or body.get("error_description")
            or body.get("message")
            or f"GoTrue API error: {response.status_code}"
        )
        logger.warning(
            "GoTrue API error",
            extra={"status_code": response.status_code, "endpoint": endpoint, "error_code": code},
        )

        error_cls = _ERROR_CODES.get(code)
        if error_cls is not None:
            return error_cls(message)
        if code == "invalid_grant" or response.status_code == 401:
            return AuthError(message)
        if default_error is IdentityProviderError or response.status_code >= 500:
            return IdentityProviderError(message, code=code, status=response.status_code)
        return default_error(message)
