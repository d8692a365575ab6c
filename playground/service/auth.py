from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from playground.config import Settings
from playground.logging import get_logger
from playground.service.errors import (
    AuthenticationError,
    IdentityConflictError,
    NotFoundError,
    SessionRevokedError,
    TokenExpiredError,
    TokenMalformedError,
    UpstreamError,
    ValidationError,
)
from playground.service.sessions import SessionRegistry
from playground.storage.errors import ConstraintViolation
from playground.storage.models import Session, User, format_identity
from playground.storage.redis_cache import RedisCache

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_identity(self, identity: str) -> Optional[User]: ...

    def create_user(self, identity: str, name: str, picture: Optional[str] = None) -> User: ...

    def link_identity(self, user_id: str, identity: str) -> Optional[User]: ...

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, picture: Optional[str] = None
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: str


@dataclass
class ProviderProfile:
    """Result of an identity provider code exchange."""

    identity: str
    name: str
    picture: Optional[str] = None


class AuthService:
    """Account linking, bearer tokens and the OAuth login flow."""

    def __init__(
        self,
        store: UserStore,
        sessions: SessionRegistry,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}
        self._clock_skew_leeway = timedelta(seconds=120)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- tokens ------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Verify structure, signature, issuer, audience and expiry.

        Raises TokenMalformedError or TokenExpiredError; registry membership is
        checked separately by ``validate_token``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenMalformedError("token is not a JWT")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token header is unreadable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenMalformedError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            raise TokenMalformedError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token payload is unreadable")
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload is unreadable")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformedError("token issuer mismatch")
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenMalformedError("token audience mismatch")
        if not payload.get("sub") or not payload.get("sid"):
            raise TokenMalformedError("token subject missing")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token expiry missing")
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError("token expired")
        return payload

    def issue_token(self, user_id: str, session_id: str) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int(
                (now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
            ),
            "jti": uuid.uuid4().hex,
        }
        return self._encode_jwt(payload)

    async def validate_token(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token)
        session_id = payload["sid"]
        if not await self.sessions.is_active(session_id):
            raise SessionRevokedError("session is no longer active")
        return AuthContext(user_id=payload["sub"], session_id=session_id)

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(
        self, authorization: Optional[str], access_token: Optional[str] = None
    ) -> AuthContext:
        """Resolve a bearer token from the header, or the query string for media requests."""
        token = self.extract_bearer(authorization) or access_token
        if not token:
            raise AuthenticationError("authentication required")
        try:
            return await self.validate_token(token)
        except AuthenticationError as exc:
            self.logger.warning("token_rejected", reason=exc.reason, error=exc.message)
            raise

    def user_for(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def get_current_user(self, token: str) -> User:
        return self.user_for(await self.validate_token(token))

    # -- identity linking --------------------------------------------------

    async def resolve_or_create_user(
        self, profile: ProviderProfile, current_token: Optional[str] = None
    ) -> User:
        current: Optional[AuthContext] = None
        if current_token:
            try:
                current = await self.validate_token(current_token)
            except AuthenticationError as exc:
                self.logger.info("link_token_ignored", reason=exc.reason)

        existing = self.store.get_user_by_identity(profile.identity)
        if current is not None:
            if existing is not None and existing.id != current.user_id:
                raise IdentityConflictError(
                    "identity is linked to another account",
                    detail={"identity": profile.identity},
                )
            try:
                linked = self.store.link_identity(current.user_id, profile.identity)
            except ConstraintViolation as exc:
                raise IdentityConflictError(
                    "identity is linked to another account",
                    detail={"identity": profile.identity},
                ) from exc
            if linked is not None:
                if existing is None:
                    self.logger.info(
                        "identity_linked", user_id=linked.id, identity=profile.identity
                    )
                return linked

        if existing is not None:
            refreshed = self.store.update_user_profile(
                existing.id, name=profile.name, picture=profile.picture
            )
            return refreshed or existing

        try:
            user = self.store.create_user(profile.identity, profile.name, profile.picture)
        except ConstraintViolation:
            # Lost a race with a concurrent first login of the same identity
            winner = self.store.get_user_by_identity(profile.identity)
            if winner is None:
                raise IdentityConflictError(
                    "identity is linked to another account",
                    detail={"identity": profile.identity},
                )
            return winner
        self.logger.info("user_created", user_id=user.id)
        return user

    async def login(
        self, profile: ProviderProfile, current_token: Optional[str] = None
    ) -> tuple[User, Session, str]:
        user = await self.resolve_or_create_user(profile, current_token)
        session = await self.sessions.create_session(user.id)
        return user, session, self.issue_token(user.id, session.id)

    async def logout(self, session_id: str) -> None:
        await self.sessions.revoke(session_id)

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.revoke_user_sessions(user_id)

    # -- OAuth -------------------------------------------------------------

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            stale = [s for s, (_, exp) in self._oauth_states.items() if exp < now]
            for state in stale:
                self._oauth_states.pop(state, None)
        return len(stale)

    async def start_oauth(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        self.cleanup_expired_states()
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            if not self.settings.test_mode:
                self.logger.warning("oauth_state_in_process", provider=provider)
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth userinfo payload for testing or offline flows."""
        self._oauth_code_registry[(provider, code)] = payload

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if stored is None and self.cache:
            stored = await self.cache.pop_oauth_state(state)
        return stored

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> ProviderProfile:
        """Map provider userinfo onto a namespaced identity and display profile."""
        if provider == "google":
            external_id = userinfo.get("id") or userinfo.get("sub")
            email = userinfo.get("email") or ""
            name = userinfo.get("name") or email.split("@")[0]
            picture = userinfo.get("picture")
        elif provider == "github":
            external_id = userinfo.get("id")
            name = userinfo.get("name") or userinfo.get("login")
            picture = userinfo.get("avatar_url")
        else:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        if external_id in (None, ""):
            raise AuthenticationError("provider did not return an account id")
        return ProviderProfile(
            identity=format_identity(provider, str(external_id)),
            name=name or str(external_id),
            picture=picture,
        )

    async def _exchange_oauth_code(self, provider: str, code: str) -> ProviderProfile:
        registered = self._oauth_code_registry.pop((provider, code), None)
        if registered is not None:
            return self._parse_oauth_userinfo(provider, registered)

        client_id, client_secret = self._get_oauth_credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.provider_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("OAuth code was not accepted")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            self.logger.error("oauth_exchange_http_error", provider=provider, status_code=status)
            if status < 500:
                raise AuthenticationError("OAuth code was not accepted") from exc
            raise UpstreamError("identity provider unavailable") from exc
        except (httpx.TransportError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise UpstreamError("identity provider unavailable") from exc

        if not isinstance(userinfo, dict):
            raise UpstreamError("identity provider returned an unexpected profile")
        profile = self._parse_oauth_userinfo(provider, userinfo)
        self.logger.info("oauth_exchange_success", provider=provider, identity=profile.identity)
        return profile

    async def complete_oauth(
        self, provider: str, code: str, state: str, current_token: Optional[str] = None
    ) -> tuple[User, Session, str]:
        stored = await self._pop_oauth_state(state)
        if not stored or stored[0] != provider or stored[1] < self._now():
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("invalid or expired OAuth state")
        profile = await self._exchange_oauth_code(provider, code)
        return await self.login(profile, current_token)
