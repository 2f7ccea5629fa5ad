from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from inkwell.config import SessionStrategy, Settings
from inkwell.logging import get_logger
from inkwell.service.email import EmailService
from inkwell.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from inkwell.service.passwords import PasswordService
from inkwell.service.sessions import SessionRegistry
from inkwell.service.token_blacklist import TokenBlacklistService
from inkwell.service.tokens import TokenSigner, token_fingerprint
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.models import (
    PASSWORD_RELATED_REASONS,
    ROLE_RANK,
    BlacklistReason,
    User,
    utc_now,
)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}

OAUTH_STATE_TTL_SECONDS = 600

# Sentinels with these reasons survive a later login
_STICKY_REASONS = frozenset({BlacklistReason.ADMIN_REVOKE.value, BlacklistReason.SECURITY.value})

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        *,
        role: str = "user",
        google_id: Optional[str] = None,
        picture: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_refresh_token(self, user_id: str, token_hash: Optional[str]) -> None: ...

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]: ...

    def rotate_refresh_token(self, old_hash: str, new_hash: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    email: str
    session_id: Optional[str] = None
    token: Optional[str] = None
    issued_at: Optional[float] = None


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class OAuthProfile:
    email: str
    first_name: str = ""
    last_name: str = ""
    subject_id: Optional[str] = None
    picture_url: Optional[str] = None

    @classmethod
    def from_google(cls, userinfo: dict[str, Any]) -> "OAuthProfile":
        name = userinfo.get("name") or ""
        first, _, last = name.partition(" ")
        return cls(
            email=(userinfo.get("email") or "").strip().lower(),
            first_name=userinfo.get("given_name") or first,
            last_name=userinfo.get("family_name") or last,
            subject_id=str(userinfo["id"]) if userinfo.get("id") else userinfo.get("sub"),
            picture_url=userinfo.get("picture"),
        )


class AuthService:
    """Credential checks, token issuance and revocation for both strategies.

    ``settings.session_strategy`` picks what ``authenticate`` consults besides
    the signature: the revocation ledger (blacklist) or the live session
    registry. Revocation always writes the ledger; registry mode also drops
    the user's sessions.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        signer: TokenSigner,
        passwords: PasswordService,
        blacklist: TokenBlacklistService,
        sessions: SessionRegistry,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.signer = signer
        self.passwords = passwords
        self.blacklist = blacklist
        self.sessions = sessions
        self.email = email
        self.logger = logger

    @property
    def uses_registry(self) -> bool:
        return self.settings.session_strategy == SessionStrategy.REGISTRY

    # -- registration and login -------------------------------------------

    async def register(
        self, email: str, first_name: str, last_name: str, password: str
    ) -> User:
        if self.store.get_user_by_email(email):
            raise ConflictError("user with this email already exists")
        pwd_hash, algo = await self.passwords.hash(password)
        try:
            user = self.store.create_user(email, first_name, last_name)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError("user with this email already exists") from exc
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id)

        if self.email is not None:
            try:
                sent = await asyncio.to_thread(
                    self.email.send_welcome, user.email, user.first_name
                )
                if not sent:
                    self.logger.warning("welcome_email_not_sent", user_id=user.id)
            except Exception as exc:
                self.logger.warning("welcome_email_failed", user_id=user.id, error=str(exc))
        return user

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        # Runs a dummy verification when there is no record
        valid = await self.passwords.verify(record, password)
        if not user or not valid:
            self.logger.info("login_failed")
            raise AuthenticationError("invalid credentials")
        if self.settings.require_email_verification and not user.is_email_verified:
            raise AuthenticationError("email verification required")

        await self._lift_revocation(user.id)
        result = await self._issue_login(user)
        self.logger.info("login_succeeded", user_id=user.id, session_id=result.session_id)
        return result

    async def _lift_revocation(self, user_id: str) -> None:
        """Drop a standing cutoff once every token it could cover has expired.

        Admin and security revocations are never lifted by a login.
        """
        sentinel = self.blacklist.get_user_sentinel(user_id)
        if sentinel is None or sentinel.reason in _STICKY_REASONS:
            return
        covered_until = sentinel.created_at + self.signer.access_ttl + self.signer.leeway
        if covered_until >= utc_now():
            return
        if sentinel.reason in PASSWORD_RELATED_REASONS:
            await self.blacklist.clear_user_blacklist(user_id)
        elif sentinel.reason == BlacklistReason.LOGOUT_ALL_DEVICES.value:
            await self.blacklist.clear_user_all_tokens_blacklist(user_id)

    async def _issue_login(self, user: User) -> AuthResult:
        if self.uses_registry:
            session_id = await self.sessions.create_session(user.id)
        else:
            session_id = uuid.uuid4().hex
        refresh_token = secrets.token_urlsafe(48)
        self.store.set_refresh_token(user.id, token_fingerprint(refresh_token))
        return AuthResult(
            user=user,
            access_token=self._sign_access(user, session_id),
            refresh_token=refresh_token,
            session_id=session_id,
            expires_in=int(self.signer.access_ttl.total_seconds()),
        )

    def _sign_access(self, user: User, session_id: str) -> str:
        return self.signer.sign(
            {
                "sub": user.id,
                "sid": session_id,
                "role": user.role,
                "email": user.email,
                "token_type": "access",
            }
        )

    async def refresh(self, refresh_token: str) -> AuthResult:
        if not refresh_token:
            raise AuthenticationError("invalid refresh token")
        new_refresh = secrets.token_urlsafe(48)
        # Compare-and-swap: a concurrent refresh with the same token loses
        user = self.store.rotate_refresh_token(
            token_fingerprint(refresh_token), token_fingerprint(new_refresh)
        )
        if not user:
            raise AuthenticationError("invalid refresh token")
        if self.uses_registry:
            session_id = await self.sessions.create_session(user.id)
        else:
            session_id = uuid.uuid4().hex
        self.logger.info("refresh_rotated", user_id=user.id)
        return AuthResult(
            user=user,
            access_token=self._sign_access(user, session_id),
            refresh_token=new_refresh,
            session_id=session_id,
            expires_in=int(self.signer.access_ttl.total_seconds()),
        )

    # -- revocation --------------------------------------------------------

    async def logout(
        self,
        *,
        user_id: str,
        access_token: Optional[str],
        session_id: Optional[str],
        refresh_token: Optional[str] = None,
    ) -> None:
        if refresh_token:
            owner = self.store.get_user_by_refresh_token(token_fingerprint(refresh_token))
            if not owner or owner.id != user_id:
                raise AuthenticationError("invalid refresh token")
            self.store.set_refresh_token(user_id, None)

        if self.uses_registry:
            await self.sessions.destroy_session(session_id)
        elif access_token:
            await self.blacklist.add_to_blacklist(access_token, user_id, BlacklistReason.LOGOUT)
        self.logger.info("logout", user_id=user_id, session_id=session_id)

    async def logout_from_all_devices(
        self,
        user_id: str,
        current_token: Optional[str] = None,
        current_session_id: Optional[str] = None,
    ) -> None:
        """Revoke every other credential of ``user_id``.

        The calling token rides out a short exemption window; in registry
        mode its session is kept while every other session is destroyed.
        """
        await self.blacklist.blacklist_all_user_tokens(
            user_id, BlacklistReason.LOGOUT_ALL_DEVICES, exclude_token=current_token
        )
        self.store.set_refresh_token(user_id, None)
        if self.uses_registry:
            await self.sessions.destroy_user_sessions(
                user_id, except_session_id=current_session_id
            )
        self.logger.info("logout_all_devices", user_id=user_id)

    async def revoke_user_tokens(
        self, user_id: str, reason: BlacklistReason = BlacklistReason.ADMIN_REVOKE
    ) -> None:
        """Force every credential of ``user_id`` out, including refresh tokens."""
        await self.blacklist.blacklist_all_user_tokens(user_id, reason)
        self.store.set_refresh_token(user_id, None)
        await self.sessions.destroy_user_sessions(user_id)

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        record = self.store.get_password_record(user_id)
        if not record or not await self.passwords.verify(record, old_password):
            raise AuthenticationError("invalid current password")

        pwd_hash, algo = await self.passwords.hash(new_password)
        self.store.save_password(user_id, pwd_hash, algo)
        self.store.set_refresh_token(user_id, None)

        try:
            await self.blacklist.blacklist_all_user_tokens(
                user_id, BlacklistReason.PASSWORD_CHANGE
            )
            await self.sessions.destroy_user_sessions(user_id)
        except Exception as exc:
            # The new password stands even if revocation could not be recorded
            self.logger.error("password_change_revocation_failed", user_id=user_id, error=str(exc))
        self.logger.info("password_changed", user_id=user_id)

    # -- oauth -------------------------------------------------------------

    async def google_login(self, profile: OAuthProfile) -> AuthResult:
        if not profile.email:
            raise AuthenticationError("failed to authenticate with google")
        user = self.store.get_user_by_email(profile.email)
        if not user:
            user = self.store.create_user(
                profile.email,
                profile.first_name,
                profile.last_name,
                google_id=profile.subject_id,
                picture=profile.picture_url,
                is_email_verified=True,
            )
            self.logger.info("oauth_user_created", user_id=user.id, provider="google")
        else:
            updates: dict[str, Any] = {"google_id": profile.subject_id, "is_email_verified": True}
            if user.picture is None and profile.picture_url:
                updates["picture"] = profile.picture_url
            user = self.store.update_user(user.id, **updates)
        if not user:
            raise AuthenticationError("failed to authenticate with google")
        if self.settings.require_email_verification and not user.is_email_verified:
            raise AuthenticationError("email verification required")

        await self._lift_revocation(user.id)
        return await self._issue_login(user)

    async def start_google_oauth(self) -> dict:
        client_id = self.settings.oauth_google_client_id
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not redirect_uri:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ValidationError("google sign-in is not configured")

        state = uuid.uuid4().hex
        await self.cache.set(f"oauth:state:{state}", "google", OAUTH_STATE_TTL_SECONDS)

        provider_config = OAUTH_PROVIDERS["google"]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": "google",
        }

    async def complete_google_oauth(self, code: str, state: str) -> AuthResult:
        # States are single use
        stored = await self.cache.pop(f"oauth:state:{state}") if state else None
        if stored != "google":
            self.logger.warning("oauth_state_invalid", provider="google")
            raise AuthenticationError("failed to authenticate with google")
        userinfo = await self._exchange_google_code(code)
        if not userinfo:
            raise AuthenticationError("failed to authenticate with google")
        return await self.google_login(OAuthProfile.from_google(userinfo))

    async def _exchange_google_code(self, code: str) -> Optional[dict]:
        client_id = self.settings.oauth_google_client_id
        client_secret = self.settings.oauth_google_client_secret
        if not client_id or not client_secret or not self.settings.oauth_redirect_uri:
            self.logger.error("oauth_credentials_missing", provider="google")
            return None

        provider_config = OAUTH_PROVIDERS["google"]
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    return None

                userinfo_response = await client.get(
                    provider_config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("oauth_exchange_error", provider="google", error=str(e))
            return None

        if not isinstance(userinfo, dict) or not userinfo.get("email"):
            self.logger.error("oauth_identity_missing_email", provider="google")
            return None
        self.logger.info("oauth_exchange_success", provider="google")
        return userinfo

    # -- request authentication --------------------------------------------

    async def authenticate(
        self, authorization: Optional[str], required_role: Optional[str] = None
    ) -> AuthContext:
        """Resolve a bearer header into an AuthContext or raise.

        Every authentication failure carries the same message so callers
        cannot tell a revoked token from a forged one.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("invalid or expired token")
        payload = self.signer.verify(token)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError("invalid or expired token")
        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id:
            raise AuthenticationError("invalid or expired token")

        if self.uses_registry:
            check = await self.sessions.validate_and_refresh_session(session_id)
            if not check.valid or check.user_id != user_id:
                raise SessionExpiredError("invalid or expired token")
        else:
            if await self.blacklist.is_token_blacklisted(token):
                raise AuthenticationError("invalid or expired token")
            if await self.blacklist.is_user_tokens_blacklisted(
                user_id, token, payload.get("iat")
            ):
                raise AuthenticationError("invalid or expired token")

        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("invalid or expired token")
        if required_role and not self._role_allows(user.role, required_role):
            raise ForbiddenError("insufficient role", detail={"required": required_role})
        return AuthContext(
            user_id=user.id,
            role=user.role,
            email=user.email,
            session_id=session_id,
            token=token,
            issued_at=payload.get("iat"),
        )

    def _role_allows(self, role: str, required: str) -> bool:
        return ROLE_RANK.get(role, -1) >= ROLE_RANK.get(required, len(ROLE_RANK))

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
