from __future__ import annotations

import asyncio
import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from tessera.config import Settings
from tessera.logging import get_logger, hash_email
from tessera.service.audit import AuditSink, LogAuditSink
from tessera.service.devices import DeviceInfo, DeviceResolver
from tessera.service.email import (
    EMAIL_VERIFICATION,
    NOTIFICATION,
    PASSWORD_RESET,
    EmailService,
)
from tessera.service.errors import (
    ACCOUNT_UNAVAILABLE,
    IDENTITY_SIGN_IN_REQUIRED,
    INVALID_CREDENTIALS,
    INVALID_TOKEN,
    SESSION_EXPIRED,
    AuthenticationError,
    ConflictError,
    InvalidInput,
    NotFoundError,
    ServerError,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from tessera.service.hashing import (
    MIN_PASSWORD_LENGTH,
    CredentialHasher,
    generate_secure_token,
)
from tessera.service.tokens import TokenCodec
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    Account,
    Ban,
    Device,
    NoBan,
    ProviderLink,
    Session,
    UserProfile,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
GENERIC_REQUEST_MESSAGE = "If the account exists, an email has been sent"


class AuthStore(Protocol):
    def create_user_profile(
        self,
        username: str,
        first_name: str = "",
        last_name: str = "",
        avatar_url: Optional[str] = None,
    ) -> UserProfile: ...

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]: ...

    def is_username_available(self, username: str) -> bool: ...

    def create_account(
        self,
        user_id: str,
        email: str,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
        provider_links: Optional[List[ProviderLink]] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def get_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, now: datetime, max_attempts: int, lock_minutes: int
    ) -> Optional[Account]: ...

    def reset_login_failures(self, account_id: str) -> None: ...

    def add_provider_link(self, account_id: str, link: ProviderLink) -> Account: ...

    def remove_provider_link(self, account_id: str, provider: str) -> bool: ...

    def touch_provider_link(
        self, account_id: str, provider: str, now: datetime
    ) -> None: ...

    def get_device_by_identifier(self, identifier: str) -> Optional[Device]: ...

    def get_device(self, device_id: str) -> Optional[Device]: ...

    def create_device(self, identifier: str, **fields: Any) -> Device: ...

    def update_device(self, device_id: str, **fields: Any) -> Optional[Device]: ...

    def create_session(
        self,
        account_id: str,
        device_id: str,
        refresh_token_hash: str,
        ttl_minutes: int = 60 * 24 * 7,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def bind_refresh_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        now: Optional[datetime] = None,
        ttl_minutes: int = 60 * 24 * 7,
    ) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_active_sessions(self, account_id: str, now: datetime) -> List[Session]: ...

    def evict_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    account_id: str
    email: str
    session_id: str


@dataclass
class AccountSummary:
    id: str
    user_id: str
    email: str
    email_verified: bool
    phone_verified: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            user_id=account.user_id,
            email=account.email,
            email_verified=account.email_verified,
            phone_verified=account.phone_verified,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    account: AccountSummary
    session_id: str
    device_id: str
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "account": {
                "id": self.account.id,
                "email": self.account.email,
                "email_verified": self.account.email_verified,
                "phone_verified": self.account.phone_verified,
            },
            "session": {"id": self.session_id, "device_id": self.device_id},
        }


@dataclass
class RegistrationResult:
    account: Account
    profile: UserProfile


@dataclass
class MessageResult:
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


def _digest(token: str) -> str:
    """Deterministic lookup key for one-time tokens stored on the account."""
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Password login, token rotation and account-protection policy.

    Store calls are synchronous. Argon2 work runs in a worker thread under
    ``settings.hash_timeout_seconds`` and every mutation that depends on a
    hash happens only after the hash completes.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
        email: Optional[EmailService] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or CredentialHasher.from_settings(settings)
        self.codec = codec or TokenCodec.from_settings(settings)
        self.email = email or EmailService.from_settings(settings)
        self.audit: AuditSink = audit or LogAuditSink()
        self.devices = DeviceResolver(store)
        self._clock = clock
        self.logger = logger

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # hashing helpers
    async def _run_hasher(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.settings.hash_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.logger.error("credential_hash_timeout", operation=fn.__name__)
            raise ServerError("credential processing timed out") from None

    async def _hash_password(self, password: str) -> str:
        try:
            return await self._run_hasher(self.hasher.hash_password, password)
        except InvalidInput as exc:
            raise ValidationError(str(exc)) from exc

    async def _hash_token(self, token: str) -> str:
        return await self._run_hasher(self.hasher.hash_token, token)

    async def verify_secret(self, digest: Optional[str], secret: str) -> bool:
        return await self._run_hasher(self.hasher.verify, digest, secret)

    # collaborator helpers
    def record_event(
        self,
        event: str,
        outcome: str,
        actor_id: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        try:
            self.audit.record(event, outcome, actor_id, metadata)
        except Exception as exc:
            self.logger.warning("audit_sink_failed", audit_event=event, error=str(exc))

    async def _notify(self, address: str, kind: str, data: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.email.send, address, kind, data)
        except Exception as exc:
            self.logger.warning(
                "email_dispatch_failed",
                template=kind,
                email_hash=hash_email(address),
                error=str(exc),
            )

    # validation
    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        return (email or "").strip().lower()

    def _validate_email(self, email: str) -> str:
        normalized = self.normalize_email(email)
        if not EMAIL_PATTERN.match(normalized) or len(normalized) > 254:
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    @staticmethod
    def _validate_password(password: Optional[str]) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    @staticmethod
    def _validate_username(username: Optional[str]) -> str:
        username = (username or "").strip()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "username must be 3-32 letters, digits, '_', '.' or '-'",
                detail={"field": "username"},
            )
        return username

    def ensure_account_usable(self, account: Account, *, event: str) -> None:
        """Active, ban and lock checks shared by every sign-in path."""
        now = self.now()
        reason = None
        if not account.active:
            reason = "inactive"
        elif account.is_banned(now):
            reason = f"banned_{account.ban.kind}"
        elif account.is_locked(now):
            reason = "locked"
        if reason:
            self.logger.warning(f"{event}_rejected", account_id=account.id, reason=reason)
            self.record_event(event, "rejected", account.id, reason=reason)
            raise AuthenticationError(ACCOUNT_UNAVAILABLE)

    # registration
    async def register(
        self,
        email: str,
        password: str,
        username: str,
        first_name: str = "",
        last_name: str = "",
    ) -> RegistrationResult:
        email = self._validate_email(email)
        password = self._validate_password(password)
        username = self._validate_username(username)
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        if not self.store.is_username_available(username):
            raise ConflictError("username already taken", detail={"field": "username"})

        password_hash = await self._hash_password(password)
        try:
            profile = self.store.create_user_profile(
                username, first_name=first_name or "", last_name=last_name or ""
            )
            account = self.store.create_account(profile.id, email, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        self.logger.info(
            "account_registered", account_id=account.id, email_hash=hash_email(email)
        )
        self.record_event("register", "success", account.id)
        await self._issue_verification(account)
        return RegistrationResult(account=account, profile=profile)

    # login
    async def login(
        self,
        email: str,
        password: str,
        device_info: DeviceInfo,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        account = self.store.get_account_by_email(self.normalize_email(email))
        if not account:
            self.logger.info(
                "login_failed", reason="unknown_email", email_hash=hash_email(email)
            )
            self.record_event("login", "failure", None, reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        self.ensure_account_usable(account, event="login")
        if not account.has_password:
            self.logger.info("login_failed", account_id=account.id, reason="no_password")
            self.record_event("login", "failure", account.id, reason="no_password")
            raise AuthenticationError(IDENTITY_SIGN_IN_REQUIRED)

        if not await self.verify_secret(account.password_hash, password or ""):
            now = self.now()
            updated = self.store.record_failed_login(
                account.id,
                now,
                self.settings.max_failed_logins,
                self.settings.lockout_minutes,
            )
            failures = updated.failed_login_count if updated else None
            self.logger.info(
                "login_failed",
                account_id=account.id,
                reason="bad_password",
                failed_login_count=failures,
            )
            if updated and updated.is_locked(now):
                self.logger.warning(
                    "account_locked",
                    account_id=account.id,
                    locked_until=updated.locked_until.isoformat(),
                )
                self.record_event("account_locked", "success", account.id)
            self.record_event("login", "failure", account.id, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)

        if account.failed_login_count or account.locked_until:
            self.store.reset_login_failures(account.id)
        if self.hasher.needs_rehash(account.password_hash):
            new_hash = await self._hash_password(password)
            self.store.update_account(account.id, password_hash=new_hash)
            self.logger.info("password_rehashed", account_id=account.id)

        pair = await self.issue_session(
            account, device_info, ip_address=ip_address, user_agent=user_agent
        )
        self.record_event("login", "success", account.id, session_id=pair.session_id)
        return pair

    async def issue_session(
        self,
        account: Account,
        device_info: DeviceInfo,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Resolve the device, create its session and bind a fresh token pair.

        The session row is created with a unique placeholder hash, the refresh
        token is signed against the new session id, and its digest replaces the
        placeholder through the same compare-and-swap used by rotation.
        """
        try:
            device = self.devices.resolve(device_info.identifier, device_info, account.id)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "device"}) from exc

        placeholder = f"pending:{uuid.uuid4()}"
        try:
            session = self.store.create_session(
                account.id,
                device.id,
                placeholder,
                ttl_minutes=self.settings.session_ttl_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except ConstraintViolation as exc:
            # Two sign-ins on the same device raced on the device-unique index
            raise ConflictError(
                "another sign-in for this device is in progress",
                detail={"field": "device"},
            ) from exc
        refresh_token = self.codec.sign_refresh(account.id, session.id)
        try:
            refresh_hash = await self._hash_token(refresh_token)
        except Exception:
            self.store.deactivate_session(session.id)
            raise
        if not self.store.bind_refresh_token(
            session.id,
            placeholder,
            refresh_hash,
            self.now(),
            ttl_minutes=self.settings.session_ttl_minutes,
        ):
            # A concurrent login on the same device replaced this session
            self.logger.warning(
                "session_bind_lost", account_id=account.id, session_id=session.id
            )
            raise AuthenticationError(SESSION_EXPIRED)
        access_token = self.codec.sign_access(account.id, account.email, session.id)
        self.logger.info(
            "session_started",
            account_id=account.id,
            session_id=session.id,
            device_id=device.id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            account=AccountSummary.from_account(account),
            session_id=session.id,
            device_id=device.id,
        )

    # rotation
    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenExpired:
            self.logger.info("refresh_failed", reason="token_expired")
            raise AuthenticationError(SESSION_EXPIRED) from None
        except TokenInvalid as exc:
            self.logger.info("refresh_failed", reason="token_invalid", detail=str(exc))
            raise AuthenticationError(INVALID_TOKEN) from None

        session = self.store.get_session(claims.session_id)
        if not session:
            self.logger.info(
                "refresh_failed", reason="session_missing", session_id=claims.session_id
            )
            raise NotFoundError("session not found")
        now = self.now()
        if not session.active:
            self.logger.info("refresh_failed", reason="session_inactive", session_id=session.id)
            raise AuthenticationError(INVALID_TOKEN)
        if session.is_expired(now):
            self.logger.info("refresh_failed", reason="session_expired", session_id=session.id)
            raise AuthenticationError(SESSION_EXPIRED)
        if session.account_id != claims.subject:
            self.logger.warning(
                "refresh_failed", reason="subject_mismatch", session_id=session.id
            )
            raise AuthenticationError(INVALID_TOKEN)

        expected_hash = session.refresh_token_hash
        if not await self.verify_secret(expected_hash, refresh_token):
            self.store.deactivate_session(session.id)
            self.logger.warning(
                "refresh_token_reuse_detected",
                account_id=session.account_id,
                session_id=session.id,
            )
            self.record_event(
                "refresh_token_reuse", "detected", session.account_id, session_id=session.id
            )
            raise AuthenticationError(INVALID_TOKEN)

        account = self.store.get_account(session.account_id)
        if not account:
            raise NotFoundError("account not found")
        self.ensure_account_usable(account, event="refresh")

        new_refresh = self.codec.sign_refresh(account.id, session.id)
        new_hash = await self._hash_token(new_refresh)
        bound = self.store.bind_refresh_token(
            session.id,
            expected_hash,
            new_hash,
            self.now(),
            ttl_minutes=self.settings.session_ttl_minutes,
        )
        if not bound:
            # Another refresh with the same token won the swap
            self.logger.warning(
                "refresh_rotation_conflict", account_id=account.id, session_id=session.id
            )
            raise AuthenticationError(INVALID_TOKEN)

        access_token = self.codec.sign_access(account.id, account.email, session.id)
        self.logger.info("refresh_rotated", account_id=account.id, session_id=session.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            account=AccountSummary.from_account(account),
            session_id=session.id,
            device_id=session.device_id,
        )

    def authenticate(self, access_token: str, *, check_session: bool = False) -> AuthContext:
        """Verify an access token.

        Verification is stateless; ``check_session`` additionally requires the
        session to still be active, for operations that must not outlive logout.
        """
        try:
            claims = self.codec.verify_access(access_token)
        except TokenExpired:
            raise AuthenticationError(SESSION_EXPIRED) from None
        except TokenInvalid:
            raise AuthenticationError(INVALID_TOKEN) from None
        if check_session:
            session = self.store.get_session(claims.session_id)
            if not session or not session.active or session.is_expired(self.now()):
                raise AuthenticationError(SESSION_EXPIRED)
        return AuthContext(
            account_id=claims.subject, email=claims.email, session_id=claims.session_id
        )

    async def logout(self, access_token: str) -> MessageResult:
        ctx = self.authenticate(access_token)
        if self.store.deactivate_session(ctx.session_id):
            self.logger.info(
                "session_logged_out", account_id=ctx.account_id, session_id=ctx.session_id
            )
            self.record_event("logout", "success", ctx.account_id, session_id=ctx.session_id)
        return MessageResult("Logged out")

    # password reset
    async def request_password_reset(self, email: str) -> MessageResult:
        result = MessageResult(GENERIC_REQUEST_MESSAGE)
        account = self.store.get_account_by_email(self.normalize_email(email))
        if not account or not account.has_password:
            self.logger.info(
                "password_reset_requested", outcome="skipped", email_hash=hash_email(email)
            )
            return result
        token = generate_secure_token(32)
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.update_account(
            account.id,
            password_reset_token=_digest(token),
            password_reset_expires_at=self.now() + ttl,
        )
        self.logger.info("password_reset_requested", outcome="issued", account_id=account.id)
        self.record_event("password_reset_request", "success", account.id)
        await self._notify(
            account.email,
            PASSWORD_RESET,
            {
                "token": token,
                "expires_minutes": self.settings.password_reset_ttl_minutes,
            },
        )
        return result

    async def confirm_password_reset(self, token: str, new_password: str) -> MessageResult:
        account = (
            self.store.get_account_by_reset_token(_digest(token), self.now())
            if token
            else None
        )
        if not account:
            self.logger.warning(
                "password_reset_invalid_token", token_prefix=(token or "")[:8]
            )
            raise AuthenticationError(INVALID_TOKEN)
        self._validate_password(new_password)
        new_hash = await self._hash_password(new_password)
        self._store_password(
            account.id,
            new_hash,
            password_reset_token=None,
            password_reset_expires_at=None,
        )
        revoked = self.store.deactivate_account_sessions(account.id)
        self.logger.info(
            "password_reset_completed", account_id=account.id, sessions_revoked=revoked
        )
        self.record_event("password_reset", "success", account.id)
        await self._notify(
            account.email,
            NOTIFICATION,
            {
                "subject": "Your password was changed",
                "message": "Your password was reset and all devices were signed out.",
            },
        )
        return MessageResult("Password updated")

    def _store_password(self, account_id: str, password_hash: str, **extra: Any) -> None:
        self.store.update_account(
            account_id,
            password_hash=password_hash,
            last_password_change_at=self.now(),
            failed_login_count=0,
            last_failed_login_at=None,
            locked_until=None,
            **extra,
        )

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> MessageResult:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if not account.has_password:
            raise AuthenticationError(IDENTITY_SIGN_IN_REQUIRED)
        self._validate_password(new_password)
        if not await self.verify_secret(account.password_hash, current_password or ""):
            self.logger.info("password_change_failed", account_id=account_id)
            self.record_event("password_change", "failure", account_id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        new_hash = await self._hash_password(new_password)
        self._store_password(account_id, new_hash)
        revoked = self.store.deactivate_account_sessions(
            account_id, except_session_id=keep_session_id
        )
        self.logger.info(
            "password_changed", account_id=account_id, sessions_revoked=revoked
        )
        self.record_event("password_change", "success", account_id)
        return MessageResult("Password updated")

    # email verification
    async def _issue_verification(self, account: Account) -> None:
        token = generate_secure_token(32)
        ttl = timedelta(hours=self.settings.email_verification_ttl_hours)
        self.store.update_account(
            account.id,
            email_verification_token=_digest(token),
            email_verification_expires_at=self.now() + ttl,
        )
        await self._notify(
            account.email,
            EMAIL_VERIFICATION,
            {"token": token, "expires_hours": self.settings.email_verification_ttl_hours},
        )

    async def request_email_verification(self, email: str) -> MessageResult:
        result = MessageResult(GENERIC_REQUEST_MESSAGE)
        account = self.store.get_account_by_email(self.normalize_email(email))
        if not account or account.email_verified:
            self.logger.info(
                "email_verification_requested",
                outcome="skipped",
                email_hash=hash_email(email),
            )
            return result
        await self._issue_verification(account)
        self.logger.info(
            "email_verification_requested", outcome="issued", account_id=account.id
        )
        return result

    async def confirm_email_verification(self, token: str) -> MessageResult:
        account = (
            self.store.get_account_by_verification_token(_digest(token), self.now())
            if token
            else None
        )
        if not account:
            self.logger.warning(
                "email_verification_invalid_token", token_prefix=(token or "")[:8]
            )
            raise AuthenticationError(INVALID_TOKEN)
        self.store.update_account(
            account.id,
            email_verified=True,
            email_verification_token=None,
            email_verification_expires_at=None,
        )
        self.logger.info("email_verified", account_id=account.id)
        self.record_event("email_verification", "success", account.id)
        return MessageResult("Email verified")

    # account administration
    async def deactivate_account(
        self, account_id: str, password: Optional[str] = None
    ) -> MessageResult:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if account.has_password and not await self.verify_secret(
            account.password_hash, password or ""
        ):
            raise AuthenticationError(INVALID_CREDENTIALS)
        self.store.update_account(account_id, active=False)
        revoked = self.store.deactivate_account_sessions(account_id)
        self.logger.info(
            "account_deactivated", account_id=account_id, sessions_revoked=revoked
        )
        self.record_event("account_deactivate", "success", account_id)
        return MessageResult("Account deactivated")

    def ban_account(self, account_id: str, ban: Ban) -> Account:
        updated = self.store.update_account(account_id, ban=ban)
        if not updated:
            raise NotFoundError("account not found")
        revoked = self.store.deactivate_account_sessions(account_id)
        self.logger.warning(
            "account_banned",
            account_id=account_id,
            ban_kind=ban.kind,
            sessions_revoked=revoked,
        )
        self.record_event("account_ban", "success", account_id, ban_kind=ban.kind)
        return updated

    def unban_account(self, account_id: str) -> Account:
        updated = self.store.update_account(account_id, ban=NoBan())
        if not updated:
            raise NotFoundError("account not found")
        self.logger.info("account_unbanned", account_id=account_id)
        self.record_event("account_unban", "success", account_id)
        return updated

    def unlock_account(self, account_id: str) -> None:
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found")
        self.store.reset_login_failures(account_id)
        self.logger.info("account_unlocked", account_id=account_id)

    # sessions
    def list_sessions(self, account_id: str) -> List[Session]:
        return self.store.list_active_sessions(account_id, self.now())

    def revoke_session(self, account_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if not session or session.account_id != account_id:
            raise NotFoundError("session not found")
        self.store.deactivate_session(session_id)
        self.logger.info("session_revoked", account_id=account_id, session_id=session_id)
        self.record_event("session_revoke", "success", account_id, session_id=session_id)

    def revoke_all_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        revoked = self.store.deactivate_account_sessions(
            account_id, except_session_id=except_session_id
        )
        self.logger.info("sessions_revoked", account_id=account_id, count=revoked)
        return revoked

    def evict_expired_sessions(self) -> int:
        return self.store.evict_expired_sessions(self.now())
