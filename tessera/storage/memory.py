from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    Account,
    Device,
    ProviderLink,
    Session,
    UserProfile,
    new_id,
    utcnow,
)

_ACCOUNT_MUTABLE_FIELDS = {
    "email",
    "password_hash",
    "active",
    "email_verified",
    "phone_verified",
    "ban",
    "failed_login_count",
    "last_failed_login_at",
    "locked_until",
    "password_reset_token",
    "password_reset_expires_at",
    "email_verification_token",
    "email_verification_expires_at",
    "last_password_change_at",
}

_DEVICE_MUTABLE_FIELDS = {
    "fingerprint",
    "platform",
    "model",
    "name",
    "account_id",
    "trusted",
    "trusted_at",
    "last_seen_at",
}


class MemoryStore:
    """In-process backing store with the same guarantees as the Postgres store.

    Every mutation runs under a single re-entrant lock so conditional updates
    (refresh-token compare-and-swap, failed-login increments) are atomic.
    Callers always receive copies; mutating a returned record has no effect
    until it is written back through an update method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.profiles: Dict[str, UserProfile] = {}
        self.accounts: Dict[str, Account] = {}
        self.devices: Dict[str, Device] = {}
        self.sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()

    # profiles
    def create_user_profile(
        self,
        username: str,
        first_name: str = "",
        last_name: str = "",
        avatar_url: Optional[str] = None,
    ) -> UserProfile:
        with self._data_lock:
            if not self.is_username_available(username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            profile = UserProfile(
                id=new_id(),
                username=username,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
            )
            self.profiles[profile.id] = profile
            return copy.deepcopy(profile)

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._data_lock:
            profile = self.profiles.get(user_id)
            return copy.deepcopy(profile) if profile else None

    def is_username_available(self, username: str) -> bool:
        needle = username.lower()
        with self._data_lock:
            return not any(p.username.lower() == needle for p in self.profiles.values())

    # accounts
    def create_account(
        self,
        user_id: str,
        email: str,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
        provider_links: Optional[List[ProviderLink]] = None,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if user_id not in self.profiles:
                raise ConstraintViolation("user profile missing", {"user_id": user_id})
            if self._find_account_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for link in provider_links or []:
                if self._find_account_by_provider(link.provider, link.provider_subject_id):
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider"}
                    )
            account = Account(
                id=new_id(),
                user_id=user_id,
                email=normalized,
                password_hash=password_hash,
                email_verified=email_verified,
                provider_links=list(provider_links or []),
            )
            self.accounts[account.id] = account
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def _find_account_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def _find_account_by_provider(
        self, provider: str, subject_id: str
    ) -> Optional[Account]:
        for account in self.accounts.values():
            for link in account.provider_links:
                if link.provider == provider and link.provider_subject_id == subject_id:
                    return account
        return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account_by_email(email.strip().lower())
            return copy.deepcopy(account) if account else None

    def get_account_by_provider(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account_by_provider(provider, provider_subject_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.password_reset_token == token_hash
                    and account.password_reset_expires_at is not None
                    and account.password_reset_expires_at > now
                ):
                    return copy.deepcopy(account)
        return None

    def get_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.email_verification_token == token_hash
                    and account.email_verification_expires_at is not None
                    and account.email_verification_expires_at > now
                ):
                    return copy.deepcopy(account)
        return None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].strip().lower()
                other = self._find_account_by_email(fields["email"])
                if other and other.id != account_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(account, name, value)
            return copy.deepcopy(account)

    def record_failed_login(
        self,
        account_id: str,
        now: datetime,
        max_attempts: int,
        lock_minutes: int,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_count += 1
            account.last_failed_login_at = now
            if account.failed_login_count >= max_attempts:
                account.locked_until = now + timedelta(minutes=lock_minutes)
            return copy.deepcopy(account)

    def reset_login_failures(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.failed_login_count = 0
            account.last_failed_login_at = None
            account.locked_until = None

    def add_provider_link(self, account_id: str, link: ProviderLink) -> Account:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account missing", {"account_id": account_id})
            if account.has_provider(link.provider):
                raise ConstraintViolation(
                    "provider already linked to account", {"field": "provider"}
                )
            owner = self._find_account_by_provider(link.provider, link.provider_subject_id)
            if owner:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider"}
                )
            account.provider_links.append(copy.deepcopy(link))
            return copy.deepcopy(account)

    def remove_provider_link(self, account_id: str, provider: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if not account.has_provider(provider):
                return False
            if account.auth_method_count() <= 1:
                raise ConstraintViolation(
                    "cannot remove the last sign-in method",
                    {"field": "provider", "reason": "last_sign_in_method"},
                )
            account.provider_links = [
                p for p in account.provider_links if p.provider != provider
            ]
            return True

    def touch_provider_link(
        self, account_id: str, provider: str, now: datetime
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            link = account.get_provider_link(provider)
            if link:
                link.last_login_at = now

    # devices
    def get_device_by_identifier(self, identifier: str) -> Optional[Device]:
        with self._data_lock:
            device = next(
                (d for d in self.devices.values() if d.identifier == identifier), None
            )
            return copy.deepcopy(device) if device else None

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return copy.deepcopy(device) if device else None

    def create_device(
        self,
        identifier: str,
        *,
        fingerprint: str = "",
        platform: str = "other",
        model: Optional[str] = None,
        name: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> Device:
        with self._data_lock:
            if any(d.identifier == identifier for d in self.devices.values()):
                raise ConstraintViolation(
                    "device identifier already exists", {"field": "identifier"}
                )
            device = Device(
                id=new_id(),
                identifier=identifier,
                fingerprint=fingerprint,
                platform=platform,
                model=model,
                name=name,
                account_id=account_id,
            )
            self.devices[device.id] = device
            return copy.deepcopy(device)

    def update_device(self, device_id: str, **fields: Any) -> Optional[Device]:
        unknown = set(fields) - _DEVICE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported device fields: {sorted(unknown)}")
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            for name, value in fields.items():
                setattr(device, name, value)
            return copy.deepcopy(device)

    # sessions
    def create_session(
        self,
        account_id: str,
        device_id: str,
        refresh_token_hash: str,
        ttl_minutes: int = 60 * 24 * 7,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account missing", {"account_id": account_id})
            if device_id not in self.devices:
                raise ConstraintViolation("device missing", {"device_id": device_id})
            if any(
                s.refresh_token_hash == refresh_token_hash for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "refresh_token_hash"}
                )
            # one session row per device; a new login replaces the previous one
            stale = [sid for sid, s in self.sessions.items() if s.device_id == device_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            sess = Session.new(
                account_id=account_id,
                device_id=device_id,
                refresh_token_hash=refresh_token_hash,
                ttl_minutes=ttl_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            return copy.deepcopy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def bind_refresh_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        now: Optional[datetime] = None,
        ttl_minutes: int = 60 * 24 * 7,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.active or sess.refresh_token_hash != expected_hash:
                return False
            if any(
                s.refresh_token_hash == new_hash
                for sid, s in self.sessions.items()
                if sid != session_id
            ):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "refresh_token_hash"}
                )
            now = now or utcnow()
            sess.refresh_token_hash = new_hash
            sess.last_login_at = now
            sess.expires_at = now + timedelta(minutes=ttl_minutes)
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.active:
                return False
            sess.active = False
            return True

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if (
                    sess.account_id == account_id
                    and sess.active
                    and sess.id != except_session_id
                ):
                    sess.active = False
                    count += 1
            return count

    def list_active_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            rows = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.account_id == account_id and s.active and not s.is_expired(now)
            ]
        return sorted(rows, key=lambda s: s.last_login_at, reverse=True)

    def evict_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.is_expired(now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
        if stale:
            self.logger.info("sessions_evicted", count=len(stale))
        return len(stale)


__all__ = ["MemoryStore"]
