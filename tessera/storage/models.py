from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Ban state is a closed set of variants; "banned" is never inferred from
# independently nullable fields.


@dataclass(frozen=True)
class NoBan:
    kind: str = field(default="none", init=False)

    def is_banned(self, now: datetime) -> bool:
        return False


@dataclass(frozen=True)
class TemporaryBan:
    ends_at: datetime
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    kind: str = field(default="temporary", init=False)

    def is_banned(self, now: datetime) -> bool:
        return now < self.ends_at


@dataclass(frozen=True)
class PermanentBan:
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    kind: str = field(default="permanent", init=False)

    def is_banned(self, now: datetime) -> bool:
        return True


Ban = Union[NoBan, TemporaryBan, PermanentBan]


def ban_to_dict(ban: Ban) -> dict:
    data: dict = {"kind": ban.kind}
    if isinstance(ban, TemporaryBan):
        data["ends_at"] = ban.ends_at.isoformat()
    if isinstance(ban, (TemporaryBan, PermanentBan)):
        data["reason"] = ban.reason
        data["started_at"] = ban.started_at.isoformat() if ban.started_at else None
    return data


def ban_from_dict(data: Optional[dict]) -> Ban:
    if not data or data.get("kind") in (None, "none"):
        return NoBan()
    started_raw = data.get("started_at")
    started_at = datetime.fromisoformat(started_raw) if started_raw else None
    if data["kind"] == "permanent":
        return PermanentBan(reason=data.get("reason"), started_at=started_at)
    if data["kind"] == "temporary":
        return TemporaryBan(
            ends_at=datetime.fromisoformat(data["ends_at"]),
            reason=data.get("reason"),
            started_at=started_at,
        )
    raise ValueError(f"unknown ban kind: {data['kind']}")


@dataclass
class ProviderLink:
    provider: str
    provider_subject_id: str
    provider_email: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class UserProfile:
    id: str
    username: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Account:
    id: str
    user_id: str
    email: str
    password_hash: Optional[str] = None
    active: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    ban: Ban = field(default_factory=NoBan)
    failed_login_count: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    provider_links: List[ProviderLink] = field(default_factory=list)
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    last_password_change_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def is_banned(self, now: datetime) -> bool:
        return self.ban.is_banned(now)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def get_provider_link(self, provider: str) -> Optional[ProviderLink]:
        return next((p for p in self.provider_links if p.provider == provider), None)

    def has_provider(self, provider: str) -> bool:
        return self.get_provider_link(provider) is not None

    def auth_method_count(self) -> int:
        return len(self.provider_links) + (1 if self.has_password else 0)


@dataclass
class Device:
    id: str
    identifier: str
    fingerprint: str = ""
    platform: str = "other"
    model: Optional[str] = None
    name: Optional[str] = None
    account_id: Optional[str] = None
    trusted: bool = False
    trusted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    account_id: str
    device_id: str
    refresh_token_hash: str
    expires_at: datetime
    active: bool = True
    last_login_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        device_id: str,
        refresh_token_hash: str,
        ttl_minutes: int = 60 * 24 * 7,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            account_id=account_id,
            device_id=device_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_login_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
