from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    Account,
    Device,
    ProviderLink,
    Session,
    UserProfile,
    ban_from_dict,
    ban_to_dict,
    new_id,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS user_profile (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS user_profile_username_key ON user_profile (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES user_profile(id),
        email TEXT NOT NULL,
        password_hash TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        ban JSONB NOT NULL DEFAULT '{"kind": "none"}'::jsonb,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        last_failed_login_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        email_verification_token TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        last_password_change_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_key ON account (lower(email))",
    """
    CREATE INDEX IF NOT EXISTS account_reset_token_idx
        ON account (password_reset_token) WHERE password_reset_token IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS account_verification_token_idx
        ON account (email_verification_token) WHERE email_verification_token IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_link (
        account_id UUID NOT NULL REFERENCES account(id),
        provider TEXT NOT NULL,
        provider_subject_id TEXT NOT NULL,
        provider_email TEXT,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        CONSTRAINT provider_link_account_provider_key PRIMARY KEY (account_id, provider),
        CONSTRAINT provider_link_subject_key UNIQUE (provider, provider_subject_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        fingerprint TEXT NOT NULL DEFAULT '',
        platform TEXT NOT NULL DEFAULT 'other',
        model TEXT,
        name TEXT,
        account_id UUID REFERENCES account(id),
        trusted BOOLEAN NOT NULL DEFAULT FALSE,
        trusted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT device_identifier_key UNIQUE (identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id),
        device_id UUID NOT NULL REFERENCES device(id),
        refresh_token_hash TEXT NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMPTZ NOT NULL,
        last_login_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT auth_session_device_key UNIQUE (device_id),
        CONSTRAINT auth_session_refresh_hash_key UNIQUE (refresh_token_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)

_CONSTRAINT_FIELDS = {
    "user_profile_username_key": "username",
    "account_email_key": "email",
    "provider_link_account_provider_key": "provider",
    "provider_link_subject_key": "provider",
    "device_identifier_key": "identifier",
    "auth_session_device_key": "device_id",
    "auth_session_refresh_hash_key": "refresh_token_hash",
}

_ACCOUNT_COLUMNS = {
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

_DEVICE_COLUMNS = {
    "fingerprint",
    "platform",
    "model",
    "name",
    "account_id",
    "trusted",
    "trusted_at",
    "last_seen_at",
}


def _unique_violation(exc: errors.UniqueViolation, message: str) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "")
    return ConstraintViolation(message, {"field": field, "constraint": constraint})


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed account, device and session store.

    Conditional writes are single statements: the refresh-token swap is an
    ``UPDATE ... WHERE refresh_token_hash = %s`` and the failed-login counter
    is incremented in place with ``RETURNING``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _profile_from_row(row: Dict[str, Any]) -> UserProfile:
        return UserProfile(
            id=str(row["id"]),
            username=row["username"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            avatar_url=row.get("avatar_url"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _link_from_row(row: Dict[str, Any]) -> ProviderLink:
        return ProviderLink(
            provider=row["provider"],
            provider_subject_id=row["provider_subject_id"],
            provider_email=row.get("provider_email"),
            linked_at=row.get("linked_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _account_from_row(
        row: Dict[str, Any], links: Iterable[ProviderLink] = ()
    ) -> Account:
        ban_raw = row.get("ban")
        if isinstance(ban_raw, str):
            ban_raw = json.loads(ban_raw)
        return Account(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            active=row.get("active", True),
            email_verified=row.get("email_verified", False),
            phone_verified=row.get("phone_verified", False),
            ban=ban_from_dict(ban_raw),
            failed_login_count=row.get("failed_login_count") or 0,
            last_failed_login_at=row.get("last_failed_login_at"),
            locked_until=row.get("locked_until"),
            provider_links=list(links),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            last_password_change_at=row.get("last_password_change_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> Device:
        return Device(
            id=str(row["id"]),
            identifier=row["identifier"],
            fingerprint=row.get("fingerprint") or "",
            platform=row.get("platform") or "other",
            model=row.get("model"),
            name=row.get("name"),
            account_id=_str_or_none(row.get("account_id")),
            trusted=row.get("trusted", False),
            trusted_at=row.get("trusted_at"),
            created_at=row.get("created_at") or utcnow(),
            last_seen_at=row.get("last_seen_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            device_id=str(row["device_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            active=row.get("active", True),
            last_login_at=row.get("last_login_at") or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _hydrate_account(self, conn, row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        link_rows = conn.execute(
            "SELECT * FROM provider_link WHERE account_id = %s ORDER BY linked_at",
            (row["id"],),
        ).fetchall()
        return self._account_from_row(row, [self._link_from_row(r) for r in link_rows])

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM account WHERE {where}", params).fetchone()
            return self._hydrate_account(conn, row)

    # profiles
    def create_user_profile(
        self,
        username: str,
        first_name: str = "",
        last_name: str = "",
        avatar_url: Optional[str] = None,
    ) -> UserProfile:
        profile = UserProfile(
            id=new_id(),
            username=username,
            first_name=first_name,
            last_name=last_name,
            avatar_url=avatar_url,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_profile (id, username, first_name, last_name, avatar_url, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        profile.id,
                        username,
                        first_name,
                        last_name,
                        avatar_url,
                        profile.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "username already exists") from exc
        return profile

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_profile WHERE id = %s", (user_id,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def is_username_available(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS taken FROM user_profile WHERE lower(username) = lower(%s)",
                (username,),
            ).fetchone()
        return row is None

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
        account = Account(
            id=new_id(),
            user_id=user_id,
            email=email.strip().lower(),
            password_hash=password_hash,
            email_verified=email_verified,
            provider_links=list(provider_links or []),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, user_id, email, password_hash, email_verified, ban, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        user_id,
                        account.email,
                        password_hash,
                        email_verified,
                        json.dumps(ban_to_dict(account.ban)),
                        account.created_at,
                    ),
                )
                for link in account.provider_links:
                    self._insert_link(conn, account.id, link)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "account already exists") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user profile missing", {"user_id": user_id}) from exc
        return account

    @staticmethod
    def _insert_link(conn, account_id: str, link: ProviderLink) -> None:
        conn.execute(
            """
            INSERT INTO provider_link (account_id, provider, provider_subject_id, provider_email, linked_at, last_login_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                account_id,
                link.provider,
                link.provider_subject_id,
                link.provider_email,
                link.linked_at,
                link.last_login_at,
            ),
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", (email.strip(),))

    def get_account_by_provider(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]:
        return self._fetch_account(
            "id = (SELECT account_id FROM provider_link WHERE provider = %s AND provider_subject_id = %s)",
            (provider, provider_subject_id),
        )

    def get_account_by_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        return self._fetch_account(
            "password_reset_token = %s AND password_reset_expires_at > %s",
            (token_hash, now),
        )

    def get_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        return self._fetch_account(
            "email_verification_token = %s AND email_verification_expires_at > %s",
            (token_hash, now),
        )

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        values: Dict[str, Any] = dict(fields)
        if "ban" in values:
            values["ban"] = json.dumps(ban_to_dict(values["ban"]))
        if "email" in values:
            values["email"] = values["email"].strip().lower()
        # Column names come from the whitelist above
        assignments = ", ".join(f"{column} = %s" for column in values)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments} WHERE id = %s RETURNING *",
                    (*values.values(), account_id),
                ).fetchone()
                return self._hydrate_account(conn, row)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "email already exists") from exc

    def record_failed_login(
        self,
        account_id: str,
        now: datetime,
        max_attempts: int,
        lock_minutes: int,
    ) -> Optional[Account]:
        lock_until = now + timedelta(minutes=lock_minutes)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_count = failed_login_count + 1,
                    last_failed_login_at = %s,
                    locked_until = CASE
                        WHEN failed_login_count + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (now, max_attempts, lock_until, account_id),
            ).fetchone()
            return self._hydrate_account(conn, row)

    def reset_login_failures(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET failed_login_count = 0, last_failed_login_at = NULL, locked_until = NULL
                WHERE id = %s
                """,
                (account_id,),
            )

    def add_provider_link(self, account_id: str, link: ProviderLink) -> Account:
        try:
            with self._connect() as conn:
                self._insert_link(conn, account_id, link)
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s", (account_id,)
                ).fetchone()
                account = self._hydrate_account(conn, row)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "provider identity already linked") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account missing", {"account_id": account_id}) from exc
        if account is None:
            raise ConstraintViolation("account missing", {"account_id": account_id})
        return account

    def remove_provider_link(self, account_id: str, provider: str) -> bool:
        with self._connect() as conn, conn.transaction():
            # row lock serializes concurrent unlinks on the same account
            row = conn.execute(
                "SELECT password_hash FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not row:
                return False
            linked = {
                r["provider"]
                for r in conn.execute(
                    "SELECT provider FROM provider_link WHERE account_id = %s",
                    (account_id,),
                ).fetchall()
            }
            if provider not in linked:
                return False
            if not row["password_hash"] and len(linked) <= 1:
                raise ConstraintViolation(
                    "cannot remove the last sign-in method",
                    {"field": "provider", "reason": "last_sign_in_method"},
                )
            conn.execute(
                "DELETE FROM provider_link WHERE account_id = %s AND provider = %s",
                (account_id, provider),
            )
            return True

    def touch_provider_link(
        self, account_id: str, provider: str, now: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE provider_link SET last_login_at = %s WHERE account_id = %s AND provider = %s",
                (now, account_id, provider),
            )

    # devices
    def get_device_by_identifier(self, identifier: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE identifier = %s", (identifier,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM device WHERE id = %s", (device_id,)).fetchone()
        return self._device_from_row(row) if row else None

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
        device = Device(
            id=new_id(),
            identifier=identifier,
            fingerprint=fingerprint,
            platform=platform,
            model=model,
            name=name,
            account_id=account_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO device (id, identifier, fingerprint, platform, model, name, account_id, created_at, last_seen_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.id,
                        identifier,
                        fingerprint,
                        platform,
                        model,
                        name,
                        account_id,
                        device.created_at,
                        device.last_seen_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "device identifier already exists") from exc
        return device

    def update_device(self, device_id: str, **fields: Any) -> Optional[Device]:
        unknown = set(fields) - _DEVICE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported device fields: {sorted(unknown)}")
        if not fields:
            return self.get_device(device_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE device SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), device_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

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
        sess = Session.new(
            account_id=account_id,
            device_id=device_id,
            refresh_token_hash=refresh_token_hash,
            ttl_minutes=ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn:
                # one session row per device; a new login replaces the previous one
                conn.execute("DELETE FROM auth_session WHERE device_id = %s", (device_id,))
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, device_id, refresh_token_hash, active, expires_at, last_login_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        account_id,
                        device_id,
                        refresh_token_hash,
                        sess.expires_at,
                        sess.last_login_at,
                        ip_address,
                        user_agent,
                        sess.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "session already exists") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session account or device missing",
                {"account_id": account_id, "device_id": device_id},
            ) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def bind_refresh_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        now: Optional[datetime] = None,
        ttl_minutes: int = 60 * 24 * 7,
    ) -> bool:
        now = now or utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session
                    SET refresh_token_hash = %s, last_login_at = %s, expires_at = %s
                    WHERE id = %s AND refresh_token_hash = %s AND active
                    RETURNING id
                    """,
                    (
                        new_hash,
                        now,
                        now + timedelta(minutes=ttl_minutes),
                        session_id,
                        expected_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, "refresh token hash already exists") from exc
        return row is not None

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET active = FALSE WHERE id = %s AND active",
                (session_id,),
            )
            return cur.rowcount > 0

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "UPDATE auth_session SET active = FALSE WHERE account_id = %s AND active AND id <> %s",
                    (account_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE auth_session SET active = FALSE WHERE account_id = %s AND active",
                    (account_id,),
                )
            return cur.rowcount

    def list_active_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND active AND expires_at > %s
                ORDER BY last_login_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def evict_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            evicted = cur.rowcount
        if evicted:
            self.logger.info("sessions_evicted", count=evicted)
        return evicted


__all__ = ["PostgresStore", "SCHEMA_STATEMENTS"]
