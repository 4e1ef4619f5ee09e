from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import httpx

from tessera.logging import get_logger, hash_email
from tessera.service.auth import AuthService, TokenPair
from tessera.service.devices import DeviceInfo
from tessera.service.errors import (
    EMAIL_EXISTS_PASSWORD,
    IDENTITY_VERIFICATION_FAILED,
    INVALID_CREDENTIALS,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import Account, ProviderLink

logger = get_logger(__name__)

GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class IdentityVerificationFailed(Exception):
    """Raised by verifiers when a proof token cannot be accepted."""


@dataclass
class ThirdPartyIdentity:
    subject_id: str
    email: Optional[str]
    email_verified: bool = False
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None


class IdentityVerifier(Protocol):
    async def verify(self, proof_token: str) -> ThirdPartyIdentity: ...


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


class GoogleIdentityVerifier:
    """Validates Google ID tokens through the tokeninfo endpoint."""

    def __init__(
        self,
        client_id: Optional[str],
        *,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, proof_token: str) -> ThirdPartyIdentity:
        if not self.client_id:
            raise IdentityVerificationFailed("google client id not configured")
        if not proof_token:
            raise IdentityVerificationFailed("missing id token")
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        ) as client:
            response = await client.get(
                self.tokeninfo_url, params={"id_token": proof_token}
            )
        if response.status_code != 200:
            raise IdentityVerificationFailed(
                f"tokeninfo rejected token ({response.status_code})"
            )
        claims = response.json()
        if not isinstance(claims, dict):
            raise IdentityVerificationFailed("tokeninfo returned unexpected payload")
        return self._parse_claims(claims)

    def _parse_claims(self, claims: Mapping[str, Any]) -> ThirdPartyIdentity:
        if claims.get("aud") != self.client_id:
            raise IdentityVerificationFailed("audience mismatch")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise IdentityVerificationFailed("issuer mismatch")
        try:
            exp = float(claims.get("exp", 0))
        except (TypeError, ValueError):
            raise IdentityVerificationFailed("invalid expiry") from None
        if exp <= time.time():
            raise IdentityVerificationFailed("id token expired")
        subject = claims.get("sub")
        if not subject:
            raise IdentityVerificationFailed("missing subject")
        return ThirdPartyIdentity(
            subject_id=str(subject),
            email=claims.get("email"),
            email_verified=_as_bool(claims.get("email_verified", False)),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
            picture=claims.get("picture"),
        )


class IdentityService:
    """Third-party sign-in and explicit provider linking.

    Sign-in resolves exactly one of four cases, checked in order:

    A. the provider identity is already linked: log in as that account
    B. no account owns the email: create one with the link attached
    C. a password-less account owns the email: attach the link, then log in
    D. a password account owns the email: refuse with ``email_exists_password``
    """

    def __init__(
        self, auth: AuthService, verifiers: Optional[dict[str, IdentityVerifier]] = None
    ) -> None:
        self.auth = auth
        self.store = auth.store
        self.verifiers: dict[str, IdentityVerifier] = dict(verifiers or {})

    def register_verifier(self, provider: str, verifier: IdentityVerifier) -> None:
        self.verifiers[provider] = verifier

    async def _verify(self, provider: str, proof_token: str) -> ThirdPartyIdentity:
        verifier = self.verifiers.get(provider)
        if verifier is None:
            raise ValidationError(
                f"unsupported identity provider: {provider}", detail={"field": "provider"}
            )
        try:
            identity = await verifier.verify(proof_token)
        except Exception as exc:
            logger.warning(
                "identity_verification_failed",
                provider=provider,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.auth.record_event("identity_verify", "failure", None, provider=provider)
            raise AuthenticationError(IDENTITY_VERIFICATION_FAILED) from None
        if not identity.subject_id:
            raise AuthenticationError(IDENTITY_VERIFICATION_FAILED)
        return identity

    def _generate_username(self) -> str:
        for _ in range(5):
            candidate = f"user_{secrets.token_hex(4)}"
            if self.store.is_username_available(candidate):
                return candidate
        return f"user_{secrets.token_hex(8)}"

    async def sign_in(
        self,
        provider: str,
        proof_token: str,
        device_info: DeviceInfo,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        identity = await self._verify(provider, proof_token)
        session_kwargs = {"ip_address": ip_address, "user_agent": user_agent}

        linked = self.store.get_account_by_provider(provider, identity.subject_id)
        if linked:
            return await self._sign_in_linked(linked, provider, device_info, session_kwargs)

        email = self.auth.normalize_email(identity.email)
        if not email:
            logger.warning("identity_missing_email", provider=provider)
            raise AuthenticationError(IDENTITY_VERIFICATION_FAILED)

        existing = self.store.get_account_by_email(email)
        if existing is None:
            return await self._sign_in_new(
                provider, identity, email, device_info, session_kwargs
            )
        if not existing.has_password:
            return await self._sign_in_auto_link(
                existing, provider, identity, device_info, session_kwargs
            )

        logger.info(
            "identity_sign_in_refused",
            provider=provider,
            account_id=existing.id,
            reason="email_exists_password",
        )
        self.auth.record_event(
            "identity_sign_in", "refused", existing.id, provider=provider
        )
        raise AuthenticationError(
            EMAIL_EXISTS_PASSWORD, error_code="email_exists_password"
        )

    async def _sign_in_linked(
        self,
        account: Account,
        provider: str,
        device_info: DeviceInfo,
        session_kwargs: dict[str, Any],
    ) -> TokenPair:
        self.auth.ensure_account_usable(account, event="identity_sign_in")
        self.store.touch_provider_link(account.id, provider, self.auth.now())
        pair = await self.auth.issue_session(account, device_info, **session_kwargs)
        logger.info("identity_sign_in", provider=provider, account_id=account.id, case="linked")
        self.auth.record_event("identity_sign_in", "success", account.id, provider=provider)
        return pair

    async def _sign_in_new(
        self,
        provider: str,
        identity: ThirdPartyIdentity,
        email: str,
        device_info: DeviceInfo,
        session_kwargs: dict[str, Any],
    ) -> TokenPair:
        now = self.auth.now()
        link = ProviderLink(
            provider=provider,
            provider_subject_id=identity.subject_id,
            provider_email=email,
            linked_at=now,
            last_login_at=now,
        )
        try:
            profile = self.store.create_user_profile(
                self._generate_username(),
                first_name=identity.given_name or "",
                last_name=identity.family_name or "",
                avatar_url=identity.picture,
            )
            account = self.store.create_account(
                profile.id,
                email,
                None,
                email_verified=identity.email_verified,
                provider_links=[link],
            )
        except ConstraintViolation as exc:
            # Concurrent first sign-in for the same identity
            raced = self.store.get_account_by_provider(provider, identity.subject_id)
            if raced is None:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            return await self._sign_in_linked(raced, provider, device_info, session_kwargs)

        logger.info(
            "identity_account_created",
            provider=provider,
            account_id=account.id,
            email_hash=hash_email(email),
        )
        self.auth.record_event("register", "success", account.id, provider=provider)
        pair = await self.auth.issue_session(account, device_info, **session_kwargs)
        pair.created = True
        return pair

    async def _sign_in_auto_link(
        self,
        account: Account,
        provider: str,
        identity: ThirdPartyIdentity,
        device_info: DeviceInfo,
        session_kwargs: dict[str, Any],
    ) -> TokenPair:
        self.auth.ensure_account_usable(account, event="identity_sign_in")
        now = self.auth.now()
        link = ProviderLink(
            provider=provider,
            provider_subject_id=identity.subject_id,
            provider_email=self.auth.normalize_email(identity.email),
            linked_at=now,
            last_login_at=now,
        )
        try:
            account = self.store.add_provider_link(account.id, link)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if identity.email_verified and not account.email_verified:
            account = self.store.update_account(account.id, email_verified=True) or account
        logger.info(
            "identity_sign_in",
            provider=provider,
            account_id=account.id,
            case="auto_link",
            provider_email_verified=identity.email_verified,
        )
        self.auth.record_event("identity_link", "success", account.id, provider=provider)
        return await self.auth.issue_session(account, device_info, **session_kwargs)

    async def link(
        self,
        account_id: str,
        provider: str,
        proof_token: str,
        password: Optional[str] = None,
    ) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        self.auth.ensure_account_usable(account, event="identity_link")
        if account.has_password and not await self.auth.verify_secret(
            account.password_hash, password or ""
        ):
            logger.info("identity_link_failed", account_id=account_id, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)
        identity = await self._verify(provider, proof_token)
        if account.has_provider(provider):
            raise ConflictError(
                f"{provider} is already linked to this account",
                detail={"field": "provider"},
            )
        owner = self.store.get_account_by_provider(provider, identity.subject_id)
        if owner is not None:
            raise ConflictError(
                "identity is already linked to another account",
                detail={"field": "provider"},
            )
        now = self.auth.now()
        link = ProviderLink(
            provider=provider,
            provider_subject_id=identity.subject_id,
            provider_email=self.auth.normalize_email(identity.email) or None,
            linked_at=now,
        )
        try:
            updated = self.store.add_provider_link(account_id, link)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("identity_linked", provider=provider, account_id=account_id)
        self.auth.record_event("identity_link", "success", account_id, provider=provider)
        return updated

    def unlink(self, account_id: str, provider: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if not account.has_provider(provider):
            raise NotFoundError(f"{provider} is not linked to this account")
        if account.auth_method_count() <= 1:
            raise ValidationError(
                "cannot remove the last sign-in method", detail={"field": "provider"}
            )
        try:
            removed = self.store.remove_provider_link(account_id, provider)
        except ConstraintViolation as exc:
            # a concurrent unlink removed the other method first
            logger.info(
                "identity_unlink_refused", provider=provider, account_id=account_id
            )
            raise ValidationError(
                "cannot remove the last sign-in method", detail={"field": "provider"}
            ) from exc
        if not removed:
            raise NotFoundError(f"{provider} is not linked to this account")
        logger.info("identity_unlinked", provider=provider, account_id=account_id)
        self.auth.record_event("identity_unlink", "success", account_id, provider=provider)
        return self.store.get_account(account_id) or account
