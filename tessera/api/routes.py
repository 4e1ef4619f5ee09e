from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from tessera.api.schemas import (
    DevicePayload,
    EmailRequest,
    EmailVerifyConfirmRequest,
    Envelope,
    IdentityLinkRequest,
    IdentitySignInRequest,
    LinkedProvidersResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    ProviderLinkResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
)
from tessera.logging import get_logger
from tessera.service.auth import AuthContext, TokenPair
from tessera.service.devices import DeviceInfo
from tessera.service.errors import INVALID_TOKEN
from tessera.service.runtime import check_rate_limit, get_runtime
from tessera.service.tokens import extract_bearer
from tessera.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        HTTPException with 429 if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", INVALID_TOKEN, status_code=401)
    runtime = get_runtime()
    return runtime.auth.authenticate(token, check_session=True)


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _device_info(payload: DevicePayload) -> DeviceInfo:
    return DeviceInfo(
        identifier=payload.identifier,
        fingerprint=payload.fingerprint,
        platform=payload.platform,
        model=payload.model,
        name=payload.name,
    )


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(**pair.to_dict(), created=pair.created)


def _providers_response(account: Account) -> LinkedProvidersResponse:
    return LinkedProvidersResponse(
        account_id=account.id,
        has_password=account.has_password,
        providers=[
            ProviderLinkResponse(
                provider=link.provider,
                provider_email=link.provider_email,
                linked_at=link.linked_at,
                last_login_at=link.last_login_at,
            )
            for link in account.provider_links
        ],
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    client_ip = _client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"register:{client_ip}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account_id=result.account.id,
            user_id=result.profile.id,
            email=result.account.email,
            username=result.profile.username,
            email_verified=result.account.email_verified,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password for one device.

    Raises:
        401: If credentials are invalid or the account is unavailable
        429: If the rate limit for this email is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await runtime.auth.login(
        body.email, body.password, _device_info(body.device), **_client_meta(request)
    )
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, response: Response):
    runtime = get_runtime()
    # keyed on the signature tail of the presented token
    await _enforce_rate_limit(
        runtime,
        f"refresh:{body.refresh_token[-16:]}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    token = extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", INVALID_TOKEN, status_code=401)
    runtime = get_runtime()
    result = await runtime.auth.logout(token)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailRequest, request: Request):
    runtime = get_runtime()
    client_ip = _client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"reset:{client_ip}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirmRequest, request: Request):
    runtime = get_runtime()
    client_ip = _client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{client_ip}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/email/verify/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(body: EmailRequest, request: Request):
    runtime = get_runtime()
    client_ip = _client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"verify:{client_ip}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.request_email_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/email/verify/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(body: EmailVerifyConfirmRequest):
    runtime = get_runtime()
    result = await runtime.auth.confirm_email_verification(body.token)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/identity/{provider}", response_model=Envelope, tags=["identity"])
async def identity_sign_in(
    provider: str, body: IdentitySignInRequest, request: Request, response: Response
):
    runtime = get_runtime()
    client_ip = _client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"identity:{provider}:{client_ip}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await runtime.identity.sign_in(
        provider, body.proof_token, _device_info(body.device), **_client_meta(request)
    )
    if pair.created:
        response.status_code = 201
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.get("/identity", response_model=Envelope, tags=["identity"])
async def list_identities(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise _http_error("not_found", "account not found", status_code=404)
    return Envelope(status="ok", data=_providers_response(account))


@router.post("/identity/{provider}/link", response_model=Envelope, tags=["identity"])
async def link_identity(
    provider: str,
    body: IdentityLinkRequest,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    account = await runtime.identity.link(
        principal.account_id, provider, body.proof_token, password=body.password
    )
    return Envelope(status="ok", data=_providers_response(account))


@router.delete("/identity/{provider}", response_model=Envelope, tags=["identity"])
async def unlink_identity(provider: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.identity.unlink(principal.account_id, provider)
    return Envelope(status="ok", data=_providers_response(account))


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.account_id)
    items = [
        SessionResponse(
            id=session.id,
            device_id=session.device_id,
            current=session.id == principal.session_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            last_login_at=session.last_login_at,
            expires_at=session.expires_at,
            created_at=session.created_at,
        )
        for session in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.auth.revoke_session(principal.account_id, session_id)
    return Envelope(status="ok", data=MessageResponse(message="Session revoked"))


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = runtime.auth.revoke_all_sessions(
        principal.account_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"revoked": revoked})
