from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response

from sessionguard.api.error_handling import result_response
from sessionguard.api.schemas import (
    ChallengeResponse,
    Envelope,
    ExternalCallbackRequest,
    ExternalStartRequest,
    ExternalStartResponse,
    LoginRequest,
    LogoutRequest,
    NewAccountResponse,
    PasswordChangeRequest,
    PasswordSetRequest,
    PrincipalResponse,
    ProviderResponse,
    RecoveryCodeRequest,
    RecoveryCodesResponse,
    TokenRefreshRequest,
    TwoFactorEnableRequest,
    TwoFactorPasswordRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
)
from sessionguard.service.runtime import get_runtime
from sessionguard.service.session import AuthContext, ExternalLoginOutcome, LoginOutcome

router = APIRouter(prefix="/auth")


def _http_error(code: str, message: str, status_code: int) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": "error", "error": {"code": code, "message": message}},
    )


async def get_principal(request: Request) -> AuthContext:
    runtime = get_runtime()
    token = runtime.transport.read_access_token(request)
    result = await runtime.sessions.authenticate(token)
    if not result.ok:
        raise _http_error(result.error.value, result.message, status_code=401)
    return result.unwrap()


async def get_optional_principal(request: Request) -> Optional[AuthContext]:
    runtime = get_runtime()
    token = runtime.transport.read_access_token(request)
    if not token:
        return None
    result = await runtime.sessions.authenticate(token)
    return result.value if result.ok else None


def _render_login(outcome: LoginOutcome, response: Response) -> Envelope:
    runtime = get_runtime()
    if outcome.challenge is not None:
        return Envelope(
            status="ok",
            data=ChallengeResponse(
                challenge_token=outcome.challenge.token,
                expires_at=outcome.challenge.expires_at,
            ),
        )
    data = runtime.transport.write_tokens(
        response, outcome.tokens, outcome.use_cookies, now=runtime.clock.now()
    )
    return Envelope(status="ok", data=data)


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Password sign-in.

    Returns a two-factor challenge instead of tokens when the account has a
    second factor enabled.
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        use_cookies=body.use_cookies,
    )
    if not result.ok:
        return result_response(result)
    return _render_login(result.unwrap(), response)


@router.post("/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.sessions.complete_two_factor(
        body.challenge_token, body.code, use_cookies=body.use_cookies
    )
    if not result.ok:
        return result_response(result)
    return _render_login(result.unwrap(), response)


@router.post("/2fa/recovery", response_model=Envelope, tags=["auth"])
async def verify_recovery_code(body: RecoveryCodeRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.sessions.complete_two_factor_with_recovery_code(
        body.challenge_token, body.recovery_code, use_cookies=body.use_cookies
    )
    if not result.ok:
        return result_response(result)
    return _render_login(result.unwrap(), response)


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate the presented refresh token.

    A value posted in the body is answered in bearer mode; a value read from
    the cookie is answered with fresh cookies, and the cookies are cleared
    when the refresh fails.
    """
    runtime = get_runtime()
    value, from_cookie = runtime.transport.read_refresh_value(
        request, body.refresh_token if body else None
    )
    result = await runtime.sessions.refresh(value)
    if not result.ok:
        failure = result_response(result)
        if from_cookie:
            runtime.transport.clear(failure)
        return failure
    data = runtime.transport.write_tokens(
        response, result.unwrap(), from_cookie, now=runtime.clock.now()
    )
    return Envelope(status="ok", data=data)


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    runtime = get_runtime()
    refresh_value, _ = runtime.transport.read_refresh_value(
        request, body.refresh_token if body else None
    )
    await runtime.sessions.logout(
        access_token=runtime.transport.read_access_token(request),
        refresh_value=refresh_value,
    )
    runtime.transport.clear(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Change the password; every session of the user ends, this one included."""
    runtime = get_runtime()
    result = await runtime.sessions.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    if not result.ok:
        return result_response(result)
    runtime.transport.clear(response)
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/password/set", response_model=Envelope, tags=["auth"])
async def set_password(
    body: PasswordSetRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Add a password to an account that signs in only through a provider."""
    runtime = get_runtime()
    result = await runtime.sessions.set_password(principal.user_id, body.new_password)
    if not result.ok:
        return result_response(result)
    runtime.transport.clear(response)
    return Envelope(status="ok", data={"status": "set"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    profile = await runtime.sessions.get_principal_profile(principal.user_id)
    if not profile:
        raise _http_error("unauthorized", "Authentication is required.", status_code=401)
    return Envelope(status="ok", data=PrincipalResponse(**profile))


@router.post("/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def setup_two_factor(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    result = runtime.sessions.two_factor.setup(principal.user_id)
    if not result.ok:
        return result_response(result)
    setup = result.unwrap()
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(
    body: TwoFactorEnableRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.sessions.enable_two_factor(principal.user_id, body.code)
    if not result.ok:
        return result_response(result)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=result.unwrap()))


@router.post("/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorPasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.sessions.disable_two_factor(principal.user_id, body.password)
    if not result.ok:
        return result_response(result)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/2fa/recovery-codes", response_model=Envelope, tags=["two-factor"])
async def regenerate_recovery_codes(
    body: TwoFactorPasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = runtime.sessions.two_factor.regenerate_recovery_codes(
        principal.user_id, body.password
    )
    if not result.ok:
        return result_response(result)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=result.unwrap()))


@router.get("/external/providers", response_model=Envelope, tags=["external"])
async def list_external_providers():
    runtime = get_runtime()
    providers = [
        ProviderResponse(name=p.name, display_name=p.display_name)
        for p in runtime.sessions.list_providers()
    ]
    return Envelope(status="ok", data={"items": providers})


@router.post("/external/{provider}/start", response_model=Envelope, tags=["external"])
async def start_external_login(
    body: ExternalStartRequest,
    provider: str = Path(..., max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_principal),
):
    """Begin an external sign-in; when the caller is signed in the result links instead."""
    runtime = get_runtime()
    result = runtime.sessions.start_external_login(
        provider,
        body.redirect_uri,
        user_id=principal.user_id if principal else None,
    )
    if not result.ok:
        return result_response(result)
    request_info = result.unwrap()
    return Envelope(
        status="ok",
        data=ExternalStartResponse(
            provider=request_info.provider,
            authorization_url=request_info.authorization_url,
            state=request_info.state,
        ),
    )


def _render_external(outcome: ExternalLoginOutcome, response: Response) -> Envelope:
    runtime = get_runtime()
    if outcome.new_account is not None:
        info = outcome.new_account
        return Envelope(
            status="ok",
            data=NewAccountResponse(
                provider=outcome.provider,
                email=info.email,
                email_verified=info.email_verified,
                first_name=info.first_name,
                last_name=info.last_name,
            ),
        )
    if outcome.linked_only:
        return Envelope(status="ok", data={"provider": outcome.provider, "linked": True})
    if outcome.challenge is not None:
        return Envelope(
            status="ok",
            data=ChallengeResponse(
                challenge_token=outcome.challenge.token,
                expires_at=outcome.challenge.expires_at,
            ),
        )
    data = runtime.transport.write_tokens(
        response, outcome.tokens, outcome.use_cookies, now=runtime.clock.now()
    )
    return Envelope(status="ok", data=data)


@router.post("/external/callback", response_model=Envelope, tags=["external"])
async def external_callback(body: ExternalCallbackRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.sessions.handle_external_callback(
        body.state, body.code, use_cookies=body.use_cookies
    )
    if not result.ok:
        return result_response(result)
    return _render_external(result.unwrap(), response)


@router.delete("/external/{provider}", response_model=Envelope, tags=["external"])
async def unlink_external_provider(
    provider: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    result = await runtime.sessions.unlink_external_provider(principal.user_id, provider)
    if not result.ok:
        return result_response(result)
    return Envelope(status="ok", data={"provider": provider, "linked": False})
