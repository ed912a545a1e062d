from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from mentorauth.api.schemas import (
    AuthResponse,
    DeviceActionRequest,
    DeviceLimitResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    OtpDispatchResponse,
    SendMobileOtpRequest,
    SignupRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenValidationResponse,
    UserResponse,
    VerifyEmailOtpRequest,
    VerifyLoginOtpRequest,
    VerifyMobileOtpRequest,
)
from mentorauth.logging import get_logger, mask_ip
from mentorauth.service.auth import AuthContext, SignupProfile
from mentorauth.service.devices import DeviceLimitResult, RequestMeta, truncate_user_agent
from mentorauth.service.runtime import check_rate_limit, get_runtime
from mentorauth.storage.models import Device

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


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
    """Consume one request from ``key``'s bucket; raises a 429 when it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        retry_after = max(1, reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return info


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta.from_headers(
        request.headers, request.client.host if request.client else None
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "Bearer token required", status_code=401)
    return get_runtime().auth.authenticate(token.strip())


def _device_response(device: Device, current_fingerprint: Optional[str] = None) -> DeviceResponse:
    return DeviceResponse(
        device_id=device.id,
        device_name=device.name,
        ip_address=mask_ip(device.ip_address),
        user_agent=truncate_user_agent(device.user_agent),
        first_seen_at=device.created_at,
        last_active_at=device.last_active_at,
        is_streaming=device.is_streaming,
        is_current_device=device.fingerprint == current_fingerprint,
    )


def _limit_response(result: DeviceLimitResult) -> DeviceLimitResponse:
    return DeviceLimitResponse(
        within_limit=result.within_limit,
        active_devices=result.active_devices,
        max_allowed=result.max_allowed,
        message=result.message,
        candidates=[_device_response(d) for d in result.candidates],
    )


def _auth_response(result: dict) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result["user"]),
        tokens=TokenPairResponse(**result["tokens"]),
    )


# Signup


@router.post("/auth/signup/send-email-otp", response_model=Envelope, tags=["signup"])
async def send_email_otp(body: SignupRequest, response: Response):
    """Step 1: check the email is free and send it a verification code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:email:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    sent = await runtime.auth.send_email_otp(body.email)
    return Envelope(
        success=True,
        message="OTP sent to your email",
        data=OtpDispatchResponse(**sent),
    )


@router.post("/auth/signup/verify-email-otp", response_model=Envelope, tags=["signup"])
async def verify_email_otp(body: VerifyEmailOtpRequest):
    runtime = get_runtime()
    data = await runtime.auth.verify_email_otp(body.email, body.otp)
    return Envelope(success=True, message="Email verified successfully", data=data)


@router.post("/auth/signup/send-mobile-otp", response_model=Envelope, tags=["signup"])
async def send_mobile_otp(body: SendMobileOtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:mobile:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    sent = await runtime.auth.send_mobile_otp(body.email, body.phone_number)
    return Envelope(
        success=True,
        message="OTP sent to your mobile number",
        data=OtpDispatchResponse(**sent),
    )


@router.post(
    "/auth/signup/verify-mobile-otp",
    response_model=Envelope,
    status_code=201,
    tags=["signup"],
)
async def verify_mobile_otp(
    body: VerifyMobileOtpRequest, meta: RequestMeta = Depends(get_request_meta)
):
    """Step 4: verify the mobile code, create the account and sign the user in."""
    runtime = get_runtime()
    profile = SignupProfile(
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
        phone_number=body.phone_number,
        gender=body.gender.value if body.gender else None,
        city=body.city,
        state=body.state,
        country=body.country,
        postal_code=body.postal_code,
    )
    result = await runtime.auth.complete_signup(profile, body.otp, meta)
    return Envelope(
        success=True, message="Registration successful", data=_auth_response(result)
    )


# Login


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Check the password, then send login codes to email and phone."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    sent = await runtime.auth.login(body.email, body.password)
    return Envelope(
        success=True,
        message="OTP sent to your email and mobile number",
        data=OtpDispatchResponse(**sent),
    )


@router.post("/auth/login/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_login_otp(
    body: VerifyLoginOtpRequest,
    response: Response,
    meta: RequestMeta = Depends(get_request_meta),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login-otp:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.verify_login_otp(body.email, body.otp, meta)
    return Envelope(success=True, message="Login successful", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_principal),
    meta: RequestMeta = Depends(get_request_meta),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(principal, meta)
    return Envelope(
        success=True, message="Logged out successfully", data={"revoked_tokens": revoked}
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.auth.current_user(principal)
    return Envelope(success=True, message="User profile", data=UserResponse.from_user(user))


# Tokens


@router.post("/auth/token/refresh", response_model=Envelope, tags=["tokens"])
async def refresh_token(
    body: TokenRefreshRequest, meta: RequestMeta = Depends(get_request_meta)
):
    """New access token for the calling device; the refresh token is unchanged."""
    runtime = get_runtime()
    tokens = runtime.tokens.refresh(body.refresh_token, meta)
    return Envelope(
        success=True, message="Token refreshed", data=TokenPairResponse(**tokens)
    )


@router.post("/auth/token/rotate", response_model=Envelope, tags=["tokens"])
async def rotate_token(
    body: TokenRefreshRequest, meta: RequestMeta = Depends(get_request_meta)
):
    runtime = get_runtime()
    tokens = runtime.tokens.rotate(body.refresh_token, meta)
    return Envelope(
        success=True, message="Token rotated", data=TokenPairResponse(**tokens)
    )


@router.post("/auth/token/revoke-all", response_model=Envelope, tags=["tokens"])
async def revoke_all_tokens(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal)
    return Envelope(
        success=True,
        message="All sessions have been signed out",
        data={"revoked_tokens": revoked},
    )


@router.get("/auth/token/validate", response_model=Envelope, tags=["tokens"])
async def validate_token(authorization: Optional[str] = Header(None)):
    principal = await get_principal(authorization)
    runtime = get_runtime()
    _, _, token = (authorization or "").partition(" ")
    claims = runtime.tokens.validate(token.strip())
    expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
    expires_in = max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
    return Envelope(
        success=True,
        message="Token is valid",
        data=TokenValidationResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            device_id=principal.device_id,
            expires_at=expires_at,
            expires_in=expires_in,
        ),
    )


# Devices


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(
    principal: AuthContext = Depends(get_principal),
    meta: RequestMeta = Depends(get_request_meta),
):
    runtime = get_runtime()
    devices = runtime.devices.list_devices(principal.user_id, meta)
    return Envelope(
        success=True,
        message=f"{len(devices)} active device(s)",
        data=[DeviceResponse(**d) for d in devices],
    )


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.devices.revoke_device(principal.user_id, device_id)
    return Envelope(
        success=True, message="Device revoked", data={"device_id": device_id}
    )


@router.post("/devices/check-limit", response_model=Envelope, tags=["devices"])
async def check_device_limit(
    principal: AuthContext = Depends(get_principal),
    meta: RequestMeta = Depends(get_request_meta),
):
    """List eviction candidates when the user is over the device limit."""
    runtime = get_runtime()
    current = runtime.devices.current_device(principal.user_id, meta)
    result = runtime.devices.handle_device_limit(
        principal.user_id, current.id if current else principal.device_id
    )
    return Envelope(success=True, message=result.message, data=_limit_response(result))


@router.post("/devices/disconnect", response_model=Envelope, tags=["devices"])
async def disconnect_device(
    body: DeviceActionRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = runtime.devices.disconnect_device(principal.user_id, body.device_id)
    return Envelope(success=True, message=result.message, data=_limit_response(result))


@router.post("/devices/streaming/start", response_model=Envelope, tags=["devices"])
async def start_streaming(
    body: DeviceActionRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    device = runtime.devices.start_streaming(principal.user_id, body.device_id)
    return Envelope(
        success=True,
        message="Streaming started",
        data=_device_response(device, principal.device_fingerprint),
    )


@router.post("/devices/streaming/stop", response_model=Envelope, tags=["devices"])
async def stop_streaming(
    body: DeviceActionRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    changed = runtime.devices.stop_streaming(principal.user_id, body.device_id)
    return Envelope(
        success=True,
        message="Streaming stopped" if changed else "Streaming was not active",
        data={"device_id": body.device_id, "stopped": changed},
    )
