from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from bastion.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MfaSetupResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    RegisterRequest,
)
from bastion.logging import get_logger
from bastion.service.credentials import RegistrationProfile
from bastion.service.errors import AuthenticationError, AuthorizationError, ValidationError
from bastion.service.gateway import AuthRequest, Rejection
from bastion.service.runtime import Runtime
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import GeoPoint, Principal, Role

logger = get_logger(__name__)

router = APIRouter()

_REJECTION_STATUS = {"UNAUTHORIZED": 401, "FORBIDDEN": 403}


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _geolocation(request: Request) -> Optional[GeoPoint]:
    lat = request.headers.get("x-client-latitude")
    lon = request.headers.get("x-client-longitude")
    if lat is None or lon is None:
        return None
    try:
        point = GeoPoint(latitude=float(lat), longitude=float(lon))
    except ValueError:
        return None
    if not (-90 <= point.latitude <= 90 and -180 <= point.longitude <= 180):
        return None
    return point


def auth_request(request: Request) -> AuthRequest:
    return AuthRequest(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        cookies=dict(request.cookies),
        origin_address=request.client.host if request.client else None,
        geolocation=_geolocation(request),
    )


def _set_session_cookie(response: Response, runtime: Runtime, session_id: str) -> None:
    policy = runtime.settings.session
    response.set_cookie(
        policy.cookie_name,
        session_id,
        httponly=True,
        secure=policy.cookie_secure,
        samesite="strict",
        max_age=policy.absolute_timeout_seconds,
        path="/",
    )


async def get_principal(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    result = await runtime.gateway.authenticate(auth_request(request))
    if isinstance(result, Rejection):
        raise HTTPException(
            status_code=_REJECTION_STATUS.get(result.code, 401),
            detail=result.to_dict(),
        )
    if result.session_rotated and result.session_id and result.auth_method == "session":
        _set_session_cookie(response, runtime, result.session_id)
    if result.refresh_token:
        response.headers["X-Refresh-Token"] = result.refresh_token
    request.state.principal = result
    return result


def _require_user(principal: Principal) -> str:
    if not principal.authenticated or not principal.id:
        raise AuthenticationError("authentication required")
    return principal.id


@router.get("/healthz", response_model=Envelope, tags=["system"])
async def healthz(runtime: Runtime = Depends(get_runtime)):
    healthy = runtime.ready and await runtime.store.ping()
    if not healthy:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "store unreachable"},
        )
    return Envelope(status="ok", data={"status": "healthy"})


@router.post("/v1/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    if not runtime.settings.allow_registration:
        raise AuthorizationError("registration is disabled")
    profile = RegistrationProfile(
        email=body.email,
        name=body.name,
        role=Role.USER.value,
        birth_date=body.birth_date,
    )
    try:
        user = await runtime.gateway.register(profile, body.password)
    except ConstraintViolation:
        # A taken email is refused like any other invalid registration
        logger.info("registration_duplicate_email")
        raise ValidationError("registration rejected")
    return Envelope(status="ok", data=user)


@router.post("/v1/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    context = auth_request(request).context()
    result = (await runtime.gateway.login(body.email, body.password, context, body.mfa_code)).unwrap()
    _set_session_cookie(response, runtime, result.session.id)
    mfa = result.mfa
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=result.user,
            access_token=result.token.token,
            token_type=result.token.token_type,
            expires_at=result.token.expires_at.isoformat(),
            session_id=result.session.id,
            session_expires_at=result.session.expires_at.isoformat(),
            password_change_required=result.password_change_required,
            backup_codes_remaining=mfa.backup_codes_remaining if mfa else None,
            regenerated_backup_codes=mfa.regenerated_codes if mfa else [],
        ),
    )


@router.post("/v1/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _require_user(principal)
    token = auth_request(request).bearer_token()
    ended = await runtime.gateway.logout(token=token, session_id=principal.session_id)
    response.delete_cookie(runtime.settings.session.cookie_name, path="/")
    return Envelope(status="ok", data={"logged_out": ended})


@router.post("/v1/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _require_user(principal)
    (await runtime.gateway.change_password(principal, body.current_password, body.new_password)).unwrap()
    return Envelope(status="ok", data={"password_changed": True})


@router.post("/v1/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = _require_user(principal)
    user = await runtime.credentials.get_user(user_id)
    if user is None:
        raise AuthenticationError("user not found")
    enrollment = await runtime.mfa.setup(user.id, user.email)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            provisioning_uri=enrollment.provisioning_uri,
            manual_entry_key=enrollment.manual_entry_key,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/v1/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MfaVerifyRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = _require_user(principal)
    (await runtime.mfa.verify_setup(user_id, body.code)).unwrap()
    return Envelope(status="ok", data=await runtime.mfa.status(user_id))


@router.get("/v1/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = _require_user(principal)
    return Envelope(status="ok", data=await runtime.mfa.status(user_id))


@router.get("/v1/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = _require_user(principal)
    user = await runtime.credentials.get_user(user_id)
    data = principal.to_dict()
    if user is not None:
        data["profile"] = user.to_profile()
        data["password_change_required"] = runtime.credentials.password_expired(user)
    return Envelope(status="ok", data=data)


@router.get("/v1/admin/security/metrics", response_model=Envelope, tags=["admin"])
async def security_metrics(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    # Route access was already decided by the gateway; keep the explicit check
    if not runtime.authorization.has_permission(principal, "view:security"):
        raise AuthorizationError("Insufficient permissions")
    return Envelope(status="ok", data=await runtime.gateway.metrics())
