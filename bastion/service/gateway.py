from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from bastion.config import SessionPolicy
from bastion.logging import get_logger
from bastion.service.anomaly import AnomalyDetector
from bastion.service.authorization import AuthorizationEngine
from bastion.service.credentials import CredentialStore, RegistrationProfile
from bastion.service.errors import FailureKind, Outcome
from bastion.service.lockout import LockoutGuard, account_identifier, address_identifier
from bastion.service.mfa import MfaProvider, MfaVerification
from bastion.service.sessions import SessionManager
from bastion.service.tokens import IssuedToken, TokenIssuer
from bastion.storage.models import GeoPoint, Principal, RequestContext, Session, User, utcnow

logger = get_logger(__name__)


@dataclass
class AuthRequest:
    """Transport-neutral view of an inbound request."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    origin_address: Optional[str] = None
    geolocation: Optional[GeoPoint] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def context(self) -> RequestContext:
        return RequestContext(
            origin_address=self.origin_address,
            user_agent=self.header("user-agent"),
            accept_language=self.header("accept-language"),
            accept_encoding=self.header("accept-encoding"),
            platform=self.header("sec-ch-ua-platform"),
            timezone=self.header("x-client-timezone"),
            screen=self.header("x-client-screen"),
            geolocation=self.geolocation,
        )

    def bearer_token(self) -> Optional[str]:
        authorization = self.header("authorization") or ""
        scheme, _, credential = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credential.strip():
            return None
        return credential.strip()


@dataclass
class Rejection:
    code: str
    message: str
    timestamp: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message, "timestamp": self.timestamp}


@dataclass
class LoginResult:
    user: dict
    session: Session
    token: IssuedToken
    password_change_required: bool = False
    mfa: Optional[MfaVerification] = None


class AuthGateway:
    """Front door for every request: credentials in, principal or rejection out."""

    def __init__(
        self,
        credentials: CredentialStore,
        lockout: LockoutGuard,
        mfa: MfaProvider,
        tokens: TokenIssuer,
        sessions: SessionManager,
        detector: AnomalyDetector,
        authorization: AuthorizationEngine,
        session_policy: SessionPolicy,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.lockout = lockout
        self.mfa = mfa
        self.tokens = tokens
        self.sessions = sessions
        self.detector = detector
        self.authorization = authorization
        self.session_policy = session_policy
        self._clock = clock or utcnow

    def _reject(self, code: str, message: str) -> Rejection:
        return Rejection(code=code, message=message, timestamp=self._clock().isoformat())

    def _is_public(self, path: str, method: str) -> bool:
        decision = self.authorization.decide(self.authorization.guest(), path, method)
        return decision.allowed

    async def _from_session(self, session_id: str, context: RequestContext) -> Outcome[Principal]:
        outcome = await self.sessions.validate(session_id, context)
        if not outcome.ok:
            return Outcome.fail(outcome.failure, outcome.reason or "invalid session")
        result = outcome.value
        session = result.session
        user = await self.credentials.get_user(session.user_id)
        if user is None or not user.is_active:
            return Outcome.fail(FailureKind.AUTHENTICATION, "user inactive")
        return Outcome.success(
            Principal(
                id=user.id,
                role=user.role,
                permissions=self.authorization.permissions_for(user.role),
                authenticated=True,
                session_id=session.id,
                auth_method="session",
                requires_reauth=session.requires_reauth,
                anomaly_score=session.anomaly_score,
                anomaly_reasons=list(session.anomaly_reasons),
                session_rotated=result.rotated,
                refresh_token=result.refresh_token,
            )
        )

    async def authenticate(self, request: AuthRequest) -> Union[Principal, Rejection]:
        """Resolve the caller and apply route authorization.

        A bearer header wins over the session cookie. On routes a guest may
        reach, a bad credential falls back to the guest principal instead of
        rejecting.
        """
        context = request.context()
        token = request.bearer_token()
        session_id = request.cookies.get(self.session_policy.cookie_name)

        principal: Optional[Principal] = None
        failure: Optional[Outcome[Principal]] = None
        if token:
            outcome = await self.tokens.verify(token)
            if outcome.ok:
                principal = outcome.value
                # A bearer token bound to a session also carries that session's state;
                # the token names the session by its handle, which survives rotation
                if principal.session_id:
                    current = await self.sessions.resolve_handle(principal.session_id)
                    bound = (
                        await self._from_session(current, context)
                        if current
                        else Outcome.fail(FailureKind.AUTHENTICATION, "session not found")
                    )
                    if bound.ok:
                        principal = bound.value
                        principal.auth_method = "bearer"
                    else:
                        principal, failure = None, bound
            else:
                failure = outcome
        elif session_id:
            outcome = await self._from_session(session_id, context)
            if outcome.ok:
                principal = outcome.value
            else:
                failure = outcome

        if principal is None:
            if failure is not None:
                logger.info(
                    "authentication_rejected",
                    path=request.path,
                    kind=failure.failure.value if failure.failure else None,
                    reason=failure.reason,
                    origin_address=request.origin_address,
                )
            if self._is_public(request.path, request.method):
                return self.authorization.guest()
            return self._reject("UNAUTHORIZED", "Authentication required")

        if not self.authorization.check_access(principal, request.path, request.method):
            return self._reject("FORBIDDEN", "Insufficient permissions")
        return principal

    async def login(
        self,
        email: str,
        password: str,
        context: RequestContext,
        mfa_code: Optional[str] = None,
    ) -> Outcome[LoginResult]:
        account = account_identifier(email)
        address = address_identifier(context.origin_address) if context.origin_address else None

        if await self.lockout.is_locked(account) or (address and await self.lockout.is_locked(address)):
            logger.warning("login_blocked_locked", identifier=account, origin_address=context.origin_address)
            return Outcome.fail(FailureKind.LOCKOUT, "Too many failed attempts; try again later")

        verified = await self.credentials.verify(email, password)
        if not verified.ok:
            if verified.failure == FailureKind.LOCKOUT:
                return Outcome.fail(FailureKind.LOCKOUT, "Too many failed attempts; try again later")
            result = await self.lockout.record_failure(account, context)
            if address:
                await self.lockout.record_failure(address, context)
            user_id = verified.detail.get("user_id")
            if user_id:
                await self.credentials.record_login(
                    user_id,
                    success=False,
                    failed_attempts=result.failures,
                    locked_until=result.lock_until if result.locked else None,
                )
            logger.info("login_failed", identifier=account, reason=verified.reason)
            if result.newly_locked:
                return Outcome.fail(FailureKind.LOCKOUT, "Too many failed attempts; try again later")
            return Outcome.fail(FailureKind.AUTHENTICATION, "Invalid email or password")

        user: User = verified.value
        mfa_result: Optional[MfaVerification] = None
        if await self.mfa.is_enabled(user.id):
            if not mfa_code:
                return Outcome.fail(FailureKind.MFA_REQUIRED, "MFA code required", mfa_required=True)
            checked = await self.mfa.verify(user.id, mfa_code)
            if not checked.ok:
                if checked.failure == FailureKind.LOCKOUT:
                    return Outcome.fail(FailureKind.LOCKOUT, "Too many failed MFA attempts")
                return Outcome.fail(FailureKind.MFA, "Invalid MFA code")
            mfa_result = checked.value

        await self.lockout.record_success(account)
        await self.credentials.record_login(user.id, success=True)
        session = await self.sessions.create(user, context)
        await self.detector.record_device(user.id, session.fingerprint)
        token = await self.tokens.issue(user, session_id=session.handle)
        logger.info("login_succeeded", user_id=user.id, session_id=session.id, mfa=mfa_result is not None)
        return Outcome.success(
            LoginResult(
                user=user.to_profile(),
                session=session,
                token=token,
                password_change_required=self.credentials.password_expired(user),
                mfa=mfa_result,
            )
        )

    async def logout(self, token: Optional[str] = None, session_id: Optional[str] = None) -> bool:
        ended = False
        if token:
            ended = await self.tokens.revoke(token) or ended
        if session_id:
            ended = await self.sessions.invalidate(session_id) or ended
        logger.info("logout", ended=ended)
        return ended

    async def register(self, profile: RegistrationProfile, password: str) -> dict:
        return await self.credentials.register(profile, password)

    async def change_password(self, principal: Principal, current: str, new: str) -> Outcome[None]:
        user = await self.credentials.get_user(principal.id or "")
        if user is None:
            return Outcome.fail(FailureKind.AUTHENTICATION, "user not found")
        if not await self.credentials.check_password(user.password_hash, current):
            return Outcome.fail(FailureKind.AUTHENTICATION, "Current password is incorrect")
        await self.credentials.update_password(user.id, new)
        # Other sessions and tokens were established with the old password
        for session in await self.sessions.sessions_for(user.id):
            if session.id != principal.session_id:
                await self.sessions.invalidate(session.id, reason="password changed")
        return Outcome.success(None)

    async def metrics(self) -> Dict[str, Any]:
        live = await self.sessions.live_sessions()
        return {
            "active_sessions": len(live),
            "locked_identifiers": await self.lockout.locked_counts(),
            "mfa_enabled_users": await self.mfa.count_enabled(),
            "active_tokens": await self.tokens.active_count(),
            "registered_users": await self.credentials.count_users(),
            "average_anomaly_score": self.detector.average_score(live),
            "sessions_requiring_reauth": sum(1 for s in live if s.requires_reauth),
        }
