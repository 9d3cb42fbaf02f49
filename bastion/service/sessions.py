from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from bastion.config import SessionPolicy
from bastion.logging import get_logger
from bastion.service.anomaly import AnomalyDetector
from bastion.service.credentials import CredentialStore
from bastion.service.errors import FailureKind, Outcome
from bastion.storage.common import KeyedLocks, KeyedStore
from bastion.storage.models import RefreshToken, RequestContext, Session, SessionState, User, utcnow

logger = get_logger(__name__)

_SESSION_PREFIX = "session:"
_ALIAS_PREFIX = "session_alias:"
_HANDLE_PREFIX = "session_handle:"


def _hash_refresh(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class SessionValidation:
    session: Session
    rotated: bool = False
    refresh_token: Optional[str] = None
    fingerprint_mismatch: bool = False


class SessionManager:
    """Server-side sessions with idle and absolute expiry.

    Admission for one user is serialized so the concurrent-session cap holds
    when several logins race; validation of one session is serialized so a
    rotation is never applied twice.
    """

    def __init__(
        self,
        store: KeyedStore,
        policy: SessionPolicy,
        credentials: CredentialStore,
        *,
        detector: Optional[AnomalyDetector] = None,
        request_window_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.credentials = credentials
        self.detector = detector
        self.request_window_seconds = request_window_seconds
        self._clock = clock or utcnow
        self._user_locks = KeyedLocks()
        self._session_locks = KeyedLocks()

    def _new_id(self) -> str:
        return secrets.token_hex(32)

    def _expired_reason(self, session: Session, now: datetime) -> Optional[str]:
        if now >= session.expires_at:
            return "absolute timeout"
        if now >= session.idle_expires_at:
            return "idle timeout"
        return None

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.store.get(_SESSION_PREFIX + session_id)
        return Session.from_record(raw) if raw else None

    async def sessions_for(self, user_id: str) -> List[Session]:
        """Live sessions of a user, ignoring ones that have timed out."""
        user = await self.credentials.get_user(user_id)
        if user is None:
            return []
        now = self._clock()
        live = []
        for sid in user.session_ids:
            session = await self.get(sid)
            if session and session.active and self._expired_reason(session, now) is None:
                live.append(session)
        return live

    async def create(self, user: User, context: RequestContext) -> Session:
        async with self._user_locks.hold(user.id):
            now = self._clock()
            current = await self.credentials.get_user(user.id) or user
            live = await self.sessions_for(user.id)
            live_ids = {s.id for s in live}
            stale = [sid for sid in current.session_ids if sid not in live_ids]

            evicted: List[str] = []
            excess = len(live) - (self.policy.max_concurrent - 1)
            if excess > 0:
                live.sort(key=lambda s: s.last_activity_at)
                for victim in live[:excess]:
                    await self._end(victim.id, SessionState.INVALIDATED, "evicted")
                    evicted.append(victim.id)

            session = Session(
                id=self._new_id(),
                user_id=user.id,
                role=user.role,
                created_at=now,
                last_activity_at=now,
                expires_at=now + timedelta(seconds=self.policy.absolute_timeout_seconds),
                idle_expires_at=now + timedelta(seconds=self.policy.idle_timeout_seconds),
                fingerprint=AnomalyDetector.fingerprint(context),
                handle=secrets.token_hex(16),
                origin_address=context.origin_address,
                user_agent=context.user_agent,
                geolocation=context.geolocation,
                state=SessionState.ACTIVE,
            )
            await self.store.create(_SESSION_PREFIX + session.id, session.to_record())
            await self.store.put(_HANDLE_PREFIX + session.handle, {"session_id": session.id})
            await self.credentials.update_session_ids(
                user.id, add=[session.id], remove=evicted + stale
            )

        if evicted:
            logger.info("sessions_evicted", user_id=user.id, count=len(evicted))
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return session

    async def _resolve(self, session_id: str) -> Optional[str]:
        """Map a presented id to the live key, following a recent rotation."""
        if await self.store.get(_SESSION_PREFIX + session_id):
            return session_id
        alias = await self.store.get(_ALIAS_PREFIX + session_id)
        if not alias:
            return None
        if self._clock().timestamp() >= float(alias.get("grace_until", 0)):
            return None
        return alias.get("rotated_to")

    async def resolve_handle(self, handle: str) -> Optional[str]:
        """Current id of the session behind a stable handle, however often it rotated."""
        if not handle:
            return None
        pointer = await self.store.get(_HANDLE_PREFIX + handle)
        return pointer.get("session_id") if pointer else None

    async def validate(self, session_id: str, context: RequestContext) -> Outcome[SessionValidation]:
        # A second attempt follows a rotation made while this request waited on the lock
        for _ in range(2):
            resolved = await self._resolve(session_id)
            if resolved is None:
                break
            async with self._session_locks.hold(resolved):
                raw = await self.store.get(_SESSION_PREFIX + resolved)
                if raw:
                    return await self._validate_held(Session.from_record(raw), session_id, context)
        return Outcome.fail(FailureKind.AUTHENTICATION, "session not found")

    async def _validate_held(
        self, session: Session, presented_id: str, context: RequestContext
    ) -> Outcome[SessionValidation]:
        if not session.active:
            return Outcome.fail(FailureKind.AUTHENTICATION, "session inactive")

        now = self._clock()
        reason = self._expired_reason(session, now)
        if reason:
            await self._end(session.id, SessionState.EXPIRED, reason)
            await self.credentials.update_session_ids(session.user_id, remove=[session.id])
            return Outcome.fail(FailureKind.AUTHENTICATION, "session expired", reason=reason)

        mismatch = AnomalyDetector.fingerprint(context) != session.fingerprint
        if mismatch and not session.requires_reauth:
            session.requires_reauth = True
            logger.warning(
                "session_fingerprint_mismatch",
                session_id=session.id,
                user_id=session.user_id,
            )

        cutoff = now.timestamp() - self.request_window_seconds
        session.recent_requests = [ts for ts in session.recent_requests if ts >= cutoff]
        session.recent_requests.append(now.timestamp())
        if self.detector is not None:
            score, reasons = await self.detector.evaluate(session, context)
            session.anomaly_score = score
            session.anomaly_reasons = reasons
            if self.detector.is_anomalous(score):
                session.requires_reauth = True
        session.last_activity_at = now
        session.idle_expires_at = now + timedelta(seconds=self.policy.idle_timeout_seconds)

        refresh_token = None
        if session.last_refresh_at is None or (now - session.last_refresh_at).total_seconds() >= self.policy.refresh_threshold_seconds:
            refresh_token = secrets.token_urlsafe(32)
            session.refresh_tokens.append(
                RefreshToken(
                    token_hash=_hash_refresh(refresh_token),
                    issued_at=now,
                    expires_at=session.expires_at,
                )
            )
            session.refresh_tokens = session.refresh_tokens[-self.policy.refresh_tokens_kept:]
            session.last_refresh_at = now

        reference = session.last_rotated_at or session.created_at
        if (now - reference).total_seconds() >= self.policy.rotation_interval_seconds:
            await self._rotate(session, now)
            logger.info(
                "session_rotated",
                user_id=session.user_id,
                session_id=session.id,
                rotation_count=session.rotation_count,
            )
        else:
            await self.store.put(_SESSION_PREFIX + session.id, session.to_record())

        return Outcome.success(
            SessionValidation(
                session=session,
                rotated=session.id != presented_id,
                refresh_token=refresh_token,
                fingerprint_mismatch=mismatch,
            )
        )

    async def _rotate(self, session: Session, now: datetime) -> None:
        old_id = session.id
        session.id = self._new_id()
        session.rotation_count += 1
        session.last_rotated_at = now
        await self.store.create(_SESSION_PREFIX + session.id, session.to_record())
        grace_until = now + timedelta(seconds=self.policy.rotation_grace_seconds)
        await self.store.put(
            _ALIAS_PREFIX + old_id,
            {"rotated_to": session.id, "grace_until": grace_until.timestamp()},
        )
        if session.handle:
            await self.store.put(_HANDLE_PREFIX + session.handle, {"session_id": session.id})
        await self.store.delete(_SESSION_PREFIX + old_id)
        await self.credentials.update_session_ids(session.user_id, add=[session.id], remove=[old_id])

    async def _end(self, session_id: str, state: SessionState, reason: str) -> bool:
        changed = {"ok": False}

        def end(current: Optional[dict]) -> Optional[dict]:
            changed["ok"] = False
            if current is None:
                return None
            session = Session.from_record(current)
            if not session.active:
                return current
            session.state = state
            session.ended_reason = reason
            changed["ok"] = True
            return session.to_record()

        await self.store.update(_SESSION_PREFIX + session_id, end)
        if changed["ok"]:
            logger.info("session_ended", session_id=session_id, state=state.value, reason=reason)
        return changed["ok"]

    async def invalidate(self, session_id: str, reason: str = "logout") -> bool:
        """End a session; a second call for the same id is a no-op."""
        resolved = await self._resolve(session_id)
        if resolved is None:
            return False
        session = await self.get(resolved)
        ended = await self._end(resolved, SessionState.INVALIDATED, reason)
        if ended and session is not None:
            await self.credentials.update_session_ids(session.user_id, remove=[resolved])
        return ended

    async def invalidate_user(self, user_id: str, reason: str = "revoked") -> int:
        user = await self.credentials.get_user(user_id)
        if user is None:
            return 0
        ended = 0
        for sid in list(user.session_ids):
            if await self._end(sid, SessionState.INVALIDATED, reason):
                ended += 1
        await self.credentials.update_session_ids(user_id, remove=user.session_ids)
        if ended:
            logger.info("user_sessions_invalidated", user_id=user_id, count=ended, reason=reason)
        return ended

    async def check_refresh_token(self, session_id: str, token: str) -> bool:
        session = await self.get(session_id)
        if session is None or not session.active:
            return False
        now = self._clock()
        candidate = _hash_refresh(token)
        return any(
            hmac.compare_digest(rt.token_hash, candidate) and now < rt.expires_at
            for rt in session.refresh_tokens
        )

    async def cleanup_expired(self) -> int:
        """Delete ended or timed-out sessions with their handles, and lapsed rotation aliases."""
        now = self._clock()
        removed = 0
        for key, raw in await self.store.list_prefix(_SESSION_PREFIX):
            session = Session.from_record(raw)
            if session.active and self._expired_reason(session, now) is None:
                continue
            if await self.store.delete(key):
                removed += 1
                await self.credentials.update_session_ids(session.user_id, remove=[session.id])
                if session.handle:
                    await self.store.delete(_HANDLE_PREFIX + session.handle)
        for key, alias in await self.store.list_prefix(_ALIAS_PREFIX):
            if now.timestamp() >= float(alias.get("grace_until", 0)):
                await self.store.delete(key)
        if removed:
            logger.debug("expired_sessions_removed", removed=removed)
        return removed

    async def live_sessions(self) -> List[Session]:
        now = self._clock()
        sessions = [Session.from_record(raw) for _, raw in await self.store.list_prefix(_SESSION_PREFIX)]
        return [s for s in sessions if s.active and self._expired_reason(s, now) is None]

    async def active_count(self) -> int:
        return len(await self.live_sessions())
