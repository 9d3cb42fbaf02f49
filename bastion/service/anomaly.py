from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from bastion.config import AnomalyPolicy
from bastion.logging import get_logger
from bastion.storage.common import KeyedStore
from bastion.storage.models import DeviceRecord, GeoPoint, RequestContext, Session, utcnow

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0
_DEVICE_PREFIX = "devices:"


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class AnomalyDetector:
    """Scores how far a request drifts from the session that carries it.

    The score is advisory: callers flag the session for re-authentication
    but never reject a request on it.
    """

    def __init__(
        self,
        store: KeyedStore,
        policy: AnomalyPolicy,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock or utcnow

    @staticmethod
    def fingerprint(context: RequestContext) -> str:
        components = {
            "user_agent": context.user_agent or "",
            "accept_language": context.accept_language or "",
            "accept_encoding": context.accept_encoding or "",
            "platform": context.platform or "",
            "timezone": context.timezone or "",
            "screen": context.screen or "",
        }
        canonical = json.dumps(components, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def score(self, session: Session, context: RequestContext) -> Tuple[int, List[str]]:
        policy = self.policy
        score = 0
        reasons: List[str] = []

        if context.origin_address and session.origin_address and context.origin_address != session.origin_address:
            score += policy.address_change_points
            reasons.append("origin address changed")
        if context.user_agent and session.user_agent and context.user_agent != session.user_agent:
            score += policy.user_agent_change_points
            reasons.append("user agent changed")
        if context.geolocation and session.geolocation:
            distance = haversine_km(session.geolocation, context.geolocation)
            if distance > policy.geo_distance_km:
                score += policy.geo_distance_points
                reasons.append(f"location moved {round(distance)} km")

        cutoff = self._clock().timestamp() - policy.rate_window_seconds
        recent = sum(1 for ts in session.recent_requests if ts >= cutoff)
        if recent > policy.rate_limit:
            score += policy.rate_points
            reasons.append("unusual request rate")
        return score, reasons

    def is_anomalous(self, score: int) -> bool:
        return score >= self.policy.threshold

    async def evaluate(self, session: Session, context: RequestContext) -> Tuple[int, List[str]]:
        """Score and log; anomalous sessions are reported, not blocked."""
        score, reasons = self.score(session, context)
        if self.is_anomalous(score):
            logger.warning(
                "anomaly_detected",
                session_id=session.id,
                user_id=session.user_id,
                score=score,
                reasons=reasons,
            )
        return score, reasons

    async def record_device(self, user_id: str, fingerprint: str) -> DeviceRecord:
        """Remember a fingerprint for the user, keeping the most recent few."""
        now = self._clock()
        keep = self.policy.device_history_size
        seen = {}

        def remember(current: Optional[dict]) -> dict:
            devices = [DeviceRecord.from_record(d) for d in (current or {}).get("devices", [])]
            match = next((d for d in devices if d.fingerprint == fingerprint), None)
            if match is None:
                match = DeviceRecord(fingerprint=fingerprint, first_seen=now, last_seen=now)
                devices.append(match)
            else:
                match.last_seen = now
                match.use_count += 1
            devices.sort(key=lambda d: d.last_seen, reverse=True)
            seen["device"] = match
            return {"devices": [d.to_record() for d in devices[:keep]]}

        await self.store.update(_DEVICE_PREFIX + user_id, remember)
        device = seen["device"]
        if device.use_count == 1:
            logger.info("new_device_seen", user_id=user_id)
        return device

    async def devices(self, user_id: str) -> List[DeviceRecord]:
        raw = await self.store.get(_DEVICE_PREFIX + user_id)
        return [DeviceRecord.from_record(d) for d in (raw or {}).get("devices", [])]

    async def is_known_device(self, user_id: str, fingerprint: str) -> bool:
        return any(d.fingerprint == fingerprint for d in await self.devices(user_id))

    async def trust_device(self, user_id: str, fingerprint: str) -> bool:
        found = {"ok": False}

        def mark(current: Optional[dict]) -> Optional[dict]:
            found["ok"] = False
            if current is None:
                return None
            devices = [DeviceRecord.from_record(d) for d in current.get("devices", [])]
            for device in devices:
                if device.fingerprint == fingerprint:
                    device.trusted = True
                    found["ok"] = True
            return {"devices": [d.to_record() for d in devices]}

        await self.store.update(_DEVICE_PREFIX + user_id, mark)
        return found["ok"]

    @staticmethod
    def average_score(sessions: List[Session]) -> float:
        if not sessions:
            return 0.0
        return round(sum(s.anomaly_score for s in sessions) / len(sessions), 2)
