"""Tests for fingerprints, anomaly scoring and device history."""

from datetime import timedelta

import pytest

from bastion.config import AnomalyPolicy
from bastion.service.anomaly import AnomalyDetector, haversine_km
from bastion.storage.memory import MemoryStore
from bastion.storage.models import GeoPoint, RequestContext, Session

LONDON = GeoPoint(latitude=51.5074, longitude=-0.1278)
PARIS = GeoPoint(latitude=48.8566, longitude=2.3522)
NEW_YORK = GeoPoint(latitude=40.7128, longitude=-74.0060)


@pytest.fixture
def detector(clock):
    return AnomalyDetector(MemoryStore(), AnomalyPolicy(), clock=clock)


def _context(**overrides):
    values = {
        "origin_address": "10.0.0.1",
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64)",
        "accept_language": "en-GB",
        "geolocation": LONDON,
    }
    values.update(overrides)
    return RequestContext(**values)


def _session(clock, context):
    now = clock.now
    return Session(
        id="sess-1",
        user_id="user-1",
        role="USER",
        created_at=now,
        last_activity_at=now,
        expires_at=now + timedelta(hours=8),
        idle_expires_at=now + timedelta(minutes=30),
        fingerprint=AnomalyDetector.fingerprint(context),
        origin_address=context.origin_address,
        user_agent=context.user_agent,
        geolocation=context.geolocation,
    )


class TestFingerprint:
    def test_stable_for_same_signals(self):
        assert AnomalyDetector.fingerprint(_context()) == AnomalyDetector.fingerprint(_context())

    def test_changes_with_user_agent(self):
        assert AnomalyDetector.fingerprint(_context()) != AnomalyDetector.fingerprint(
            _context(user_agent="curl/8.0")
        )

    def test_ignores_origin_address(self):
        assert AnomalyDetector.fingerprint(_context()) == AnomalyDetector.fingerprint(
            _context(origin_address="203.0.113.9")
        )


class TestScoring:
    def test_same_context_scores_zero(self, detector, clock):
        session = _session(clock, _context())
        assert detector.score(session, _context()) == (0, [])

    def test_address_change_alone_is_anomalous(self, detector, clock):
        session = _session(clock, _context())
        score, reasons = detector.score(session, _context(origin_address="203.0.113.9"))
        assert score == 30
        assert reasons == ["origin address changed"]
        assert detector.is_anomalous(score)

    def test_user_agent_change_alone_is_not(self, detector, clock):
        session = _session(clock, _context())
        score, _ = detector.score(session, _context(user_agent="curl/8.0"))
        assert score == 20
        assert not detector.is_anomalous(score)

    def test_distant_location(self, detector, clock):
        session = _session(clock, _context())
        score, reasons = detector.score(session, _context(geolocation=NEW_YORK))
        assert score == 40
        assert reasons[0].startswith("location moved")

    def test_nearby_location_ignored(self, detector, clock):
        session = _session(clock, _context())
        assert detector.score(session, _context(geolocation=PARIS))[0] == 0

    def test_request_rate(self, detector, clock):
        session = _session(clock, _context())
        session.recent_requests = [clock.now.timestamp()] * 50
        assert detector.score(session, _context())[0] == 0
        session.recent_requests.append(clock.now.timestamp())
        assert detector.score(session, _context()) == (25, ["unusual request rate"])

    def test_old_requests_do_not_count(self, detector, clock):
        session = _session(clock, _context())
        session.recent_requests = [clock.now.timestamp() - 301] * 80
        assert detector.score(session, _context())[0] == 0

    def test_haversine(self):
        assert 5550 < haversine_km(LONDON, NEW_YORK) < 5590
        assert haversine_km(LONDON, LONDON) == 0

    def test_average_score(self, clock):
        first = _session(clock, _context())
        second = _session(clock, _context())
        second.anomaly_score = 45
        assert AnomalyDetector.average_score([first, second]) == 22.5
        assert AnomalyDetector.average_score([]) == 0.0


class TestDeviceHistory:
    async def test_repeat_device_counts_uses(self, detector):
        first = await detector.record_device("user-1", "fp-a")
        again = await detector.record_device("user-1", "fp-a")
        assert first.use_count == 1
        assert again.use_count == 2
        assert await detector.is_known_device("user-1", "fp-a")
        assert not await detector.is_known_device("user-1", "fp-b")

    async def test_history_keeps_most_recent(self, detector, clock):
        for n in range(12):
            await detector.record_device("user-1", f"fp-{n}")
            clock.advance(minutes=1)
        devices = await detector.devices("user-1")
        assert len(devices) == 10
        assert devices[0].fingerprint == "fp-11"
        assert not await detector.is_known_device("user-1", "fp-0")

    async def test_trust_device(self, detector):
        await detector.record_device("user-1", "fp-a")
        assert await detector.trust_device("user-1", "fp-a")
        assert not await detector.trust_device("user-1", "fp-z")
        devices = await detector.devices("user-1")
        assert devices[0].trusted
