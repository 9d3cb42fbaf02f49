"""End-to-end tests for login, request authentication and account security."""

import pytest

from bastion.service.credentials import RegistrationProfile
from bastion.service.errors import FailureKind, LockoutError, MfaError
from bastion.service.gateway import AuthRequest, Rejection
from bastion.service.lockout import account_identifier, address_identifier
from bastion.storage.models import RequestContext

EMAIL = "alice@example.com"
PASSWORD = "Tr0ub4dor&Horse!Zq"
WRONG = "Wr0ng!Password#Zq"
UA = "Mozilla/5.0 (X11; Linux x86_64)"


def _context(address="10.0.0.1"):
    return RequestContext(origin_address=address, user_agent=UA, accept_language="en-GB")


def _request(path, method="GET", token=None, session_id=None, address="10.0.0.1"):
    headers = {"User-Agent": UA, "Accept-Language": "en-GB"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    cookies = {"session_id": session_id} if session_id else {}
    return AuthRequest(
        method=method, path=path, headers=headers, cookies=cookies, origin_address=address
    )


@pytest.fixture
def gateway(runtime):
    return runtime.gateway


async def _register(gateway, email=EMAIL):
    return await gateway.register(RegistrationProfile(email=email, name="Alice Example"), PASSWORD)


class TestLogin:
    async def test_successful_login(self, gateway, runtime):
        profile = await _register(gateway)
        result = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()

        assert result.user["id"] == profile["id"]
        assert result.token.token_type == "bearer"
        assert not result.password_change_required
        assert await runtime.detector.is_known_device(profile["id"], result.session.fingerprint)
        user = await runtime.credentials.get_user(profile["id"])
        assert user.last_login_at is not None
        assert user.session_ids == [result.session.id]

    async def test_wrong_password(self, gateway):
        await _register(gateway)
        outcome = await gateway.login(EMAIL, WRONG, _context())
        assert outcome.failure == FailureKind.AUTHENTICATION
        assert outcome.reason == "Invalid email or password"

    async def test_fifth_failure_locks_account(self, gateway, runtime):
        profile = await _register(gateway)
        for _ in range(4):
            outcome = await gateway.login(EMAIL, WRONG, _context())
            assert outcome.failure == FailureKind.AUTHENTICATION
        assert (await gateway.login(EMAIL, WRONG, _context())).failure == FailureKind.LOCKOUT

        # The right password does not help while the lock holds
        locked = await gateway.login(EMAIL, PASSWORD, _context())
        with pytest.raises(LockoutError):
            locked.unwrap()
        user = await runtime.credentials.get_user(profile["id"])
        assert user.failed_attempts == 5
        assert user.locked_until is not None

    async def test_lock_expires(self, gateway, clock):
        await _register(gateway)
        for _ in range(5):
            await gateway.login(EMAIL, WRONG, _context())
        clock.advance(minutes=30)
        assert (await gateway.login(EMAIL, PASSWORD, _context())).ok

    async def test_success_resets_account_counter_only(self, gateway, runtime):
        await _register(gateway)
        for _ in range(4):
            await gateway.login(EMAIL, WRONG, _context())
        assert (await gateway.login(EMAIL, PASSWORD, _context())).ok

        assert (await runtime.lockout.status(account_identifier(EMAIL))).failures == 0
        assert (await runtime.lockout.status(address_identifier("10.0.0.1"))).failures == 4

    async def test_address_tier_locks_across_accounts(self, gateway):
        await _register(gateway)
        for n in range(50):
            await gateway.login(f"probe{n}@example.com", WRONG, _context("198.51.100.7"))

        blocked = await gateway.login(EMAIL, PASSWORD, _context("198.51.100.7"))
        assert blocked.failure == FailureKind.LOCKOUT
        assert (await gateway.login(EMAIL, PASSWORD, _context("10.0.0.1"))).ok


class TestMfaLogin:
    async def _enable_mfa(self, runtime, user_id):
        enrollment = await runtime.mfa.setup(user_id, EMAIL)
        secret = enrollment.manual_entry_key.replace(" ", "")
        code = runtime.mfa.totp_code(secret, runtime.clock().timestamp())
        assert (await runtime.mfa.verify_setup(user_id, code)).ok
        return secret, enrollment.backup_codes

    async def test_code_required(self, gateway, runtime):
        profile = await _register(gateway)
        await self._enable_mfa(runtime, profile["id"])

        outcome = await gateway.login(EMAIL, PASSWORD, _context())
        assert outcome.failure == FailureKind.MFA_REQUIRED
        assert outcome.detail["mfa_required"] is True
        with pytest.raises(MfaError) as excinfo:
            outcome.unwrap()
        assert excinfo.value.error_code == "MFA_REQUIRED"

    async def test_totp_login(self, gateway, runtime, clock):
        profile = await _register(gateway)
        secret, _ = await self._enable_mfa(runtime, profile["id"])
        clock.advance(seconds=30)

        code = runtime.mfa.totp_code(secret, clock.now.timestamp())
        result = (await gateway.login(EMAIL, PASSWORD, _context(), mfa_code=code)).unwrap()
        assert result.mfa.method == "totp"

    async def test_backup_code_login(self, gateway, runtime):
        profile = await _register(gateway)
        _, backup_codes = await self._enable_mfa(runtime, profile["id"])
        result = (await gateway.login(EMAIL, PASSWORD, _context(), mfa_code=backup_codes[0])).unwrap()
        assert result.mfa.method == "backup_code"
        assert result.mfa.backup_codes_remaining == 7

    async def test_bad_code(self, gateway, runtime):
        profile = await _register(gateway)
        await self._enable_mfa(runtime, profile["id"])
        outcome = await gateway.login(EMAIL, PASSWORD, _context(), mfa_code="000000000")
        assert outcome.failure == FailureKind.MFA


class TestAuthenticate:
    async def test_bearer_token(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()

        principal = await gateway.authenticate(_request("/v1/me", token=login.token.token))
        assert not isinstance(principal, Rejection)
        assert principal.authenticated
        assert principal.auth_method == "bearer"
        assert principal.session_id == login.session.id

    async def test_session_cookie(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()

        principal = await gateway.authenticate(_request("/v1/me", session_id=login.session.id))
        assert principal.auth_method == "session"
        assert principal.refresh_token

    async def test_missing_credentials(self, gateway):
        rejection = await gateway.authenticate(_request("/v1/me"))
        assert isinstance(rejection, Rejection)
        assert rejection.code == "UNAUTHORIZED"
        assert rejection.message == "Authentication required"

    async def test_bad_token_on_public_route_falls_back_to_guest(self, gateway):
        principal = await gateway.authenticate(_request("/api/public/news", token="garbage"))
        assert not isinstance(principal, Rejection)
        assert principal.role == "GUEST"
        assert not principal.authenticated

    async def test_forbidden_route(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        rejection = await gateway.authenticate(
            _request("/api/admin/users", token=login.token.token)
        )
        assert rejection.code == "FORBIDDEN"

    async def test_unknown_route_denied(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        rejection = await gateway.authenticate(_request("/v1/unlisted", token=login.token.token))
        assert rejection.code == "FORBIDDEN"

    async def test_bearer_token_survives_session_rotation(self, gateway, clock):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()

        for _ in range(12):
            clock.advance(minutes=20)
            principal = await gateway.authenticate(_request("/v1/me", token=login.token.token))
            assert not isinstance(principal, Rejection), principal.message
        assert principal.session_id != login.session.id

        # Well past the rotation grace period, still inside the token lifetime
        clock.advance(minutes=1)
        principal = await gateway.authenticate(_request("/v1/me", token=login.token.token))
        assert not isinstance(principal, Rejection), principal.message
        assert principal.auth_method == "bearer"
        assert principal.id == login.user["id"]

    async def test_rejection_uses_gateway_clock(self, gateway, clock):
        clock.advance(days=3)
        rejection = await gateway.authenticate(_request("/v1/me"))
        assert rejection.timestamp == clock.now.isoformat()

    async def test_token_fails_once_bound_session_ends(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        await gateway.sessions.invalidate(login.session.id)
        rejection = await gateway.authenticate(_request("/v1/me", token=login.token.token))
        assert rejection.code == "UNAUTHORIZED"

    async def test_address_change_requires_reauth(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        principal = await gateway.authenticate(
            _request("/v1/me", session_id=login.session.id, address="203.0.113.9")
        )
        assert principal.authenticated
        assert principal.requires_reauth
        assert principal.anomaly_score == 30
        assert principal.anomaly_reasons == ["origin address changed"]


class TestAccount:
    async def test_logout_ends_token_and_session(self, gateway):
        await _register(gateway)
        login = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()

        assert await gateway.logout(login.token.token, login.session.id)
        assert not await gateway.logout(login.token.token, login.session.id)
        rejection = await gateway.authenticate(_request("/v1/me", session_id=login.session.id))
        assert rejection.code == "UNAUTHORIZED"

    async def test_change_password_ends_other_sessions(self, gateway, runtime):
        await _register(gateway)
        first = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        second = (await gateway.login(EMAIL, PASSWORD, _context())).unwrap()
        principal = await gateway.authenticate(_request("/v1/me", session_id=first.session.id))

        wrong = await gateway.change_password(principal, WRONG, "N3w!Passphrase#Qx7")
        assert wrong.failure == FailureKind.AUTHENTICATION

        assert (await gateway.change_password(principal, PASSWORD, "N3w!Passphrase#Qx7")).ok
        live = {s.id for s in await runtime.sessions.sessions_for(principal.id)}
        assert live == {first.session.id}
        assert second.session.id not in live
        assert (await gateway.login(EMAIL, "N3w!Passphrase#Qx7", _context())).ok

    async def test_metrics(self, gateway):
        await _register(gateway)
        await gateway.login(EMAIL, PASSWORD, _context())
        for _ in range(5):
            await gateway.login("bob@example.com", WRONG, _context("10.0.0.2"))

        metrics = await gateway.metrics()
        assert metrics["active_sessions"] == 1
        assert metrics["registered_users"] == 1
        assert metrics["active_tokens"] == 1
        assert metrics["mfa_enabled_users"] == 0
        assert metrics["locked_identifiers"] == {"account": 1, "address": 0, "mfa": 0}
        assert metrics["average_anomaly_score"] == 0.0
        assert metrics["sessions_requiring_reauth"] == 0
