from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Tuple

from bastion.config import TokenPolicy
from bastion.logging import get_logger
from bastion.service.errors import FailureKind, Outcome
from bastion.storage.common import KeyedStore
from bastion.storage.models import Principal, User, utcnow

if TYPE_CHECKING:
    from bastion.service.authorization import AuthorizationEngine
    from bastion.service.credentials import CredentialStore

logger = get_logger(__name__)

_ACTIVE_PREFIX = "token:"


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime
    token_type: str = "bearer"


class TokenIssuer:
    """HS256 bearer tokens backed by a server-side active set.

    A token verifies only while its digest is present in the store, so
    revocation takes effect on the next ``verify`` even though the signature
    stays valid.
    """

    def __init__(
        self,
        store: KeyedStore,
        policy: TokenPolicy,
        secret: str,
        credentials: "CredentialStore",
        authorization: "AuthorizationEngine",
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self._secret = secret.encode()
        self.credentials = credentials
        self.authorization = authorization
        self._clock = clock or utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Tuple[Optional[dict[str, Any]], Optional[FailureKind], str]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None, FailureKind.INTEGRITY, "malformed token"

        # Only HS256 is accepted, which rules out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return None, FailureKind.INTEGRITY, "undecodable header"
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None, FailureKind.INTEGRITY, "unsupported algorithm"

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None, FailureKind.INTEGRITY, "bad signature"
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None, FailureKind.INTEGRITY, "undecodable payload"
        if not isinstance(payload, dict):
            return None, FailureKind.INTEGRITY, "undecodable payload"

        if payload.get("iss") != self.policy.issuer:
            return None, FailureKind.AUTHENTICATION, "issuer mismatch"
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.policy.audience in aud
        else:
            valid_aud = aud == self.policy.audience
        if not valid_aud:
            return None, FailureKind.AUTHENTICATION, "audience mismatch"
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None, FailureKind.AUTHENTICATION, "missing expiry"
        if exp_ts <= self._clock().timestamp() - self.policy.leeway_seconds:
            return None, FailureKind.AUTHENTICATION, "token expired"
        return payload, None, ""

    async def issue(self, user: User, *, session_id: Optional[str] = None) -> IssuedToken:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.policy.lifetime_seconds)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.policy.issuer,
            "aud": self.policy.audience,
            "sub": user.id,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
        }
        if session_id:
            payload["sid"] = session_id
        token = self._encode_jwt(payload)
        await self.store.put(
            _ACTIVE_PREFIX + token_digest(token),
            {"sub": user.id, "jti": jti, "exp": payload["exp"]},
        )
        logger.info("token_issued", user_id=user.id, jti=jti)
        return IssuedToken(token=token, jti=jti, expires_at=expires_at)

    async def verify(self, token: str) -> Outcome[Principal]:
        payload, kind, reason = self._decode_jwt(token)
        if payload is None:
            logger.info("token_rejected", reason=reason)
            return Outcome.fail(kind or FailureKind.INTEGRITY, reason)

        active = await self.store.get(_ACTIVE_PREFIX + token_digest(token))
        if not active:
            logger.info("token_rejected", reason="not active", jti=payload.get("jti"))
            return Outcome.fail(FailureKind.INTEGRITY, "token revoked")

        user = await self.credentials.get_user(str(payload.get("sub", "")))
        if user is None or not user.is_active:
            return Outcome.fail(FailureKind.AUTHENTICATION, "user inactive")
        if payload.get("role") != user.role:
            # Role changed since issue; the holder must re-authenticate
            return Outcome.fail(FailureKind.AUTHENTICATION, "role changed")

        return Outcome.success(
            Principal(
                id=user.id,
                role=user.role,
                permissions=self.authorization.permissions_for(user.role),
                authenticated=True,
                session_id=payload.get("sid"),
                auth_method="bearer",
            )
        )

    async def revoke(self, token: str) -> bool:
        removed = await self.store.delete(_ACTIVE_PREFIX + token_digest(token))
        if removed:
            logger.info("token_revoked")
        return removed

    async def revoke_user(self, user_id: str) -> int:
        revoked = 0
        for key, record in await self.store.list_prefix(_ACTIVE_PREFIX):
            if record.get("sub") == user_id and await self.store.delete(key):
                revoked += 1
        if revoked:
            logger.info("user_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    async def prune(self) -> int:
        """Drop active-set entries whose tokens can no longer verify."""
        cutoff = self._clock().timestamp() - self.policy.leeway_seconds
        removed = 0
        for key, record in await self.store.list_prefix(_ACTIVE_PREFIX):
            if float(record.get("exp", 0)) <= cutoff and await self.store.delete(key):
                removed += 1
        if removed:
            logger.debug("expired_tokens_pruned", removed=removed)
        return removed

    async def active_count(self) -> int:
        return len(await self.store.list_prefix(_ACTIVE_PREFIX))
