from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from bastion.config import Settings, StoreBackend
from bastion.logging import configure_logging, get_logger
from bastion.service.anomaly import AnomalyDetector
from bastion.service.authorization import AuthorizationEngine
from bastion.service.credentials import CredentialStore
from bastion.service.gateway import AuthGateway
from bastion.service.lockout import LockoutGuard
from bastion.service.maintenance import MaintenanceWorker
from bastion.service.mfa import MfaProvider
from bastion.service.sessions import SessionManager
from bastion.service.tokens import TokenIssuer
from bastion.storage.common import KeyedStore, TimeoutStore
from bastion.storage.memory import MemoryStore
from bastion.storage.redis_store import RedisStore
from bastion.storage.models import utcnow

logger = get_logger(__name__)


def build_store(settings: Settings) -> KeyedStore:
    if settings.store_backend == StoreBackend.REDIS:
        inner: KeyedStore = RedisStore(
            settings.redis_url,
            namespace=settings.redis_namespace,
            socket_timeout=settings.store_timeout_seconds,
        )
    else:
        state_path = (
            str(Path(settings.state_dir) / "store.json") if settings.persist_memory_store else None
        )
        inner = MemoryStore(state_path=state_path)
    return TimeoutStore(inner, settings.store_timeout_seconds)


class Runtime:
    """Owns the store and every component built on it.

    Nothing touches the store before ``init`` succeeds; ``shutdown`` stops
    background work before the store is closed.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[KeyedStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or utcnow
        configure_logging(
            log_level=settings.log_level,
            json_output=settings.log_json,
            development_mode=settings.log_dev_mode,
        )
        self.store = store or build_store(settings)

        self.authorization = AuthorizationEngine(settings.access)
        self.lockout = LockoutGuard(self.store, settings.lockout, clock=self.clock)
        self.credentials = CredentialStore(
            self.store, settings.password, settings.hashing, clock=self.clock
        )
        self.mfa = MfaProvider(
            self.store,
            settings.mfa,
            self.lockout,
            encryption_key=settings.mfa.encryption_key or settings.jwt_secret,
            clock=self.clock,
        )
        self.detector = AnomalyDetector(self.store, settings.anomaly, clock=self.clock)
        self.tokens = TokenIssuer(
            self.store,
            settings.token,
            settings.jwt_secret,
            self.credentials,
            self.authorization,
            clock=self.clock,
        )
        self.sessions = SessionManager(
            self.store,
            settings.session,
            self.credentials,
            detector=self.detector,
            request_window_seconds=settings.anomaly.rate_window_seconds,
            clock=self.clock,
        )
        self.gateway = AuthGateway(
            self.credentials,
            self.lockout,
            self.mfa,
            self.tokens,
            self.sessions,
            self.detector,
            self.authorization,
            settings.session,
            clock=self.clock,
        )
        self.maintenance = MaintenanceWorker(
            {
                "lockout": self.lockout.prune,
                "sessions": self.sessions.cleanup_expired,
                "tokens": self.tokens.prune,
            },
            interval=settings.maintenance_interval_seconds,
        )
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def init(self) -> None:
        """Open the store; any failure here is fatal to startup."""
        try:
            await self.store.init()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self._ready = True
        logger.info("runtime_ready", store_backend=self.settings.store_backend.value)
        if self.settings.maintenance_enabled:
            await self.maintenance.start()

    async def shutdown(self) -> None:
        await self.maintenance.stop()
        self.credentials.close()
        if self._ready:
            await self.store.shutdown()
        self._ready = False
        logger.info("runtime_shutdown_complete")
