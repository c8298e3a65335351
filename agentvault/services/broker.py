"""Broker: wires the vault services together and adds monitoring hooks.

The API and CLI talk to a ConnectionBroker, never to the individual
services. The broker adds the cross-cutting steps a single service
should not know about: rate-limit checks before creation, security
events after probes and usage, and cache maintenance on sweep.

Usage:
    broker = ConnectionBroker.from_config(load_config(), SessionLocal)
    view = await broker.create_connection("user-1", "github", "Main", {"token": "..."})
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from agentvault.config import AgentVaultConfig
from agentvault.errors import ProbeFailed
from agentvault.integrations import Integration, default_integrations
from agentvault.services.audit_service import AuditService
from agentvault.services.capability_router import CapabilityRouter, ExecutionResult
from agentvault.services.connection_catalog import ConnectionCatalog, default_catalog
from agentvault.services.connection_store import ConnectionStore, ConnectionView, TestOutcome
from agentvault.services.connection_tester import ConnectionTester
from agentvault.services.credential_cache import CredentialCache
from agentvault.services.credential_cipher import CredentialCipher, resolve_master_secret
from agentvault.services.security_monitor import (
    CONNECTION_CREATED,
    CONNECTION_CREDENTIAL_CHANGED,
    CONNECTION_TEST_FAILED,
    RATE_LIMIT_CONNECTION_CREATION,
    Notifier,
    SecurityMonitor,
)

logger = logging.getLogger(__name__)


class ConnectionBroker:
    """Facade over store, cache, router, and monitor.

    Attributes:
        catalog: Connection type registry.
        store: Connection persistence and lifecycle.
        cache: Decrypted credential cache.
        monitor: Security monitor.
        router: Capability router.
        audit: Audit sink.
    """

    def __init__(
        self,
        catalog: ConnectionCatalog,
        store: ConnectionStore,
        cache: CredentialCache,
        monitor: SecurityMonitor,
        router: CapabilityRouter,
        audit: AuditService,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.cache = cache
        self.monitor = monitor
        self.router = router
        self.audit = audit

    @classmethod
    def from_config(
        cls,
        config: AgentVaultConfig,
        session_factory: sessionmaker[Session],
        *,
        master_secret: bytes | None = None,
        catalog: ConnectionCatalog | None = None,
        tester: ConnectionTester | None = None,
        integrations: Mapping[str, Integration] | None = None,
        notifier: Notifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ConnectionBroker:
        """Assemble every service from configuration.

        Args:
            config: Loaded AgentVaultConfig.
            session_factory: sessionmaker bound to the state database.
            master_secret: Overrides master secret resolution (tests).
            catalog: Overrides the standard catalog.
            tester: Overrides the live tester.
            integrations: Overrides the standard provider adapters.
            notifier: Receiver for high-severity alerts.
            transport: httpx transport shared by tester and adapters.

        Raises:
            MasterSecretMissing: Production mode without a configured secret.
        """
        secret = master_secret or resolve_master_secret(config.vault.mode)
        cipher = CredentialCipher(
            secret,
            scrypt_n=config.vault.scrypt_n,
            scrypt_r=config.vault.scrypt_r,
            scrypt_p=config.vault.scrypt_p,
        )
        catalog = catalog or default_catalog()
        tester = tester or ConnectionTester(
            catalog, timeout=config.tester.timeout_seconds, transport=transport
        )
        audit = AuditService(session_factory)
        store = ConnectionStore(session_factory, cipher, catalog, tester, audit)
        cache = CredentialCache(store, ttl=config.cache.ttl_seconds)
        monitor = SecurityMonitor(session_factory, store, config.monitor, notifier=notifier)
        if integrations is None:
            integrations = default_integrations(config.router, transport=transport)
        router = CapabilityRouter(
            store, cache, integrations, monitor=monitor, audit=audit,
            timeout=config.router.execution_timeout_seconds,
        )
        logger.info("Broker ready (%d connection types, mode=%s)", len(catalog.list_types()), config.vault.mode)
        return cls(catalog, store, cache, monitor, router, audit)

    async def _observe(
        self, user_id: str, connection_id: str | None, event_type: str, *args: Any, **kwargs: Any
    ) -> None:
        """Record a security event off the event loop.

        A storage failure is logged and does not undo the operation that
        produced the event.
        """
        try:
            await asyncio.to_thread(
                self.monitor.observe, user_id, connection_id, event_type, *args, **kwargs
            )
        except SQLAlchemyError:
            logger.exception("Failed to record security event %s for user %s", event_type, user_id)

    # --- Connections ---

    async def create_connection(
        self,
        user_id: str,
        connection_type: str,
        name: str,
        fields: Mapping[str, Any],
        scopes: Iterable[str] | None = None,
        description: str | None = None,
        expires_at: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConnectionView:
        """Rate-limit check, then create. Probe failures count toward suspension alerts.

        Raises:
            RateLimited: Connection creation is throttled for this user.
            ValidationFailed, UnsupportedConnectionType, ProbeFailed: From the store.
        """
        await asyncio.to_thread(self.monitor.check_rate_limit, user_id, RATE_LIMIT_CONNECTION_CREATION)
        try:
            view = await self.store.create(
                user_id, connection_type, name, fields,
                scopes=scopes, description=description, expires_at=expires_at,
                ip_address=ip_address,
            )
        except ProbeFailed as e:
            await self._observe(
                user_id, None, CONNECTION_TEST_FAILED,
                {"type": connection_type, "stage": "create", "detail": e.detail},
                ip_address=ip_address, user_agent=user_agent,
            )
            raise
        await self._observe(
            user_id, view.id, CONNECTION_CREATED, {"type": connection_type, "name": view.name},
            ip_address=ip_address, user_agent=user_agent,
        )
        return view

    async def update_connection(
        self,
        connection_id: str,
        user_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        **changes: Any,
    ) -> ConnectionView:
        """Update through the store; credential changes are reported to the monitor."""
        try:
            view = await self.store.update(connection_id, user_id, ip_address=ip_address, **changes)
        except ProbeFailed as e:
            await self._observe(
                user_id, connection_id, CONNECTION_TEST_FAILED,
                {"stage": "update", "detail": e.detail},
                ip_address=ip_address, user_agent=user_agent,
            )
            raise
        if changes.get("fields") is not None:
            await self._observe(
                user_id, connection_id, CONNECTION_CREDENTIAL_CHANGED, {"type": view.type},
                ip_address=ip_address, user_agent=user_agent,
            )
        return view

    async def test_connection(
        self,
        connection_id: str,
        user_id: str,
        fields: Mapping[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TestOutcome:
        """Re-probe a stored connection. A failure is observed, not raised."""
        outcome = await self.store.retest(connection_id, user_id, fields, ip_address=ip_address)
        if not outcome.result.ok:
            await self._observe(
                user_id, connection_id, CONNECTION_TEST_FAILED,
                {"type": outcome.connection.type, "stage": "retest", "detail": outcome.result.detail},
                ip_address=ip_address, user_agent=user_agent,
            )
        return outcome

    async def reactivate_connection(
        self,
        connection_id: str,
        user_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TestOutcome:
        """Move a suspended connection to testing, then probe it with stored credentials.

        The failed-test count starts over, so repeated failures after
        reactivation suspend the connection again.
        """
        self.store.reactivate(connection_id, user_id)
        self.monitor.reset_failed_tests(user_id, connection_id)
        return await self.test_connection(
            connection_id, user_id, ip_address=ip_address, user_agent=user_agent
        )

    def revoke_connection(self, connection_id: str, user_id: str, reason: str | None = None) -> ConnectionView:
        return self.store.revoke(connection_id, user_id, reason)

    def delete_connection(self, connection_id: str, user_id: str) -> ConnectionView:
        return self.store.soft_delete(connection_id, user_id)

    # --- Execution ---

    async def execute(
        self,
        agent_id: str,
        user_id: str,
        input: str,
        options: Mapping[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ExecutionResult:
        return await self.router.execute(
            agent_id, user_id, input, options, ip_address=ip_address, user_agent=user_agent
        )

    # --- Maintenance ---

    def sweep(self) -> dict[str, int]:
        """Run retention and expiry cleanup across monitor and cache."""
        result = self.monitor.sweep()
        result["cache_entries"] = self.cache.sweep()
        return result
