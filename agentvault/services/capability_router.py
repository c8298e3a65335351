"""Capability router: picks a connection for an agent request and runs it.

Flow for one execute() call:

1. Load the agent and its links.
2. Fetch decrypted credentials for every link through the credential
   cache. Unusable required links fail the request together; unusable
   optional links are reported as skipped.
3. Classify the agent's capability and walk that capability's fixed
   provider priority, keeping only links whose permissions grant the
   required scope.
4. Invoke the chosen integration under a timeout and record the outcome
   in the connection log, the audit sink, and the security monitor.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from agentvault.db.models import ConnectionStatus, generate_uuid
from agentvault.errors import (
    ConnectionNotUsable,
    DecryptionFailed,
    ExecutionFailed,
    FieldError,
    MissingRequiredConnection,
    NoUsableConnection,
    NotFoundError,
    UnmetRequirement,
    ValidationFailed,
)
from agentvault.integrations import Integration
from agentvault.services.audit_service import AuditEntry, AuditService
from agentvault.services.connection_catalog import ALL_SCOPES, Scope, grants
from agentvault.services.connection_store import ConnectionStore, LinkView
from agentvault.services.credential_cache import CachedCredentials, CredentialCache
from agentvault.services.security_monitor import (
    CONNECTION_USED,
    DECRYPTION_FAILURE,
    REVOKED_CONNECTION_USAGE,
    SecurityMonitor,
)
from agentvault.utils.redaction import sanitize_error_message, scrub_values

logger = logging.getLogger(__name__)

DEFAULT_EXECUTION_TIMEOUT = 60.0


class Capability(str, Enum):
    """Routing class derived from an agent's capability flags."""

    delegation = "delegation"
    infrastructure = "infrastructureAutomation"
    media = "mediaGeneration"
    research = "research"
    standard = "standard"


# Checked in this order after delegation; the first flag set wins.
_FLAG_ORDER = (
    Capability.infrastructure,
    Capability.media,
    Capability.research,
)

PROVIDER_PRIORITY: dict[Capability, tuple[str, ...]] = {
    Capability.delegation: ("mcpjungle", "openops"),
    Capability.infrastructure: ("arcade", "aws", "azure", "gcp", "openops"),
    Capability.research: ("openrouter",),
    Capability.standard: ("openrouter",),
}

MEDIA_PRIORITY: dict[str, tuple[str, ...]] = {
    "video": ("modelslab", "fal"),
    "image": ("fal", "modelslab"),
    "audio": ("fal",),
}

REQUIRED_SCOPE: dict[Capability, str] = {
    Capability.standard: Scope.read.value,
    Capability.research: Scope.read.value,
    Capability.media: Scope.write.value,
    Capability.delegation: Scope.write.value,
    Capability.infrastructure: Scope.write.value,
}

_VIDEO_WORDS = re.compile(r"\b(video|movie|animation|clip)\b")
_AUDIO_WORDS = re.compile(r"\b(audio|sound|music|voice|speech)\b")

# Options consumed by the router and never forwarded to a provider.
_ROUTER_OPTIONS = frozenset({"required_scope"})

# Workflow run when a capability falls back to an OpenOps connection.
OPENOPS_WORKFLOWS: dict[Capability, str] = {
    Capability.delegation: "orchestration-workflow",
    Capability.infrastructure: "infrastructure-workflow",
}


def classify(capabilities: Mapping[str, Any]) -> Capability:
    """Map agent capability flags to a routing class.

    Delegation needs both ``delegation`` and ``multiProvider``.
    """
    if capabilities.get(Capability.delegation.value) and capabilities.get("multiProvider"):
        return Capability.delegation
    for capability in _FLAG_ORDER:
        if capabilities.get(capability.value):
            return capability
    return Capability.standard


def media_kind(text: str) -> str:
    """Detect 'video', 'audio' or 'image' from request keywords."""
    lowered = text.lower()
    if _VIDEO_WORDS.search(lowered):
        return "video"
    if _AUDIO_WORDS.search(lowered):
        return "audio"
    return "image"


def accepted_types(capability: Capability, kind: str | None = None) -> tuple[str, ...]:
    if capability is Capability.media:
        return MEDIA_PRIORITY[kind or "image"]
    return PROVIDER_PRIORITY[capability]


@dataclass(frozen=True)
class ExecutionResult:
    """What execute() returns to the caller. Never contains credentials."""

    execution_id: str
    type: str
    success: bool
    text: str | None
    media: list[Any]
    metadata: dict[str, Any]
    connections_used: list[str]
    connection_types: list[str]
    skipped: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "type": self.type,
            "success": self.success,
            "text": self.text,
            "media": self.media,
            "metadata": self.metadata,
            "connections_used": self.connections_used,
            "connection_types": self.connection_types,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class _Loaded:
    link: LinkView
    credentials: CachedCredentials

    @property
    def type(self) -> str:
        return self.credentials.connection_type

    @property
    def sort_key(self) -> tuple[bool, str, str]:
        connection = self.link.connection
        created = connection.created_at if connection is not None else ""
        return (not self.link.is_required, created, self.link.connection_id)


class CapabilityRouter:
    """Routes agent requests to integrations using the agent's linked connections.

    Args:
        store: Connection store (agent links, usage log).
        cache: Credential cache.
        integrations: Adapter per connection type.
        monitor: Security monitor receiving usage and misuse events.
        audit: Audit sink for routing and execution outcomes.
        timeout: Seconds allowed for one integration call.
    """

    def __init__(
        self,
        store: ConnectionStore,
        cache: CredentialCache,
        integrations: Mapping[str, Integration],
        monitor: SecurityMonitor | None = None,
        audit: AuditService | None = None,
        timeout: float = DEFAULT_EXECUTION_TIMEOUT,
    ) -> None:
        self._store = store
        self._cache = cache
        self._integrations = dict(integrations)
        self._monitor = monitor
        self._audit = audit
        self._timeout = timeout

    def _emit(self, entry: AuditEntry) -> None:
        if self._audit is not None:
            self._audit.emit(entry)

    async def _observe(
        self, user_id: str, connection_id: str | None, event_type: str, *args: Any, **kwargs: Any
    ) -> None:
        if self._monitor is not None:
            await asyncio.to_thread(
                self._monitor.observe, user_id, connection_id, event_type, *args, **kwargs
            )

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
        """Run one agent request against the best available connection.

        Args:
            agent_id: Agent making the request.
            user_id: Owner of the agent and its connections.
            input: User prompt or task description.
            options: Provider options; ``required_scope`` overrides the
                capability's default scope.
            ip_address: Request origin, for the monitor and connection log.
            user_agent: Request client, for the monitor.

        Returns:
            ExecutionResult describing the provider output.

        Raises:
            NotFoundError: Agent missing, inactive, or owned by someone else.
            ValidationFailed: ``required_scope`` is not a known scope.
            MissingRequiredConnection: Required links are unusable (all listed).
            NoUsableConnection: No linked connection can serve the capability.
                Both are ConnectionNotUsable subclasses and carry an audit
                reference id.
            ExecutionFailed: The integration failed or timed out.
        """
        options = dict(options or {})
        agent, links = self._store.links_for_agent(agent_id, user_id)
        if not agent.is_active:
            raise NotFoundError("Agent", agent_id)

        capability = classify(agent.capabilities)
        required_scope = options.get("required_scope") or REQUIRED_SCOPE[capability]
        if required_scope not in ALL_SCOPES:
            raise ValidationFailed([
                FieldError("required_scope", "UNKNOWN_SCOPE", f"Unknown scope: {required_scope}")
            ])

        loaded, skipped = await self._load_links(agent_id, user_id, links, ip_address, user_agent)

        kind = media_kind(input) if capability is Capability.media else None
        priority = accepted_types(capability, kind)
        chosen, rejected = self._choose(loaded, priority, required_scope)
        if chosen is None:
            reference_id = uuid4().hex
            unusable = skipped + rejected
            logger.info(
                "No usable connection for agent %s (%s), ref %s", agent_id, capability.value, reference_id,
            )
            self._emit(AuditEntry(
                who=user_id, what="route", success=False,
                detail={"agent_id": agent_id, "capability": capability.value, "rejected": unusable},
                reference_id=reference_id,
            ))
            raise NoUsableConnection(capability.value, list(priority), unusable, reference_id)

        logger.info(
            "Routing agent %s (%s) to %s connection %s",
            agent_id, capability.value, chosen.type, chosen.link.connection_id,
        )
        self._emit(AuditEntry(
            who=user_id, what="route", success=True, connection_id=chosen.link.connection_id,
            detail={"agent_id": agent_id, "capability": capability.value, "type": chosen.type},
        ))

        provider_options = {k: v for k, v in options.items() if k not in _ROUTER_OPTIONS}
        if kind is not None:
            provider_options["media_kind"] = kind
        if capability is Capability.research:
            provider_options.setdefault("task_type", "research")
        if capability is Capability.delegation and chosen.type == "mcpjungle":
            provider_options.setdefault("delegationType", "orchestration")
        if chosen.type == "openops" and capability in OPENOPS_WORKFLOWS:
            provider_options.setdefault("workflow", OPENOPS_WORKFLOWS[capability])

        return await self._invoke(
            agent_id, user_id, chosen, input, provider_options, skipped, ip_address, user_agent,
        )

    async def _load_links(
        self,
        agent_id: str,
        user_id: str,
        links: list[LinkView],
        ip_address: str | None,
        user_agent: str | None,
    ) -> tuple[list[_Loaded], list[dict[str, str]]]:
        loaded: list[_Loaded] = []
        skipped: list[dict[str, str]] = []
        missing: list[UnmetRequirement] = []

        for link in links:
            connection = link.connection
            connection_type = connection.type if connection is not None else "unknown"
            name = connection.name if connection is not None else link.connection_id
            try:
                credentials = await asyncio.to_thread(self._cache.get, link.connection_id, user_id)
            except ConnectionNotUsable as e:
                reason = e.status
                reference_id = None
                if e.status in (ConnectionStatus.revoked.value, ConnectionStatus.suspended.value):
                    await self._observe(
                        user_id, link.connection_id, REVOKED_CONNECTION_USAGE,
                        {"agent_id": agent_id, "status": e.status, "type": connection_type},
                        ip_address=ip_address, user_agent=user_agent,
                    )
            except DecryptionFailed as e:
                reason = "decryption_failed"
                reference_id = e.reference_id
                await self._observe(
                    user_id, link.connection_id, DECRYPTION_FAILURE,
                    {"agent_id": agent_id, "type": connection_type, "reference_id": reference_id},
                    ip_address=ip_address, user_agent=user_agent,
                )
            else:
                loaded.append(_Loaded(link, credentials))
                continue

            if link.is_required:
                missing.append(UnmetRequirement(link.connection_id, connection_type, name, reason, reference_id))
            else:
                entry = {"connection_id": link.connection_id, "type": connection_type, "reason": reason}
                if reference_id:
                    entry["reference_id"] = reference_id
                skipped.append(entry)

        if missing:
            reference_id = uuid4().hex
            logger.info("Agent %s has %d unusable required link(s), ref %s", agent_id, len(missing), reference_id)
            self._emit(AuditEntry(
                who=user_id, what="route", success=False,
                detail={
                    "agent_id": agent_id,
                    "missing": [{"connection_id": m.connection_id, "reason": m.reason} for m in missing],
                },
                reference_id=reference_id,
            ))
            raise MissingRequiredConnection(agent_id, missing, reference_id)
        return loaded, skipped

    def _choose(
        self, loaded: list[_Loaded], priority: tuple[str, ...], required_scope: str
    ) -> tuple[_Loaded | None, list[dict[str, str]]]:
        rejected: list[dict[str, str]] = []
        for connection_type in priority:
            if connection_type not in self._integrations:
                continue
            candidates = sorted(
                (item for item in loaded if item.type == connection_type),
                key=lambda item: item.sort_key,
            )
            for item in candidates:
                if grants(item.link.permissions, required_scope):
                    return item, rejected
                rejected.append({
                    "connection_id": item.link.connection_id,
                    "type": connection_type,
                    "reason": f"link does not grant '{required_scope}'",
                })
        return None, rejected

    async def _invoke(
        self,
        agent_id: str,
        user_id: str,
        chosen: _Loaded,
        input: str,
        options: dict[str, Any],
        skipped: list[dict[str, str]],
        ip_address: str | None,
        user_agent: str | None,
    ) -> ExecutionResult:
        execution_id = generate_uuid()
        connection_id = chosen.link.connection_id
        integration = self._integrations[chosen.type]

        try:
            result = await asyncio.wait_for(
                integration.invoke(chosen.credentials.fields, input, options),
                timeout=self._timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reference_id = uuid4().hex
            if isinstance(e, asyncio.TimeoutError):
                reason = f"{chosen.type} did not respond within {self._timeout:g}s"
            else:
                reason = f"{type(e).__name__}: {e}"
            reason = sanitize_error_message(
                scrub_values(reason, chosen.credentials.fields.values()), max_length=500
            )
            logger.warning(
                "Execution %s via %s failed (ref %s): %s",
                execution_id, chosen.type, reference_id, reason,
            )
            self._emit(AuditEntry(
                who=user_id, what="execute", success=False, connection_id=connection_id,
                detail={"agent_id": agent_id, "execution_id": execution_id, "reason": reason},
                reference_id=reference_id,
            ))
            await asyncio.to_thread(
                self._store.mark_used,
                [connection_id], user_id, agent_id=agent_id, success=False,
                error=reason, context={"execution_id": execution_id, "reference_id": reference_id},
                ip_address=ip_address,
            )
            raise ExecutionFailed(reference_id) from None

        output_length = len(result.text or "") + len(result.media)
        await self._observe(
            user_id, connection_id, CONNECTION_USED,
            {"agent_id": agent_id, "type": chosen.type, "execution_id": execution_id},
            ip_address=ip_address, user_agent=user_agent,
        )
        await asyncio.to_thread(
            self._store.mark_used,
            [connection_id], user_id, agent_id=agent_id, success=result.success,
            context={"execution_id": execution_id, "type": result.type, "output_length": output_length},
            ip_address=ip_address,
        )
        self._emit(AuditEntry(
            who=user_id, what="execute", success=result.success, connection_id=connection_id,
            detail={
                "agent_id": agent_id, "execution_id": execution_id,
                "type": result.type, "output_length": output_length,
            },
        ))
        return ExecutionResult(
            execution_id=execution_id,
            type=result.type,
            success=result.success,
            text=result.text,
            media=list(result.media),
            metadata={**result.metadata, "output_length": output_length},
            connections_used=[connection_id],
            connection_types=[chosen.type],
            skipped=skipped,
        )
