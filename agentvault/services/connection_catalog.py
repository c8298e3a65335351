"""Connection catalog: the registry of supported connection types.

Neutral module with no DB or service-layer imports. Each type lists its
required and optional credential fields, the scopes it supports, a format
validator per field, and a max-length allowlist. Adding a provider type
means adding a ConnectionSpec here and a probe in connection_tester.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from agentvault.errors import FieldError, UnsupportedConnectionType


class Scope(str, Enum):
    """Permission levels. Totally ordered: read < write < admin."""

    read = "read"
    write = "write"
    admin = "admin"

    @property
    def rank(self) -> int:
        return _SCOPE_RANK[self]


_SCOPE_RANK = {Scope.read: 1, Scope.write: 2, Scope.admin: 3}

ALL_SCOPES: tuple[str, ...] = tuple(s.value for s in Scope)


def sort_scopes(scopes: Iterable[str]) -> list[str]:
    """Deduplicate and order scopes by rank. Unknown scopes sort last."""
    return sorted(
        set(scopes),
        key=lambda s: (_SCOPE_RANK[Scope(s)] if s in ALL_SCOPES else 99, s),
    )


def grants(permissions: Iterable[str], required: str) -> bool:
    """Return True if the permission set grants the required scope.

    A higher-ranked scope implies every lower one.
    """
    required_rank = Scope(required).rank
    return any(p in ALL_SCOPES and Scope(p).rank >= required_rank for p in permissions)


_API_KEY = r"^[A-Za-z0-9_-]{32,}$"
_UUID = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
_HTTP_URL = r"^https?://[^\s]+$"

# Non-secret fields that may be shown back to the user.
DISPLAY_SAFE_FIELDS: frozenset[str] = frozenset({
    "region", "endpoint", "workspace", "registry", "project", "hub",
    "url", "username", "projectId", "subscriptionId",
})


@dataclass(frozen=True)
class ConnectionSpec:
    """Description of one connection type."""

    name: str
    description: str
    required_fields: tuple[str, ...]
    optional_fields: tuple[str, ...] = ()
    default_scopes: tuple[str, ...] = ("read",)
    supported_scopes: tuple[str, ...] = ALL_SCOPES
    field_validators: Mapping[str, str] = field(default_factory=dict)
    max_lengths: Mapping[str, int] = field(default_factory=dict)

    @property
    def all_fields(self) -> tuple[str, ...]:
        return self.required_fields + self.optional_fields

    @property
    def display_fields(self) -> tuple[str, ...]:
        return tuple(f for f in self.all_fields if f in DISPLAY_SAFE_FIELDS)

    def max_length(self, field_name: str) -> int:
        return self.max_lengths.get(field_name, 4096)


class ConnectionCatalog:
    """Immutable registry of connection types.

    Args:
        specs: Mapping of type key (e.g. 'github') to its ConnectionSpec.
    """

    def __init__(self, specs: Mapping[str, ConnectionSpec]) -> None:
        self._specs = MappingProxyType(dict(specs))
        self._patterns = {
            type_key: {f: re.compile(p) for f, p in spec.field_validators.items()}
            for type_key, spec in self._specs.items()
        }

    def __contains__(self, connection_type: object) -> bool:
        return connection_type in self._specs

    def list_types(self) -> list[str]:
        return sorted(self._specs)

    def describe(self, connection_type: str) -> ConnectionSpec:
        """Return the ConnectionSpec for a type.

        Raises:
            UnsupportedConnectionType: If the type is not registered.
        """
        spec = self._specs.get(connection_type)
        if spec is None:
            raise UnsupportedConnectionType(connection_type)
        return spec

    def validate(self, connection_type: str, fields: Mapping[str, Any]) -> list[FieldError]:
        """Check candidate credential fields against the type's rules.

        Every violated rule is reported, not just the first: each missing
        required field, each malformed field, each unknown field, and each
        over-long field.

        Args:
            connection_type: Registered type key.
            fields: Candidate field values.

        Returns:
            List of FieldError; empty when the fields are valid.

        Raises:
            UnsupportedConnectionType: If the type is not registered.
        """
        spec = self.describe(connection_type)
        patterns = self._patterns[connection_type]
        errors: list[FieldError] = []

        for name in spec.required_fields:
            value = fields.get(name)
            if value is None or value == "":
                errors.append(FieldError(name, "MISSING_FIELD", f"Missing required field: {name}"))

        for name, value in fields.items():
            if name not in spec.all_fields:
                errors.append(FieldError(name, "UNKNOWN_FIELD", f"Unknown field: {name}"))
                continue
            if value is None or value == "":
                continue
            if not isinstance(value, str):
                errors.append(FieldError(name, "INVALID_FORMAT", f"Field {name} must be a string"))
                continue
            if len(value) > spec.max_length(name):
                errors.append(FieldError(
                    name, "TOO_LONG",
                    f"Field {name} exceeds maximum length {spec.max_length(name)}",
                ))
            pattern = patterns.get(name)
            if pattern is not None and not pattern.match(value):
                errors.append(FieldError(name, "INVALID_FORMAT", f"Invalid format for field: {name}"))

        return errors

    def validate_scopes(self, connection_type: str, scopes: Iterable[str]) -> list[FieldError]:
        """Check requested scopes against the type's supported scopes.

        Raises:
            UnsupportedConnectionType: If the type is not registered.
        """
        spec = self.describe(connection_type)
        scopes = list(scopes)
        if not scopes:
            return [FieldError("scopes", "EMPTY_SCOPES", "At least one scope is required")]
        return [
            FieldError("scopes", "UNSUPPORTED_SCOPE", f"Unsupported scope for {connection_type}: {scope}")
            for scope in scopes
            if scope not in spec.supported_scopes
        ]

    def display_projection(self, connection_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Return only the non-secret fields of a decrypted bundle."""
        spec = self.describe(connection_type)
        return {
            name: fields[name]
            for name in spec.display_fields
            if fields.get(name) not in (None, "")
        }

    def public_listing(self) -> list[dict[str, Any]]:
        """UI-safe listing of every type, without compiled validators."""
        return [
            {
                "type": type_key,
                "name": spec.name,
                "description": spec.description,
                "requiredFields": list(spec.required_fields),
                "optionalFields": list(spec.optional_fields),
                "defaultScopes": list(spec.default_scopes),
                "supportedScopes": list(spec.supported_scopes),
                "fieldValidators": dict(spec.field_validators),
            }
            for type_key, spec in sorted(self._specs.items())
        ]


def _api_key_spec(name: str, description: str, optional: tuple[str, ...]) -> ConnectionSpec:
    return ConnectionSpec(
        name=name,
        description=description,
        required_fields=("apiKey",),
        optional_fields=optional,
        default_scopes=("read", "write"),
        field_validators={"apiKey": _API_KEY, **{f: _HTTP_URL for f in optional if f == "endpoint"}},
        max_lengths={"apiKey": 1024, "endpoint": 2048},
    )


STANDARD_SPECS: dict[str, ConnectionSpec] = {
    "aws": ConnectionSpec(
        name="Amazon Web Services",
        description="AWS cloud services integration",
        required_fields=("accessKeyId", "secretAccessKey"),
        optional_fields=("region", "sessionToken"),
        field_validators={
            "accessKeyId": r"^AKIA[0-9A-Z]{16}$",
            "secretAccessKey": r"^[A-Za-z0-9/+=]{40}$",
            "region": r"^[a-z]{2}(-[a-z]+)+-\d$",
        },
        max_lengths={"region": 32, "sessionToken": 4096},
    ),
    "azure": ConnectionSpec(
        name="Microsoft Azure",
        description="Azure cloud services integration",
        required_fields=("clientId", "clientSecret", "tenantId"),
        optional_fields=("subscriptionId",),
        field_validators={"clientId": _UUID, "tenantId": _UUID, "subscriptionId": _UUID},
        max_lengths={"clientSecret": 1024},
    ),
    "gcp": ConnectionSpec(
        name="Google Cloud Platform",
        description="Google Cloud services integration",
        required_fields=("projectId", "keyFile"),
        optional_fields=("region",),
        field_validators={"projectId": r"^[a-z]([a-z0-9-]{4,28}[a-z0-9])$"},
        max_lengths={"keyFile": 16384, "region": 64},
    ),
    "github": ConnectionSpec(
        name="GitHub",
        description="GitHub repositories and actions",
        required_fields=("token",),
        optional_fields=("username",),
        field_validators={"token": r"^gh[po]_[A-Za-z0-9_]{36,255}$"},
        max_lengths={"token": 300, "username": 39},
    ),
    "openops": _api_key_spec("OpenOps", "OpenOps workflow automation", ("endpoint", "workspace")),
    "toolhive": _api_key_spec("Toolhive", "Toolhive tool registry and execution", ("endpoint", "registry")),
    "arcade": _api_key_spec("Arcade", "Arcade infrastructure orchestration", ("endpoint", "project")),
    "mcpjungle": _api_key_spec("MCPJungle", "MCP agent communication hub", ("endpoint", "hub")),
    "supabase": ConnectionSpec(
        name="Supabase",
        description="Supabase backend services",
        required_fields=("url", "anonKey"),
        optional_fields=("serviceKey",),
        field_validators={
            "url": r"^https://[a-z0-9-]+\.supabase\.co$",
            "anonKey": r"^eyJ[A-Za-z0-9_.-]+$",
        },
        max_lengths={"url": 256, "anonKey": 2048, "serviceKey": 2048},
    ),
    "openrouter": ConnectionSpec(
        name="OpenRouter",
        description="Multi-provider LLM gateway",
        required_fields=("apiKey",),
        default_scopes=("read",),
        field_validators={"apiKey": r"^sk-or-[A-Za-z0-9_-]{16,}$"},
        max_lengths={"apiKey": 256},
    ),
    "fal": ConnectionSpec(
        name="FAL",
        description="FAL image, video and audio generation",
        required_fields=("apiKey",),
        default_scopes=("read", "write"),
        field_validators={"apiKey": r"^[A-Za-z0-9:_-]{16,}$"},
        max_lengths={"apiKey": 256},
    ),
    "modelslab": ConnectionSpec(
        name="ModelsLab",
        description="ModelsLab video and image generation",
        required_fields=("apiKey",),
        default_scopes=("read", "write"),
        field_validators={"apiKey": r"^[A-Za-z0-9_-]{16,}$"},
        max_lengths={"apiKey": 256},
    ),
}


def default_catalog() -> ConnectionCatalog:
    """Build the catalog of every supported connection type."""
    return ConnectionCatalog(STANDARD_SPECS)
