"""Vault configuration: pydantic settings loaded from YAML and the environment.

Lookup order for the YAML file:
1. ``--config <path>`` on the CLI (or AGENTVAULT_CONFIG_PATH for the API)
2. ``agentvault.yaml`` / ``agentvault.yml`` in the working directory
3. ``~/.agentvault/config.yaml``

``${NAME}`` inside YAML strings expands from the environment, and
AGENTVAULT_<SECTION>_<FIELD> variables win over the file. The master
secret never comes from YAML; see
agentvault.services.credential_cipher.resolve_master_secret.
"""

import logging
import os
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENTVAULT_"
_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Expand every ``${NAME}`` in ``value``. Unset names expand to ''."""
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)


def _expand(node: Any) -> Any:
    if isinstance(node, str):
        return resolve_env_vars(node)
    if isinstance(node, dict):
        return {key: _expand(item) for key, item in node.items()}
    if isinstance(node, list):
        return list(map(_expand, node))
    return node


class VaultSettings(BaseModel):
    """Credential cipher settings.

    ``mode`` decides what happens when no master secret is configured:
    production refuses to start, development and test fall back to an
    ephemeral secret.
    """

    mode: Literal["production", "development", "test"] = "development"
    scrypt_n: int = Field(default=2**14, ge=2)
    scrypt_r: int = Field(default=8, ge=1)
    scrypt_p: int = Field(default=1, ge=1)


class CacheSettings(BaseModel):
    """Credential cache settings."""

    ttl_seconds: float = Field(default=300.0, gt=0)


class MonitorSettings(BaseModel):
    """Security monitor thresholds and retention windows."""

    failed_tests_per_hour: int = Field(default=10, ge=1)
    connections_created_per_minute: int = Field(default=5, ge=1)
    revoked_usage_threshold: int = Field(default=3, ge=1)
    rate_limit_seconds: int = Field(default=3600, ge=1)
    location_history_days: int = Field(default=30, ge=1)
    retention_days: int = Field(default=90, ge=1)
    counter_idle_seconds: int = Field(default=86400, ge=1)


class TesterSettings(BaseModel):
    """Connection tester settings."""

    timeout_seconds: float = Field(default=10.0, gt=0)


class RouterSettings(BaseModel):
    """Capability router and default integration settings."""

    execution_timeout_seconds: float = Field(default=60.0, gt=0)
    default_model: str = "openai/gpt-4o-mini"
    max_tokens: int = 2000
    temperature: float = 0.7


class ServerSettings(BaseModel):
    """HTTP API server settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class AgentVaultConfig(BaseModel):
    """Top-level configuration for the vault and broker."""

    vault: VaultSettings = VaultSettings()
    cache: CacheSettings = CacheSettings()
    monitor: MonitorSettings = MonitorSettings()
    tester: TesterSettings = TesterSettings()
    router: RouterSettings = RouterSettings()
    server: ServerSettings = ServerSettings()


def _search_paths() -> Iterator[Path]:
    for name in ("agentvault.yaml", "agentvault.yml"):
        yield Path.cwd() / name
    for name in ("config.yaml", "config.yml"):
        yield Path.home() / ".agentvault" / name


def _coerce(raw: str) -> int | bool | str:
    """Env values are strings; ints and true/false are converted."""
    try:
        return int(raw)
    except ValueError:
        pass
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return raw


def _env_overrides() -> dict[str, dict[str, Any]]:
    """Collect AGENTVAULT_<SECTION>_<FIELD> variables by section.

    ``AGENTVAULT_CACHE_TTL_SECONDS=60`` becomes ``{"cache": {"ttl_seconds": 60}}``.
    Names that start with no known section (AGENTVAULT_MASTER_SECRET,
    AGENTVAULT_DATA_DIR...) are skipped.
    """
    # Longest first so a section name that prefixes another cannot shadow it.
    sections = sorted(AgentVaultConfig.model_fields, key=len, reverse=True)
    overrides: dict[str, dict[str, Any]] = {}
    for name, raw in os.environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        rest = name[len(ENV_PREFIX):].lower()
        section = next((s for s in sections if rest.startswith(f"{s}_")), None)
        if section is None or rest == f"{section}_":
            continue
        overrides.setdefault(section, {})[rest[len(section) + 1:]] = _coerce(raw)
    return overrides


def load_config(config_path: str | None = None) -> AgentVaultConfig:
    """Load and validate the configuration.

    Args:
        config_path: Explicit YAML path. When omitted the standard
            locations are searched, and defaults apply if none exists.

    Returns:
        Validated AgentVaultConfig with environment overrides applied.

    Raises:
        FileNotFoundError: ``config_path`` was given but does not exist.
        pydantic.ValidationError: A value is out of range or mistyped.
    """
    path: Path | None
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = next((p for p in _search_paths() if p.exists()), None)

    data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        data = _expand(yaml.safe_load(path.read_text()) or {})

    for section, fields in _env_overrides().items():
        current = data.get(section)
        if current is None:
            data[section] = fields
        elif isinstance(current, dict):
            current.update(fields)
    return AgentVaultConfig(**data)
