"""Keep credential values out of logs, stored errors, and API responses.

Three tools, from structured to unstructured input:

- ``redact_for_logging`` masks dict values whose key looks sensitive.
- ``scrub_values`` removes known secret strings wherever they appear.
- ``sanitize_error_message`` masks ``key=value`` style fragments in free text.
"""

import re
from collections.abc import Iterable
from typing import Any

REDACTED = "***REDACTED***"

# Matched as case-insensitive substrings of dict keys.
SENSITIVE_KEY_PARTS = frozenset({
    "secret", "token", "authorization", "api_key", "apikey", "password",
    "credential", "client_id", "clientid", "accesskey", "anonkey",
    "servicekey", "keyfile", "private_key", "config",
})

# Keys that hold a whole credential payload; masked wholesale.
_PAYLOAD_KEYS = frozenset({"credentials", "headers", "fields"})

_MIN_SCRUB_LENGTH = 6


def _mask(value: Any, parts: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return redact_for_logging(value, parts)
    if isinstance(value, list):
        return [redact_for_logging(v, parts) if isinstance(v, dict) else v for v in value]
    return value


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = SENSITIVE_KEY_PARTS,
) -> dict:
    """Return a copy of ``obj`` with sensitive values replaced by REDACTED.

    Nested dicts and dicts inside lists are handled. The input is not
    modified.

    Args:
        obj: Mapping to redact.
        sensitive_patterns: Key substrings that mark a value as secret.
    """
    redacted = {}
    for key, value in obj.items():
        lowered = str(key).lower()
        if lowered in _PAYLOAD_KEYS or any(p in lowered for p in sensitive_patterns):
            redacted[key] = REDACTED
        else:
            redacted[key] = _mask(value, sensitive_patterns)
    return redacted


def scrub_values(msg: str, values: Iterable[object]) -> str:
    """Replace each literal secret in ``values`` found in ``msg``.

    Provider responses and exception text can echo submitted credentials,
    so probes and integrations pass their error text through here.
    Non-string values and strings shorter than six characters are ignored.
    Longer values are replaced first.
    """
    secrets = {v for v in values if isinstance(v, str) and len(v) >= _MIN_SCRUB_LENGTH}
    for secret in sorted(secrets, key=len, reverse=True):
        msg = msg.replace(secret, REDACTED)
    return msg


_KEYWORDS = "|".join([
    "secret", "token", "password", "api_key", "apikey", "client_id",
    "client_secret", "access_token", "refresh_token", "authorization",
    "credential", "secretaccesskey", "accesskeyid", "anonkey", "servicekey",
    "keyfile", "private_key",
])
_FREE_TEXT_SECRETS = re.compile(
    "|".join([
        r"authorization\s*:\s*(?:bearer|token|key)\s+\S+",
        rf'"(?:{_KEYWORDS})"\s*:\s*"[^"]*"',
        rf'(?:{_KEYWORDS})\s*[=:]\s*"[^"]*"',
        rf"(?:{_KEYWORDS})\s*[=:]\s*\S+",
    ]),
    re.IGNORECASE,
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Mask secret-looking fragments and cap the length for storage.

    Handles ``Authorization: Bearer x``, ``"token": "x"``, ``key="x"`` and
    ``key=x``. Returns None for None.
    """
    if msg is None:
        return None
    cleaned = _FREE_TEXT_SECRETS.sub(REDACTED, msg)
    if len(cleaned) > max_length:
        return cleaned[:max_length - 3] + "..."
    return cleaned
