"""Request signing for cloud provider probes.

- AWS STS GetCallerIdentity requests signed with botocore's SigV4Auth.
- RS256 service-account assertions for the Google token endpoint,
  encoded with python-jose.

Both return plain values so the tester can send them through its own
httpx client.
"""

import json
from datetime import UTC, datetime
from urllib.parse import urlencode

from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from jose import jwt
from jose.exceptions import JOSEError

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CLOUD_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

STS_CALLER_IDENTITY_BODY = urlencode({"Action": "GetCallerIdentity", "Version": "2011-06-15"})
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=utf-8"


def signed_sts_request(
    access_key_id: str,
    secret_access_key: str,
    region: str = "us-east-1",
    session_token: str | None = None,
) -> tuple[str, dict[str, str], str]:
    """Sign an STS GetCallerIdentity POST.

    Returns:
        (url, headers, body) ready to send. Headers carry Authorization,
        X-Amz-Date and, with a session token, X-Amz-Security-Token.
    """
    url = f"https://sts.{region}.amazonaws.com/"
    request = AWSRequest(
        method="POST",
        url=url,
        data=STS_CALLER_IDENTITY_BODY,
        headers={"Content-Type": _FORM_CONTENT_TYPE},
    )
    credentials = Credentials(access_key_id, secret_access_key, session_token or None)
    SigV4Auth(credentials, "sts", region).add_auth(request)
    return url, dict(request.headers.items()), STS_CALLER_IDENTITY_BODY


def parse_service_account(key_file: str) -> dict:
    """Parse a GCP service account key JSON document.

    Raises:
        ValueError: If the document is not JSON or lacks client_email/private_key.
    """
    try:
        info = json.loads(key_file)
    except json.JSONDecodeError as e:
        raise ValueError("keyFile is not valid JSON") from e
    if not isinstance(info, dict):
        raise ValueError("keyFile must be a JSON object")
    missing = [k for k in ("client_email", "private_key") if not info.get(k)]
    if missing:
        raise ValueError(f"keyFile is missing: {', '.join(missing)}")
    return info


def service_account_assertion(
    info: dict,
    scope: str = GOOGLE_CLOUD_SCOPE,
    now: datetime | None = None,
) -> str:
    """Build a signed RS256 JWT assertion for the Google token endpoint.

    Args:
        info: Parsed service account key (see parse_service_account).
        scope: OAuth scope to request.
        now: Issue time (defaults to current UTC).

    Raises:
        ValueError: The private key cannot be used for RS256.
    """
    issued = int((now or datetime.now(UTC)).timestamp())
    claims = {
        "iss": info["client_email"],
        "scope": scope,
        "aud": info.get("token_uri") or GOOGLE_TOKEN_URL,
        "iat": issued,
        "exp": issued + 3600,
    }
    headers = {"kid": info["private_key_id"]} if info.get("private_key_id") else None
    try:
        return jwt.encode(claims, info["private_key"], algorithm="RS256", headers=headers)
    except JOSEError as e:
        raise ValueError("keyFile private_key is not a usable RSA PEM key") from e
