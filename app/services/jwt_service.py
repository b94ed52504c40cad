"""
JWT Service — short-lived signed access handles for stored artifacts.

Handle lifetime: 15 minutes (configurable via ARTIFACT_URL_EXPIRES)
Algorithm:       HS256

Token payload:
{
    "sub": <document_id>,
    "rid": <report_id>,
    "act": "view" | "download",
    "uid": <requesting user id or null>,
    "type": "artifact",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app


# ─── Defaults ────────────────────────────────────────────────
DEFAULT_URL_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"
TOKEN_TYPE = "artifact"


def _get_secret():
    """Get the signing key from app config."""
    return current_app.config.get("ARTIFACT_URL_SECRET") or current_app.config["SECRET_KEY"]


def get_url_expires() -> int:
    return int(current_app.config.get("ARTIFACT_URL_EXPIRES", DEFAULT_URL_EXPIRES))


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def generate_artifact_token(
    document_id: str,
    report_id: str,
    action: str = "view",
    user_id: str | None = None,
) -> str:
    """Generate a signed handle that grants one action on one document."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": document_id,
        "rid": report_id,
        "act": action,
        "uid": user_id,
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=get_url_expires()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_artifact_token(token: str) -> dict:
    """
    Decode and verify an artifact handle.

    Returns the payload dict on success.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])

    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"Expected {TOKEN_TYPE} token, got {payload.get('type')}")

    return payload
