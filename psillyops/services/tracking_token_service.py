"""
Tracking Tokens — Service Layer.

Opaque, globally resolvable tokens that point at a production run. The
token value is what gets printed (as a QR code) on run paperwork; the host
resolves a scanned token back to the run it belongs to.

Format:
    qr_<22 base62 chars>        e.g. qr_2x7kP9mN4vBcRtYz8LqW5j

Business logic for:
    - Token generation and format validation
    - Issuing one ACTIVE token per run inside the run-creation transaction
    - Resolving a token value to its entity and redirect target
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select

from psillyops.core.exceptions import NotFoundError, ValidationError
from psillyops.models import db
from psillyops.models.production import TOKEN_ACTIVE, TrackingToken

logger = logging.getLogger(__name__)

BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
TOKEN_PREFIX = "qr_"
TOKEN_LENGTH = 22
_TOKEN_BODY_RE = re.compile(r"^[0-9A-Za-z]+$")

_MAX_ISSUE_ATTEMPTS = 5


def generate_token() -> str:
    """Return a new random token value (~131 bits of entropy)."""
    return TOKEN_PREFIX + "".join(secrets.choice(BASE62) for _ in range(TOKEN_LENGTH))


def is_valid_token_format(token: str | None) -> bool:
    if not token or not token.startswith(TOKEN_PREFIX):
        return False
    body = token[len(TOKEN_PREFIX):]
    return len(body) == TOKEN_LENGTH and bool(_TOKEN_BODY_RE.match(body))


def run_redirect_url(run_id: str) -> str:
    return f"/production-runs/{run_id}"


def public_token_url(token: str, base_url: str = "") -> str:
    return f"{base_url.rstrip('/')}/qr/{token}"


# ── Issuer ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class IssuedToken:
    id: str
    token: str


class TrackingTokenIssuer(Protocol):
    def issue(self, session, run_id: str, actor_id: str | None) -> IssuedToken:
        ...


class DatabaseTokenIssuer:
    """Creates ``tracking_tokens`` rows in the caller's session (no commit)."""

    def issue(self, session, run_id: str, actor_id: str | None) -> IssuedToken:
        for _ in range(_MAX_ISSUE_ATTEMPTS):
            value = generate_token()
            taken = session.execute(
                select(TrackingToken.id).where(TrackingToken.token == value)
            ).first()
            if not taken:
                break
            logger.warning("Tracking token collision, regenerating")
        else:
            raise ValidationError("Could not generate a unique tracking token")

        row = TrackingToken(
            token=value,
            status=TOKEN_ACTIVE,
            entity_type="production_run",
            entity_id=run_id,
            redirect_url=run_redirect_url(run_id),
            created_by=actor_id,
        )
        session.add(row)
        session.flush()
        return IssuedToken(id=row.id, token=row.token)


# ── Resolution ───────────────────────────────────────────────────────────────


def resolve_token(token: str) -> dict:
    """Resolve a token value to its target.

    Revoked tokens still resolve, with ``status`` REVOKED, so the host can
    show a notice instead of the run.
    """
    if not is_valid_token_format(token):
        raise NotFoundError(resource="TrackingToken", resource_id=token)
    row = db.session.execute(
        select(TrackingToken).where(TrackingToken.token == token)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError(resource="TrackingToken", resource_id=token)
    return {
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "redirect_url": row.redirect_url,
        "status": row.status,
    }
