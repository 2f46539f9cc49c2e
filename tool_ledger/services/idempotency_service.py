from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.ledger_models import IdempotencyKey
from services.ledger_errors import IdempotencyConflict


def _hash_payload(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str, ensure_ascii=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def find_replay(db: Session, scope: str, key: str | None, payload: dict[str, Any]) -> IdempotencyKey | None:
    """Return the stored key when this request was already applied.

    A key reused with a different payload is rejected rather than replayed.
    """
    if not key:
        return None
    existing = db.execute(
        select(IdempotencyKey)
        .where(IdempotencyKey.Scope == scope)
        .where(IdempotencyKey.Key == key)
    ).scalars().first()
    if not existing:
        return None
    if existing.PayloadHash != _hash_payload(payload):
        raise IdempotencyConflict(
            "Idempotency key reuse with different payload.",
            idempotencyKey=key,
        )
    return existing


def remember(
    db: Session,
    scope: str,
    key: str | None,
    payload: dict[str, Any],
    entity_type: str,
    entity_ids: list[int],
) -> IdempotencyKey | None:
    """Stage the key in the caller's transaction so it commits with the change."""
    if not key:
        return None
    idem = IdempotencyKey(
        Scope=scope,
        Key=key,
        PayloadHash=_hash_payload(payload),
        EntityType=entity_type,
        EntityID=entity_ids[0] if entity_ids else None,
        EntityIDs=json.dumps(entity_ids),
        CreatedAt=datetime.now(),
    )
    db.add(idem)
    return idem


def replay_entity_ids(idem: IdempotencyKey) -> list[int]:
    try:
        parsed = json.loads(idem.EntityIDs or "[]")
    except (TypeError, ValueError):
        parsed = []
    if not isinstance(parsed, list):
        parsed = []
    ids = [int(item) for item in parsed if isinstance(item, int)]
    if not ids and idem.EntityID is not None:
        ids = [int(idem.EntityID)]
    return ids
