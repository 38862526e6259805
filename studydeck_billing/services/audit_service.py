"""Audit trail — best-effort side channel for billing transitions.

Responsible for:
- Writing audit_events rows AFTER the primary transition has committed
- Falling back to a JSON-lines file when the database refuses the row
- Replaying that file back into the database (`flask replay-audit-queue`)

Contract: record_audit() never raises and never touches the primary
transition. A lost audit entry is logged, not escalated.
"""

import json
import logging
import os
import threading
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from studydeck_billing.extensions import db
from studydeck_billing.models.audit import AuditEvent
from studydeck_billing.services.subscription_state import utcnow

logger = logging.getLogger(__name__)

_fallback_lock = threading.Lock()


def fallback_path():
    path = current_app.config.get("AUDIT_FALLBACK_PATH")
    if path:
        return path
    return os.path.join(current_app.instance_path, "audit_fallback.jsonl")


def _append_fallback(entry):
    path = fallback_path()
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with _fallback_lock, open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        logger.error(f"Audit entry lost ({entry['action']}): {e}")


def record_audit(action, user_id=None, resource_id=None, metadata=None):
    """Persist one audit entry; queue it to the fallback file on failure."""
    entry = {
        "action": action,
        "user_id": user_id,
        "resource_id": resource_id,
        "metadata": metadata or {},
        "created_at": utcnow().isoformat(),
    }
    try:
        db.session.add(
            AuditEvent(
                user_id=user_id,
                action=action,
                resource_id=resource_id,
                metadata_=entry["metadata"],
            )
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Audit write failed for {action}, queued to fallback file: {e}")
        _append_fallback(entry)


def replay_fallback_queue():
    """Move queued entries from the fallback file into audit_events.

    Returns (replayed, remaining). Entries that still fail stay in the file.
    """
    path = fallback_path()
    if not os.path.exists(path):
        return 0, 0

    with _fallback_lock:
        with open(path, encoding="utf-8") as f:
            lines = [line for line in f if line.strip()]

        replayed = 0
        remaining = []
        for line in lines:
            try:
                entry = json.loads(line)
            except ValueError:
                logger.error(f"Dropping unreadable audit fallback line: {line[:200]!r}")
                continue
            try:
                created_at = entry.get("created_at")
                db.session.add(
                    AuditEvent(
                        user_id=entry.get("user_id"),
                        action=entry["action"],
                        resource_id=entry.get("resource_id"),
                        metadata_=entry.get("metadata") or {},
                        created_at=datetime.fromisoformat(created_at) if created_at else None,
                    )
                )
                db.session.commit()
                replayed += 1
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.warning(f"Audit replay failed, keeping entry: {e}")
                remaining.append(line)

        with open(path, "w", encoding="utf-8") as f:
            f.writelines(remaining)

    logger.info(f"Audit replay: {replayed} replayed, {len(remaining)} remaining")
    return replayed, len(remaining)
