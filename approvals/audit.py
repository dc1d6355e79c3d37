"""
approvals/audit.py

Audit logging for workflow mutations.

Goals:
- Capture WHO moved WHICH record through WHAT transition, with BEFORE/AFTER snapshots.
- Store username snapshot to preserve identity even if the user is renamed later.
- Store IP address for traceability.

IMPORTANT:
- This helper ADDS AuditLog entries to the current SQLAlchemy session.
  The calling workflow function controls transaction boundaries (commit/rollback),
  so the audit row commits or rolls back together with the transition.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import has_request_context, request
from flask_login import current_user

from .extensions import db
from .models import AuditLog


def _safe_str(value: Any) -> Optional[str]:
    """
    Convert a value to a stable string representation suitable for JSON and DB storage.

    - For Decimal/datetime/etc: str(value) is typically safe.
    - For None: return None.
    - For dict/list (JSON columns): dumped as JSON.
    """
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Convert a SQLAlchemy model instance to a dict snapshot based on table columns.

    NOTES:
    - Captures only scalar column values (not relationships).
    - Values are converted to string for JSON safety and SQLite/PostgreSQL portability.
    """
    data: Dict[str, Optional[str]] = {}
    for column in instance.__table__.columns:
        data[column.name] = _safe_str(getattr(instance, column.name))
    return data


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        entity: SQLAlchemy model instance with .id (flushed)
        action: CREATE / UPDATE / DELETE or a transition name (ACCOUNTANT_REVIEW, ACCEPT_MANAGER, ...)
        before: dict snapshot (optional)
        after: dict snapshot (optional)
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    authenticated = has_request_context() and current_user.is_authenticated

    entry = AuditLog(
        user_id=current_user.id if authenticated else None,
        username_snapshot=current_user.username if authenticated else None,
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False) if before else None,
        after_data=json.dumps(after, ensure_ascii=False) if after else None,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
