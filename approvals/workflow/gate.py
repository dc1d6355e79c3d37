"""
approvals/workflow/gate.py

StageGate: guarded stage transitions.

Concurrency model:
- A transition is ONE conditional UPDATE:
    UPDATE <table> SET <patch>, stage=:next, status=:next
    WHERE id = :id AND stage = :expected AND status = :expected
  The database guarantees a single winner among concurrent callers. Zero affected rows
  means the record is gone (RecordNotFound) or has moved on (StateConflict); a follow-up
  existence check tells which.
- When validation depends on a stored value that is not part of the WHERE clause
  (manager pay amount vs. accountant due amount), the caller locks the row first with
  lock() (SELECT ... FOR UPDATE) inside the same transaction.
- No in-process locks. Correctness is delegated to the database.

FieldPatch replaces string-built column lists: each model declares PATCHABLE_FIELDS
and a patch refuses anything else.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, TypeVar

from flask import current_app
from sqlalchemy import delete, select, update

from ..errors import RecordNotFound, StateConflict
from ..extensions import db
from ..resilience import Deadline, RetryPolicy
from ..utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FieldPatch:
    """An explicit set of column assignments allowed for `model`."""

    model: type
    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(cls, model: type, _skip_none: bool = False, **values: Any) -> "FieldPatch":
        allowed = getattr(model, "PATCHABLE_FIELDS", None)
        if allowed is None:
            raise TypeError(f"{model.__name__} does not declare PATCHABLE_FIELDS")

        unknown = sorted(set(values) - set(allowed))
        if unknown:
            raise TypeError(f"{model.__name__} does not allow patching {', '.join(unknown)}")

        if _skip_none:
            values = {name: value for name, value in values.items() if value is not None}
        return cls(model=model, values=dict(values))

    def merged(self, **extra: Any) -> dict:
        data = dict(self.values)
        data.update(extra)
        return data


@contextmanager
def transaction() -> Iterator[None]:
    """
    Explicit transaction for multi-statement mutations.

    Usage:
        with transaction():
            gate.advance(...)
            log_action(...)
        # Commits on success, rolls back on exception
    """
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def run_unit_of_work(fn: Callable[[], T], what: str, policy: Optional[RetryPolicy] = None) -> T:
    """
    Run a transactional unit under the app retry policy and request deadline.

    The session is rolled back before each retry so the unit starts from a clean state.
    """
    policy = policy or current_app.extensions["retry_policy"]
    deadline = Deadline(current_app.config.get("REQUEST_DEADLINE_SECONDS", 10.0))
    return policy.run(fn, deadline=deadline, on_retry=lambda _error: db.session.rollback(), what=what)


class StageGate:
    """Guarded transitions for one kind of record."""

    def __init__(self, model: type, *, conflict_status: int = 409, clock: Callable[[], datetime] = utcnow):
        self.model = model
        self.conflict_status = conflict_status
        self.clock = clock

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------
    def get(self, record_id: int):
        record = db.session.get(self.model, record_id)
        if record is None:
            raise RecordNotFound(f"{self.model.__name__} {record_id} not found")
        return record

    def lock(self, record_id: int):
        """SELECT ... FOR UPDATE; held until the surrounding transaction ends."""
        record = db.session.execute(
            select(self.model)
            .where(self.model.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise RecordNotFound(f"{self.model.__name__} {record_id} not found")
        return record

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------
    def guarded_update(
        self,
        record_id: int,
        guards: Sequence[Any],
        patch: FieldPatch,
        *,
        conflict_message: str | None = None,
    ):
        """
        UPDATE ... WHERE id = :id AND <guards>. Returns the refreshed record.

        Raises RecordNotFound / StateConflict when no row matched.
        """
        if patch.model is not self.model:
            raise TypeError(f"Patch for {patch.model.__name__} used on {self.model.__name__} gate")

        values = patch.merged(updated_at=self.clock())
        statement = (
            update(self.model)
            .where(self.model.id == record_id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(statement)

        if result.rowcount == 0:
            self._raise_not_found_or_conflict(record_id, conflict_message)

        return db.session.get(self.model, record_id, populate_existing=True)

    def guarded_delete(self, record_id: int, guards: Sequence[Any], *, conflict_message: str | None = None) -> None:
        """DELETE ... WHERE id = :id AND <guards>. Raises like guarded_update when no row matched."""
        result = db.session.execute(
            delete(self.model)
            .where(self.model.id == record_id, *guards)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._raise_not_found_or_conflict(record_id, conflict_message)

    def advance(
        self,
        record_id: int,
        expected_stage: str,
        expected_status: str,
        next_stage: str,
        next_status: str,
        patch: FieldPatch,
    ):
        """Move a staged record from (expected_stage, expected_status) to (next_stage, next_status)."""
        record = self.guarded_update(
            record_id,
            [self.model.stage == expected_stage, self.model.status == expected_status],
            FieldPatch(model=self.model, values=patch.merged(stage=next_stage, status=next_status)),
            conflict_message=(
                f"{self.model.__name__} {record_id} is not in {expected_stage} stage ({expected_status})"
            ),
        )
        logger.info(
            "%s %s advanced %s/%s -> %s/%s",
            self.model.__name__, record_id, expected_stage, expected_status, next_stage, next_status,
        )
        return record

    def _raise_not_found_or_conflict(self, record_id: int, conflict_message: str | None) -> None:
        exists = db.session.execute(select(self.model.id).where(self.model.id == record_id)).first()
        if exists is None:
            raise RecordNotFound(f"{self.model.__name__} {record_id} not found")
        raise StateConflict(
            conflict_message or f"{self.model.__name__} {record_id} is no longer in the expected state",
            status_code=self.conflict_status,
        )
