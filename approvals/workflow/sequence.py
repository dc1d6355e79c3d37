"""
approvals/workflow/sequence.py

Human-readable sequence ids: PREFIX-YYYY-NNNNN (e.g. NPO-2025-00007).

Generation scans existing ids of the year, takes the highest numeric tail and adds one.
Revision markers ("NPO-2025-00007 Rev2") and malformed legacy tails are tolerated.

The scan-then-insert is not atomic. Two concurrent creations can compute the same id;
the UNIQUE constraint on sequence_id rejects the loser and create_with_sequence_id()
re-runs the whole unit of work with a fresh id.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..errors import StateConflict
from ..extensions import db
from ..utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LEADING_DIGITS = re.compile(r"^(\d+)")
_REVISION = re.compile(r"\s*Rev(\d+)$")

SEQUENCE_ATTEMPTS = 3


def format_sequence_id(prefix: str, year: int, number: int) -> str:
    return f"{prefix}-{year}-{number:05d}"


def max_sequence_number(existing_ids: Iterable[Optional[str]], prefix: str, year: int) -> int:
    """Highest numeric tail among ids of `prefix`/`year`; 0 when none parse."""
    head = f"{prefix}-{year}-"
    highest = 0
    for sequence_id in existing_ids:
        if not sequence_id or not sequence_id.startswith(head):
            continue
        match = _LEADING_DIGITS.match(sequence_id[len(head):])
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def next_sequence_id(model, prefix: str | None = None, year: int | None = None) -> str:
    """Next id for `model` (which declares SEQUENCE_PREFIX and a sequence_id column)."""
    prefix = prefix or model.SEQUENCE_PREFIX
    year = year or utcnow().year

    rows = db.session.execute(
        select(model.sequence_id).where(model.sequence_id.like(f"{prefix}-{year}-%"))
    ).scalars()
    return format_sequence_id(prefix, year, max_sequence_number(rows, prefix, year) + 1)


def next_revision(sequence_id: str) -> str:
    """NPO-2025-00007 -> NPO-2025-00007 Rev1 -> NPO-2025-00007 Rev2 ..."""
    match = _REVISION.search(sequence_id)
    if match:
        return f"{sequence_id[:match.start()]} Rev{int(match.group(1)) + 1}"
    return f"{sequence_id} Rev1"


def _is_sequence_collision(error: IntegrityError) -> bool:
    return "sequence_id" in str(getattr(error, "orig", error))


def create_with_sequence_id(unit_of_work: Callable[[str], T], model, attempts: int = SEQUENCE_ATTEMPTS) -> T:
    """
    Run unit_of_work(sequence_id) and commit; on a sequence_id collision roll back and
    retry with a freshly generated id.

    unit_of_work must add everything to db.session and must not commit.
    """
    for attempt in range(1, attempts + 1):
        sequence_id = next_sequence_id(model)
        try:
            result = unit_of_work(sequence_id)
            db.session.commit()
            return result
        except IntegrityError as error:
            db.session.rollback()
            if not _is_sequence_collision(error):
                raise
            logger.warning("Sequence id %s already taken (attempt %d/%d)", sequence_id, attempt, attempts)

    raise StateConflict(
        f"Could not allocate a unique {model.SEQUENCE_PREFIX} sequence id, please retry",
        status_code=409,
    )
