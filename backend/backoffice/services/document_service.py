# Overview: Atomic allocation of human-readable order and purchase-order numbers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence
from .concurrency import run_with_retry


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Atomically allocate the next document number for a document type.

    The counter row is bumped with a single UPDATE, so two allocations can
    never read the same value. The first allocation for a type inserts the
    row; a concurrent first insert loses on the unique constraint and falls
    back to the UPDATE path.

    Commits its own unit: a number that is later abandoned is simply skipped.
    """
    if not document_type:
        raise ValidationError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )

    def _op() -> str:
        result = db.session.execute(stmt)
        if result.rowcount:
            next_num = _current() - 1
        else:
            db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            try:
                db.session.flush()
                next_num = 1
            except IntegrityError:
                db.session.rollback()
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                next_num = _current() - 1

        db.session.commit()
        return f"{prefix}{next_num:0{pad}d}"

    return run_with_retry(_op)
