from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Next number per document type (order, purchase_order).

    Incremented with a single UPDATE so concurrent allocations never hand out
    the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
