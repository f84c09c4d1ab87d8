"""
MetadataMixin — shared metadata envelope for mutable entities.

Models that carry the ``{createdAt, updatedAt, version}`` envelope inherit
from MetadataMixin alongside db.Model. This adds:
  - created_at / updated_at timestamps
  - row_version, bumped on every UPDATE flush
  - metadata_dict() for serialization

Append-only or lightweight records (FieldObservation, ConfidenceEvent,
PendingBatchObservation) use their own type-specific timestamps instead.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event

from fieldlabs.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value) -> str | None:
    return value.isoformat() if value else None


class MetadataMixin:
    """Columns + serializer for the metadata envelope."""

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    row_version = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Incremented on every update; serialized as metadata.version",
    )

    def metadata_dict(self) -> dict:
        return {
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
            "version": self.row_version,
        }


@event.listens_for(MetadataMixin, "before_update", propagate=True)
def _bump_metadata(mapper, connection, target):
    """Stamp updated_at and bump row_version whenever a row is flushed as dirty."""
    target.updated_at = _utcnow()
    target.row_version = (target.row_version or 0) + 1
