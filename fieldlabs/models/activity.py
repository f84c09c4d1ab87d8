"""
Activity log — append-only feed of domain events.

Models:
    - ActivityEvent: one row per logged event, fixed envelope

The activity log is a collaborator, not part of any workflow's correctness:
log_activity() never raises. A failed write is rolled back to its own
savepoint and logged, and the caller's transaction carries on.
"""

import logging

from fieldlabs.models import db
from fieldlabs.models.base import _utcnow, _uuid, iso

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_EVENT_TYPES = {
    # SOP lifecycle
    "labs.sop_created",
    "labs.sop_version_created",
    "labs.sop_archived",
    "labs.sop_checklist_changed",
    # Observation pipeline
    "labs.observation_created",
    "labs.observation_confirmed",
    "labs.observation_deviated",
    "labs.batch_item_skipped",
    "labs.batch_processed",
    # Knowledge
    "labs.knowledge_item_created",
    "labs.confidence_updated",
    "labs.knowledge_status_changed",
    "labs.challenge_filed",
    "labs.challenge_resolved",
    # Training
    "training.supervised_completion",
    "training.review_ready",
    "training.review_completed",
    "training.certified",
    # Callbacks
    "project.callback_created",
    "project.callback_propagated",
}


class ActivityEvent(db.Model):
    """Immutable activity-feed entry."""

    __tablename__ = "activity_events"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_type", "entity_id"),
        db.Index("idx_activity_project", "project_id"),
        db.Index("idx_activity_type", "event_type"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_type = db.Column(db.String(60), nullable=False)
    project_id = db.Column(db.String(36), nullable=True)
    entity_type = db.Column(db.String(40), nullable=False, comment="sop | observation | knowledge_item | …")
    entity_id = db.Column(db.String(36), nullable=False)
    summary = db.Column(db.String(500), nullable=False)
    event_data = db.Column(db.JSON, nullable=False, default=dict)
    homeowner_visible = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "summary": self.summary,
            "event_data": dict(self.event_data or {}),
            "homeowner_visible": self.homeowner_visible,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ActivityEvent {self.event_type} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def log_activity(
    event_type: str,
    *,
    entity_type: str,
    entity_id: str,
    summary: str,
    project_id: str | None = None,
    event_data: dict | None = None,
    homeowner_visible: bool = False,
) -> ActivityEvent | None:
    """
    Append a single activity row inside a savepoint.

    The row is committed with the caller's transaction. Returns the
    (flushed) ActivityEvent, or None if the write failed.
    """
    if event_type not in ACTIVITY_EVENT_TYPES:
        logger.warning("Unregistered activity event type %s", event_type, extra={"event_type": event_type})

    # None values are dropped so the feed payload stays compact
    data = {k: v for k, v in (event_data or {}).items() if v is not None}

    try:
        with db.session.begin_nested():
            entry = ActivityEvent(
                event_type=event_type,
                project_id=project_id,
                entity_type=entity_type,
                entity_id=str(entity_id),
                summary=summary[:500],
                event_data=data,
                homeowner_visible=homeowner_visible,
            )
            db.session.add(entry)
        return entry
    except Exception:
        # Never block business flow on activity-feed delivery.
        logger.exception(
            "Failed to log %s for %s/%s", event_type, entity_type, entity_id,
            extra={"event_type": event_type},
        )
        return None
