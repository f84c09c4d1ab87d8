"""
Observation domain models.

Models:
    - FieldObservation: what a crew member did/saw on a checklist step (immutable)
    - PendingBatchObservation: queued draft awaiting end-of-task confirm/skip
    - ObservationKnowledgeLink: directed edge observation → knowledge item
"""

from fieldlabs.models import db
from fieldlabs.models.base import MetadataMixin, _utcnow, _uuid, iso

__all__ = [
    "BATCH_STATUSES",
    "CAPTURE_METHODS",
    "CONDITION_ASSESSMENTS",
    "LINK_TYPES",
    "FieldObservation",
    "ObservationKnowledgeLink",
    "PendingBatchObservation",
]


# ── Constants ────────────────────────────────────────────────────────────────

CAPTURE_METHODS = frozenset({"automatic", "manual", "callback"})
CONDITION_ASSESSMENTS = frozenset({"good", "fair", "poor"})
BATCH_STATUSES = frozenset({"pending", "confirmed", "skipped"})

# auto_detected links are regenerated on relink; the others are human/experiment owned
LINK_TYPES = frozenset({"auto_detected", "labs_assigned", "experiment_required"})


class FieldObservation(db.Model):
    """
    Record of one significant action on a job.

    Immutable once created. The only sanctioned amendment is callback
    propagation, which appends to ``notes`` and flips ``capture_method``
    to "callback".
    """

    __tablename__ = "field_observations"
    __table_args__ = (
        db.Index("idx_fobs_project", "project_id"),
        db.Index("idx_fobs_task", "task_id"),
        db.Index("idx_fobs_type", "knowledge_type"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(36), nullable=False)
    task_id = db.Column(db.String(36), nullable=True)
    knowledge_type = db.Column(db.String(30), nullable=False)

    # Catalog references
    product_id = db.Column(db.String(36), nullable=True)
    technique_id = db.Column(db.String(36), nullable=True)
    tool_method_id = db.Column(db.String(36), nullable=True)
    combination_id = db.Column(db.String(36), nullable=True)

    # Three-axis metadata
    work_category_code = db.Column(db.String(30), nullable=True)
    trade = db.Column(db.String(60), nullable=True)
    stage_code = db.Column(db.String(30), nullable=True)
    location_id = db.Column(db.String(36), nullable=True)

    # Content
    notes = db.Column(db.Text, nullable=True)
    photo_ids = db.Column(db.JSON, nullable=False, default=list)
    condition_assessment = db.Column(db.String(10), nullable=True, comment="good | fair | poor")

    crew_member_id = db.Column(db.String(36), nullable=False, index=True)
    capture_method = db.Column(
        db.String(20), nullable=False, default="manual",
        comment="automatic | manual | callback",
    )
    sop_version_id = db.Column(db.String(36), nullable=True, comment="Sop.id the crew was following")

    # Deviation tracking
    deviated = db.Column(db.Boolean, nullable=False, default=False)
    deviation_fields = db.Column(db.JSON, nullable=False, default=list)
    deviation_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "knowledge_type": self.knowledge_type,
            "product_id": self.product_id,
            "technique_id": self.technique_id,
            "tool_method_id": self.tool_method_id,
            "combination_id": self.combination_id,
            "work_category_code": self.work_category_code,
            "trade": self.trade,
            "stage_code": self.stage_code,
            "location_id": self.location_id,
            "notes": self.notes,
            "photo_ids": list(self.photo_ids or []),
            "condition_assessment": self.condition_assessment,
            "crew_member_id": self.crew_member_id,
            "capture_method": self.capture_method,
            "sop_version_id": self.sop_version_id,
            "deviated": self.deviated,
            "deviation_fields": list(self.deviation_fields or []),
            "deviation_reason": self.deviation_reason,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<FieldObservation {self.id} {self.knowledge_type} project={self.project_id}>"


class PendingBatchObservation(db.Model):
    """
    Draft observation queued for confirmation at task/shift end.

    status: pending → confirmed | skipped (terminal). Processed rows can be
    purged with clear_processed_batch.
    """

    __tablename__ = "pending_batch_observations"
    __table_args__ = (
        db.Index("idx_pbo_task_status", "task_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(db.String(36), nullable=False)
    sop_id = db.Column(db.String(36), nullable=False)
    checklist_item_id = db.Column(db.String(36), nullable=False)
    crew_member_id = db.Column(db.String(36), nullable=False)
    project_id = db.Column(db.String(36), nullable=False)

    draft = db.Column(db.JSON, nullable=False, comment="Pre-filled ObservationDraft")

    status = db.Column(db.String(10), nullable=False, default="pending", comment="pending | confirmed | skipped")
    queued_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "sop_id": self.sop_id,
            "checklist_item_id": self.checklist_item_id,
            "crew_member_id": self.crew_member_id,
            "project_id": self.project_id,
            "draft": dict(self.draft or {}),
            "status": self.status,
            "queued_at": iso(self.queued_at),
            "processed_at": iso(self.processed_at),
        }

    def __repr__(self):
        return f"<PendingBatchObservation {self.id} task={self.task_id} {self.status}>"


class ObservationKnowledgeLink(MetadataMixin, db.Model):
    """Directed edge from a FieldObservation to a KnowledgeItem."""

    __tablename__ = "observation_knowledge_links"
    __table_args__ = (
        db.Index("idx_okl_observation", "observation_id"),
        db.Index("idx_okl_knowledge_item", "knowledge_item_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    observation_id = db.Column(
        db.String(36), db.ForeignKey("field_observations.id", ondelete="CASCADE"), nullable=False,
    )
    knowledge_item_id = db.Column(
        db.String(36), db.ForeignKey("knowledge_items.id", ondelete="CASCADE"), nullable=False,
    )
    link_type = db.Column(
        db.String(30), nullable=False, default="auto_detected",
        comment="auto_detected | labs_assigned | experiment_required",
    )
    link_confidence = db.Column(db.Integer, nullable=True, comment="0-100, auto links only")
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=False, default="system")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "observation_id": self.observation_id,
            "knowledge_item_id": self.knowledge_item_id,
            "link_type": self.link_type,
            "link_confidence": self.link_confidence,
            "notes": self.notes,
            "created_by": self.created_by,
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<ObservationKnowledgeLink {self.observation_id} → {self.knowledge_item_id} ({self.link_type})>"
