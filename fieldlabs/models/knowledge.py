"""
Knowledge domain models — confidence-scored beliefs derived from the field.

Models:
    - KnowledgeItem: aggregated claim about a product/technique/tool/combination
    - ConfidenceEvent: immutable, append-only ledger of score recalculations
    - KnowledgeChallenge: dispute that depresses the score while pending
"""

from fieldlabs.models import db
from fieldlabs.models.base import MetadataMixin, _utcnow, _uuid, iso

__all__ = [
    "CHALLENGE_STATUSES",
    "CONFIDENCE_EVENT_TYPES",
    "KNOWLEDGE_ITEM_STATUSES",
    "ConfidenceEvent",
    "KnowledgeChallenge",
    "KnowledgeItem",
]


# ── Constants ────────────────────────────────────────────────────────────────

KNOWLEDGE_ITEM_STATUSES = frozenset({"draft", "published", "under_review", "deprecated"})

CONFIDENCE_EVENT_TYPES = frozenset({
    "observation_added",
    "experiment_completed",
    "crew_feedback_positive",
    "crew_feedback_negative",
    "expert_review",
    "challenge_filed",
    "challenge_resolved",
    "age_decay",
    "manual_adjustment",
})

CHALLENGE_STATUSES = frozenset({"pending", "under_review", "accepted", "rejected", "needs_more_data"})


class KnowledgeItem(MetadataMixin, db.Model):
    """
    Aggregated, confidence-scored knowledge.

    confidence_score, last_confidence_update, status and the scoring
    counters are written only by confidence_scoring.record_event.
    """

    __tablename__ = "knowledge_items"
    __table_args__ = (
        db.Index("idx_ki_type_status", "knowledge_type", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    knowledge_type = db.Column(db.String(30), nullable=False)
    category = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    summary = db.Column(db.Text, nullable=False)
    details = db.Column(db.Text, nullable=True)

    # Catalog references
    product_ids = db.Column(db.JSON, nullable=False, default=list)
    technique_ids = db.Column(db.JSON, nullable=False, default=list)
    tool_method_ids = db.Column(db.JSON, nullable=False, default=list)
    combination_ids = db.Column(db.JSON, nullable=False, default=list)

    # Confidence
    confidence_score = db.Column(db.Integer, nullable=False, default=50)
    last_confidence_update = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # Scoring inputs
    observation_count = db.Column(db.Integer, nullable=False, default=0)
    experiment_count = db.Column(db.Integer, nullable=False, default=0)
    crew_agreement_rate = db.Column(db.Float, nullable=True, comment="0.0-1.0, None until rated")

    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | published | under_review | deprecated",
    )

    created_by = db.Column(db.String(100), nullable=False, default="system")
    tags = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "knowledge_type": self.knowledge_type,
            "category": self.category,
            "title": self.title,
            "summary": self.summary,
            "details": self.details,
            "product_ids": list(self.product_ids or []),
            "technique_ids": list(self.technique_ids or []),
            "tool_method_ids": list(self.tool_method_ids or []),
            "combination_ids": list(self.combination_ids or []),
            "confidence_score": self.confidence_score,
            "last_confidence_update": iso(self.last_confidence_update),
            "observation_count": self.observation_count,
            "experiment_count": self.experiment_count,
            "crew_agreement_rate": self.crew_agreement_rate,
            "status": self.status,
            "created_by": self.created_by,
            "tags": list(self.tags or []),
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<KnowledgeItem {self.id} {self.knowledge_type}/{self.category} score={self.confidence_score}>"


class ConfidenceEvent(db.Model):
    """
    One row per score recalculation.

    Business rules:
    - Records are NEVER updated or deleted — append-only ledger.
    - new_confidence_score is the score written to the item by that call.
    """

    __tablename__ = "confidence_events"
    __table_args__ = (
        db.Index("idx_ce_item_ts", "knowledge_item_id", "timestamp"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    knowledge_item_id = db.Column(
        db.String(36), db.ForeignKey("knowledge_items.id", ondelete="CASCADE"), nullable=False,
    )
    event_type = db.Column(db.String(30), nullable=False)
    confidence_change = db.Column(db.Integer, nullable=False, default=0)
    new_confidence_score = db.Column(db.Integer, nullable=False)
    source_id = db.Column(db.String(36), nullable=True, comment="Observation/experiment/challenge that caused it")
    user_id = db.Column(db.String(36), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    # Monotonic per item; orders events recorded within the same clock tick
    sequence = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "knowledge_item_id": self.knowledge_item_id,
            "event_type": self.event_type,
            "confidence_change": self.confidence_change,
            "new_confidence_score": self.new_confidence_score,
            "source_id": self.source_id,
            "user_id": self.user_id,
            "notes": self.notes,
            "timestamp": iso(self.timestamp),
            "sequence": self.sequence,
        }

    def __repr__(self):
        return f"<ConfidenceEvent {self.knowledge_item_id} {self.event_type} → {self.new_confidence_score}>"


class KnowledgeChallenge(MetadataMixin, db.Model):
    """A crew or Labs dispute against a knowledge item."""

    __tablename__ = "knowledge_challenges"
    __table_args__ = (
        db.Index("idx_kc_item_status", "knowledge_item_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    knowledge_item_id = db.Column(
        db.String(36), db.ForeignKey("knowledge_items.id", ondelete="CASCADE"), nullable=False,
    )
    submitted_by = db.Column(db.String(100), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    supporting_evidence_ids = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | under_review | accepted | rejected | needs_more_data",
    )
    reviewed_by = db.Column(db.String(100), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "knowledge_item_id": self.knowledge_item_id,
            "submitted_by": self.submitted_by,
            "reason": self.reason,
            "description": self.description,
            "supporting_evidence_ids": list(self.supporting_evidence_ids or []),
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": iso(self.reviewed_at),
            "resolution": self.resolution,
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<KnowledgeChallenge {self.id} item={self.knowledge_item_id} {self.status}>"
