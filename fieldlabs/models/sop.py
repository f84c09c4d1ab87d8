"""
SOP domain models — versioned standard operating procedures.

Models:
    - Sop: one row per published version of a procedure
    - SopChecklistItemTemplate: ordered checklist step belonging to one Sop version

Versioning:
    sop_code is stable across versions. Each new version is a new Sop row with
    version = previous.version + 1 and previous_version_id pointing back.
    At most one row per sop_code has is_current=True.
"""

from fieldlabs.models import db
from fieldlabs.models.base import MetadataMixin, _utcnow, _uuid, iso

__all__ = [
    "CERTIFICATION_LEVELS",
    "CHECKLIST_CATEGORIES",
    "CHECKLIST_TYPES",
    "KNOWLEDGE_TYPES",
    "OBSERVATION_MODES",
    "SCRIPT_PHASES",
    "SOP_STATUSES",
    "TRIGGER_TIMINGS",
    "Sop",
    "SopChecklistItemTemplate",
]


# ── Constants ────────────────────────────────────────────────────────────────

SOP_STATUSES = frozenset({"draft", "active", "archived", "future_experiment"})
OBSERVATION_MODES = frozenset({"minimal", "standard", "detailed"})
CERTIFICATION_LEVELS = frozenset({"apprentice", "journeyman", "master"})
CHECKLIST_TYPES = frozenset({"activity", "daily", "qc"})
CHECKLIST_CATEGORIES = frozenset({"safety", "quality", "procedure", "inspection", "documentation"})
TRIGGER_TIMINGS = frozenset({"on_check", "batch"})
# SCRIPT framework: six phases used to organise SOP steps
SCRIPT_PHASES = frozenset({"shield", "clear", "ready", "install", "punch", "turnover"})

# The ten kinds of testable claim an observation or knowledge item can be about
KNOWLEDGE_TYPES = frozenset({
    "product",
    "material",
    "technique",
    "action",
    "procedure",
    "timing",
    "combination",
    "tool_method",
    "environmental_rule",
    "specification",
})


class Sop(MetadataMixin, db.Model):
    """
    A single version of a standard operating procedure.

    Business rules:
    - Created as version 1, is_current=True.
    - A new version supersedes the current one (is_current=False,
      superseded_date set) and copies its checklist.
    - Superseded rows are never edited again except for status (archival).
    """

    __tablename__ = "sops"
    __table_args__ = (
        db.Index("idx_sop_code_current", "sop_code", "is_current"),
        db.UniqueConstraint("sop_code", "version", name="uq_sop_code_version"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)

    # Identity
    sop_code = db.Column(db.String(30), nullable=False, index=True, comment="Stable across versions, e.g. FL-02")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    trade_family = db.Column(db.String(60), nullable=False, index=True)

    # Versioning
    version = db.Column(db.Integer, nullable=False, default=1)
    version_notes = db.Column(db.Text, nullable=True)
    previous_version_id = db.Column(
        db.String(36), db.ForeignKey("sops.id", ondelete="SET NULL"), nullable=True,
    )
    is_current = db.Column(db.Boolean, nullable=False, default=True)
    effective_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    superseded_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Observation configuration
    default_observation_mode = db.Column(
        db.String(20), nullable=False, default="standard",
        comment="minimal | standard | detailed",
    )

    # Training configuration
    certification_level = db.Column(
        db.String(20), nullable=False, default="apprentice",
        comment="apprentice | journeyman | master",
    )
    required_supervised_completions = db.Column(db.Integer, nullable=False, default=3)
    review_question_count = db.Column(db.Integer, nullable=False, default=10)
    review_pass_threshold = db.Column(db.Integer, nullable=False, default=80)

    field_guide_ref = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | active | archived | future_experiment",
    )
    created_by = db.Column(db.String(100), nullable=True)

    checklist_items = db.relationship(
        "SopChecklistItemTemplate",
        back_populates="sop",
        order_by="SopChecklistItemTemplate.step_number",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def to_dict(self, include_checklist: bool = False) -> dict:
        d = {
            "id": self.id,
            "sop_code": self.sop_code,
            "title": self.title,
            "description": self.description,
            "trade_family": self.trade_family,
            "version": self.version,
            "version_notes": self.version_notes,
            "previous_version_id": self.previous_version_id,
            "is_current": self.is_current,
            "effective_date": iso(self.effective_date),
            "superseded_date": iso(self.superseded_date),
            "default_observation_mode": self.default_observation_mode,
            "certification_level": self.certification_level,
            "required_supervised_completions": self.required_supervised_completions,
            "review_question_count": self.review_question_count,
            "review_pass_threshold": self.review_pass_threshold,
            "field_guide_ref": self.field_guide_ref,
            "status": self.status,
            "created_by": self.created_by,
            "metadata": self.metadata_dict(),
        }
        if include_checklist:
            d["checklist_items"] = [i.to_dict() for i in self.checklist_items]
        return d

    def __repr__(self):
        return f"<Sop {self.sop_code} v{self.version}{' (current)' if self.is_current else ''}>"


class SopChecklistItemTemplate(MetadataMixin, db.Model):
    """
    One step of an SOP version's checklist.

    step_number is 1-based and contiguous within the owning Sop; every
    insert/remove renumbers the remaining steps in the same transaction.
    When generates_observation is set, checking the step feeds the
    observation trigger pipeline (immediately or via the batch queue,
    depending on trigger_timing).
    """

    __tablename__ = "sop_checklist_item_templates"
    __table_args__ = (
        db.Index("idx_scit_sop_step", "sop_id", "step_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    sop_id = db.Column(
        db.String(36), db.ForeignKey("sops.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    step_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    checklist_type = db.Column(db.String(20), nullable=False, default="activity", comment="activity | daily | qc")
    category = db.Column(
        db.String(20), nullable=False, default="procedure",
        comment="safety | quality | procedure | inspection | documentation",
    )
    is_critical = db.Column(db.Boolean, nullable=False, default=False)

    # Labs bridge configuration
    generates_observation = db.Column(db.Boolean, nullable=False, default=False)
    observation_knowledge_type = db.Column(db.String(30), nullable=True)
    requires_photo = db.Column(db.Boolean, nullable=False, default=False)
    timing_followup = db.Column(
        db.JSON, nullable=True,
        comment='{"enabled": bool, "delayMinutes": int, "followupPrompt": str}',
    )
    trigger_timing = db.Column(db.String(10), nullable=False, default="on_check", comment="on_check | batch")

    # Default catalog references used to pre-fill observation drafts
    default_product_id = db.Column(db.String(36), nullable=True)
    default_technique_id = db.Column(db.String(36), nullable=True)
    default_tool_id = db.Column(db.String(36), nullable=True)

    script_phase = db.Column(db.String(20), nullable=True)

    sop = db.relationship("Sop", back_populates="checklist_items")

    # Columns copied verbatim when a new SOP version is created
    COPY_FIELDS = (
        "step_number",
        "title",
        "description",
        "checklist_type",
        "category",
        "is_critical",
        "generates_observation",
        "observation_knowledge_type",
        "requires_photo",
        "timing_followup",
        "trigger_timing",
        "default_product_id",
        "default_technique_id",
        "default_tool_id",
        "script_phase",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sop_id": self.sop_id,
            "step_number": self.step_number,
            "title": self.title,
            "description": self.description,
            "checklist_type": self.checklist_type,
            "category": self.category,
            "is_critical": self.is_critical,
            "generates_observation": self.generates_observation,
            "observation_knowledge_type": self.observation_knowledge_type,
            "requires_photo": self.requires_photo,
            "timing_followup": self.timing_followup,
            "trigger_timing": self.trigger_timing,
            "default_product_id": self.default_product_id,
            "default_technique_id": self.default_technique_id,
            "default_tool_id": self.default_tool_id,
            "script_phase": self.script_phase,
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<SopChecklistItemTemplate {self.sop_id}#{self.step_number}: {self.title[:40]}>"
