"""
Project model — the slice of a job record the callback workflow needs.

Full project CRUD lives outside this package; only the fields that are
cloned into a callback project or read by outcome propagation are modelled.
"""

from fieldlabs.models import db
from fieldlabs.models.base import MetadataMixin, _uuid, iso

__all__ = ["CALLBACK_REASONS", "PROJECT_TYPES", "Project"]


PROJECT_TYPES = frozenset({"standard", "callback"})
CALLBACK_REASONS = frozenset({
    "warranty_claim",
    "quality_issue",
    "customer_complaint",
    "proactive_followup",
})


class Project(MetadataMixin, db.Model):
    """A job. Callback projects point back at the job they remediate."""

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="active")
    client_id = db.Column(db.String(36), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    project_type = db.Column(db.String(60), nullable=True, comment="e.g. flooring, paint, trim")

    # Integration fields
    integration_project_type = db.Column(
        db.String(20), nullable=False, default="standard", comment="standard | callback",
    )
    linked_project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    callback_reason = db.Column(db.String(30), nullable=True)
    callback_reported_at = db.Column(db.DateTime(timezone=True), nullable=True)
    observation_mode_override = db.Column(db.String(20), nullable=True)
    active_experiment_ids = db.Column(db.JSON, nullable=False, default=list)

    # Dates & budget
    start_date = db.Column(db.Date, nullable=True)
    estimated_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    actual_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Columns carried over when a callback project is cloned from its original
    CLONE_FIELDS = ("status", "client_id", "address", "project_type")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "client_id": self.client_id,
            "address": self.address,
            "project_type": self.project_type,
            "integration_project_type": self.integration_project_type,
            "linked_project_id": self.linked_project_id,
            "callback_reason": self.callback_reason,
            "callback_reported_at": iso(self.callback_reported_at),
            "observation_mode_override": self.observation_mode_override,
            "active_experiment_ids": list(self.active_experiment_ids or []),
            "start_date": iso(self.start_date),
            "budget": {
                "estimated_cost": float(self.estimated_cost or 0),
                "actual_cost": float(self.actual_cost or 0),
            },
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<Project {self.id} {self.name} ({self.integration_project_type})>"
