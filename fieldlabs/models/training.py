"""
Training domain model — per crew member, per SOP certification progress.

Certification flow:
    in_progress → review_ready (automatic, after N supervised completions)
                → certified    (manual sign-off only — never automatic)

supervised_completions and review_attempts are append-only JSON lists;
services always assign a new list so SQLAlchemy sees the change.
"""

from fieldlabs.models import db
from fieldlabs.models.base import MetadataMixin, _uuid, iso

__all__ = ["TRAINING_STATUSES", "TrainingRecord"]


TRAINING_STATUSES = ("in_progress", "review_ready", "certified")


class TrainingRecord(MetadataMixin, db.Model):
    """Training progress of one crew member against one SOP version."""

    __tablename__ = "training_records"
    __table_args__ = (
        db.UniqueConstraint("crew_member_id", "sop_id", name="uq_training_crew_sop"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    crew_member_id = db.Column(db.String(36), nullable=False, index=True)
    sop_id = db.Column(db.String(36), nullable=False, index=True)
    sop_code = db.Column(db.String(30), nullable=False, default="UNKNOWN")
    status = db.Column(
        db.String(20), nullable=False, default="in_progress",
        comment="in_progress | review_ready | certified",
    )
    supervised_completions = db.Column(
        db.JSON, nullable=False, default=list,
        comment="[{taskId, projectId, completedAt, supervisorId, supervisorName, notes}]",
    )
    review_attempts = db.Column(
        db.JSON, nullable=False, default=list,
        comment="[{attemptNumber, date, score, passed, reviewedBy, notes}]",
    )
    certified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    certified_by = db.Column(db.String(100), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "crew_member_id": self.crew_member_id,
            "sop_id": self.sop_id,
            "sop_code": self.sop_code,
            "status": self.status,
            "supervised_completions": list(self.supervised_completions or []),
            "review_attempts": list(self.review_attempts or []),
            "certified_at": iso(self.certified_at),
            "certified_by": self.certified_by,
            "metadata": self.metadata_dict(),
        }

    def __repr__(self):
        return f"<TrainingRecord crew={self.crew_member_id} sop={self.sop_code} {self.status}>"
