"""
Training / certification tracker.

One TrainingRecord per (crew member, SOP version). Transitions:

    in_progress ──(N supervised completions)──▶ review_ready
    in_progress | review_ready ──(certify)──▶ certified

N is the SOP's required_supervised_completions, falling back to
DEFAULT_REQUIRED_SUPERVISED_COMPLETIONS when the SOP is unknown. Review
attempts are recorded for audit but never move the status; certification
is always an explicit sign-off. Nothing moves a record backwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from fieldlabs.core.exceptions import InvalidStateError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.sop import Sop
from fieldlabs.models.training import TrainingRecord

logger = logging.getLogger(__name__)

_COMPLETION_FIELDS = ("taskId", "projectId", "completedAt", "supervisorId", "supervisorName", "notes")
_ATTEMPT_FIELDS = ("date", "score", "passed", "reviewedBy", "notes")


def _required_completions(sop: Sop | None) -> int:
    default = current_app.config.get("DEFAULT_REQUIRED_SUPERVISED_COMPLETIONS", 3)
    if sop is None or not sop.required_supervised_completions:
        return default
    return sop.required_supervised_completions


def _find(crew_member_id: str, sop_id: str) -> TrainingRecord | None:
    return TrainingRecord.query.filter_by(crew_member_id=crew_member_id, sop_id=sop_id).first()


def _get_or_create_record(crew_member_id: str, sop_id: str) -> TrainingRecord:
    record = _find(crew_member_id, sop_id)
    if record:
        return record

    sop = db.session.get(Sop, sop_id)
    record = TrainingRecord(
        crew_member_id=crew_member_id,
        sop_id=sop_id,
        sop_code=sop.sop_code if sop else "UNKNOWN",
        status="in_progress",
        supervised_completions=[],
        review_attempts=[],
    )
    try:
        with db.session.begin_nested():
            db.session.add(record)
    except IntegrityError:
        # Lost a race with another writer for the same pair
        existing = _find(crew_member_id, sop_id)
        if existing is None:
            raise
        return existing

    logger.info(
        "Training record opened",
        extra={"crew_member_id": crew_member_id, "sop_id": sop_id, "training_record_id": record.id},
    )
    return record


def get_or_create(crew_member_id: str, sop_id: str) -> dict:
    """Return the crew member's record for an SOP, creating it if needed."""
    record = _get_or_create_record(crew_member_id, sop_id)
    db.session.commit()
    return record.to_dict()


def find_by_crew_and_sop(crew_member_id: str, sop_id: str) -> dict | None:
    record = _find(crew_member_id, sop_id)
    return record.to_dict() if record else None


def record_supervised_completion(crew_member_id: str, sop_id: str, completion: dict) -> dict:
    """Append a supervised completion; promote to review_ready at the threshold."""
    if not completion.get("taskId"):
        raise ValidationError("taskId is required", details={"taskId": "required"})

    record = _get_or_create_record(crew_member_id, sop_id)
    entry = {f: completion.get(f) for f in _COMPLETION_FIELDS}
    entry["completedAt"] = entry["completedAt"] or datetime.now(timezone.utc).isoformat()
    record.supervised_completions = [*(record.supervised_completions or []), entry]

    log_activity(
        "training.supervised_completion",
        entity_type="training_record",
        entity_id=record.id,
        project_id=entry.get("projectId"),
        summary=f"Supervised completion {len(record.supervised_completions)} for {record.sop_code}",
        event_data={"crew_member_id": crew_member_id, "sop_id": sop_id, "task_id": entry["taskId"]},
    )

    required = _required_completions(db.session.get(Sop, sop_id))
    if record.status == "in_progress" and len(record.supervised_completions) >= required:
        record.status = "review_ready"
        log_activity(
            "training.review_ready",
            entity_type="training_record",
            entity_id=record.id,
            summary=f"{record.sop_code} ready for review",
            event_data={"crew_member_id": crew_member_id, "sop_id": sop_id, "completions": required},
        )
        logger.info(
            "Training record ready for review",
            extra={"training_record_id": record.id, "crew_member_id": crew_member_id},
        )

    db.session.commit()
    return record.to_dict()


def record_review_attempt(crew_member_id: str, sop_id: str, attempt: dict) -> dict:
    """Append a review attempt. Status is unaffected, pass or fail."""
    record = _get_or_create_record(crew_member_id, sop_id)
    entry = {"attemptNumber": len(record.review_attempts or []) + 1}
    entry.update({f: attempt.get(f) for f in _ATTEMPT_FIELDS})
    entry["date"] = entry["date"] or datetime.now(timezone.utc).isoformat()
    entry["passed"] = bool(entry["passed"])
    record.review_attempts = [*(record.review_attempts or []), entry]

    log_activity(
        "training.review_completed",
        entity_type="training_record",
        entity_id=record.id,
        summary=f"Review attempt {entry['attemptNumber']} for {record.sop_code}",
        event_data={
            "crew_member_id": crew_member_id,
            "sop_id": sop_id,
            "score": entry["score"],
            "passed": entry["passed"],
        },
    )
    db.session.commit()
    return record.to_dict()


def certify(crew_member_id: str, sop_id: str, certified_by: str) -> dict:
    """Sign off a crew member on an SOP.

    Raises:
        ValidationError: certified_by is blank.
        InvalidStateError: Already certified.
    """
    if not (certified_by or "").strip():
        raise ValidationError("certified_by is required", details={"certified_by": "required"})

    record = _get_or_create_record(crew_member_id, sop_id)
    if record.status == "certified":
        raise InvalidStateError(
            resource="TrainingRecord",
            resource_id=record.id,
            current=record.status,
            action="certify",
        )

    record.status = "certified"
    record.certified_at = datetime.now(timezone.utc)
    record.certified_by = certified_by.strip()
    log_activity(
        "training.certified",
        entity_type="training_record",
        entity_id=record.id,
        summary=f"Certified on {record.sop_code}",
        event_data={"crew_member_id": crew_member_id, "sop_id": sop_id, "certified_by": record.certified_by},
    )
    db.session.commit()
    logger.info(
        "Crew member certified",
        extra={"training_record_id": record.id, "crew_member_id": crew_member_id, "sop_id": sop_id},
    )
    return record.to_dict()


def is_certified(crew_member_id: str, sop_id: str) -> bool:
    record = _find(crew_member_id, sop_id)
    return bool(record and record.status == "certified")


# ── Summaries ────────────────────────────────────────────────────────────────


def get_crew_training_summary(crew_member_id: str) -> dict:
    """All of a crew member's records plus per-status counts."""
    records = (
        TrainingRecord.query
        .filter_by(crew_member_id=crew_member_id)
        .order_by(TrainingRecord.created_at)
        .all()
    )
    counts = {"in_progress": 0, "review_ready": 0, "certified": 0}
    for r in records:
        counts[r.status] = counts.get(r.status, 0) + 1
    return {
        "crew_member_id": crew_member_id,
        "total": len(records),
        "by_status": counts,
        "certified_sop_codes": sorted({r.sop_code for r in records if r.status == "certified"}),
        "records": [r.to_dict() for r in records],
    }


def get_sop_training_status(sop_id: str) -> dict:
    """Crew members grouped by training status for one SOP version."""
    records = TrainingRecord.query.filter_by(sop_id=sop_id).order_by(TrainingRecord.created_at).all()
    grouped = {"in_progress": [], "review_ready": [], "certified": []}
    for r in records:
        grouped.setdefault(r.status, []).append(r.crew_member_id)
    return {"sop_id": sop_id, "total": len(records), "crew_by_status": grouped}
