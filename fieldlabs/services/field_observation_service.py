"""Field observation service — creation and reads.

Observations are immutable once written; there is no update
function here (callback propagation is the single sanctioned amendment and
lives in callback_project). Every creation path schedules auto-linking as a
deferred side effect, so a linker failure never fails the creation.
"""

from __future__ import annotations

import logging

from fieldlabs.core.exceptions import NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.observation import CAPTURE_METHODS, CONDITION_ASSESSMENTS, FieldObservation
from fieldlabs.models.sop import KNOWLEDGE_TYPES
from fieldlabs.services.observation_linking import auto_link_observation_id
from fieldlabs.services.side_effects import get_side_effects

logger = logging.getLogger(__name__)

_OPTIONAL_FIELDS = (
    "task_id",
    "product_id",
    "technique_id",
    "tool_method_id",
    "combination_id",
    "work_category_code",
    "trade",
    "stage_code",
    "location_id",
    "sop_version_id",
    "condition_assessment",
    "deviation_reason",
)


def build_observation(data: dict) -> FieldObservation:
    """Validate ``data`` and return an unsaved FieldObservation.

    Raises:
        ValidationError: Missing project/crew/knowledge type or invalid enums.
    """
    missing = [f for f in ("project_id", "crew_member_id", "knowledge_type") if not data.get(f)]
    if missing:
        raise ValidationError(
            f"Missing required observation fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    if data["knowledge_type"] not in KNOWLEDGE_TYPES:
        raise ValidationError(
            f"knowledge_type must be one of: {', '.join(sorted(KNOWLEDGE_TYPES))}",
            details={"knowledge_type": "invalid"},
        )
    capture_method = data.get("capture_method") or "manual"
    if capture_method not in CAPTURE_METHODS:
        raise ValidationError(
            f"capture_method must be one of: {', '.join(sorted(CAPTURE_METHODS))}",
            details={"capture_method": "invalid"},
        )
    condition = data.get("condition_assessment")
    if condition and condition not in CONDITION_ASSESSMENTS:
        raise ValidationError(
            f"condition_assessment must be one of: {', '.join(sorted(CONDITION_ASSESSMENTS))}",
            details={"condition_assessment": "invalid"},
        )

    return FieldObservation(
        project_id=data["project_id"],
        crew_member_id=data["crew_member_id"],
        knowledge_type=data["knowledge_type"],
        capture_method=capture_method,
        notes=(data.get("notes") or "").strip() or None,
        photo_ids=list(data.get("photo_ids") or []),
        deviated=bool(data.get("deviated", False)),
        deviation_fields=list(data.get("deviation_fields") or []),
        **{f: data.get(f) or None for f in _OPTIONAL_FIELDS},
    )


def schedule_linking(observation_id: str) -> None:
    """Hand auto-linking to the side-effect queue (never raises)."""
    get_side_effects().submit("observation_linking", auto_link_observation_id, observation_id)


def create_observation(data: dict) -> dict:
    """Create a manually captured observation and schedule auto-linking."""
    observation = build_observation(data)
    db.session.add(observation)
    db.session.flush()

    log_activity(
        "labs.observation_created",
        entity_type="observation",
        entity_id=observation.id,
        project_id=observation.project_id,
        summary=f"{observation.knowledge_type} observation",
        event_data={
            "knowledge_type": observation.knowledge_type,
            "capture_method": observation.capture_method,
            "work_category_code": observation.work_category_code,
            "trade": observation.trade,
            "stage_code": observation.stage_code,
        },
    )
    db.session.commit()

    logger.info(
        "Observation created",
        extra={"observation_id": observation.id, "project_id": observation.project_id},
    )
    schedule_linking(observation.id)
    return observation.to_dict()


def get_observation(observation_id: str) -> dict:
    observation = db.session.get(FieldObservation, observation_id)
    if not observation:
        raise NotFoundError(resource="FieldObservation", resource_id=observation_id)
    return observation.to_dict()


def list_by_project(project_id: str) -> list[dict]:
    rows = (
        FieldObservation.query
        .filter_by(project_id=project_id)
        .order_by(FieldObservation.created_at)
        .all()
    )
    return [r.to_dict() for r in rows]


def list_by_task(task_id: str) -> list[dict]:
    rows = FieldObservation.query.filter_by(task_id=task_id).order_by(FieldObservation.created_at).all()
    return [r.to_dict() for r in rows]
