"""
Callback project service.

A callback is a return visit to fix or follow up on a finished job. It is
modelled as its own project (integration_project_type="callback") pointing
at the original through linked_project_id.

Outcome propagation writes what the callback found back onto the original
job's observations, so the knowledge behind a failed install carries the
failure. An original observation is related to a callback observation when
both share a knowledge_type and the same product, technique or tool id.

propagate_callback_outcomes() returns the number of distinct original
observations it annotated, not the number of matching (callback, original)
pairs: an original matched by two callback observations gets two note lines
but counts once.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timezone

from fieldlabs.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.observation import FieldObservation
from fieldlabs.models.project import CALLBACK_REASONS, Project

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_NOTE = "Issue identified during callback"

# Observation columns that relate an original observation to a callback one
_MATCH_AXES = ("product_id", "technique_id", "tool_method_id")


def _get_project_or_raise(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def create_callback_project(original_project_id, reason, name):
    """Open a callback project cloned from the original job.

    Raises:
        NotFoundError: Original project missing.
        ValidationError: Unknown callback reason or blank name.
    """
    if reason not in CALLBACK_REASONS:
        raise ValidationError(
            f"callback_reason must be one of: {', '.join(sorted(CALLBACK_REASONS))}",
            details={"callback_reason": "invalid"},
        )
    if not (name or "").strip():
        raise ValidationError("name is required", details={"name": "required"})

    original = _get_project_or_raise(original_project_id)
    callback = Project(
        name=name.strip(),
        **{f: getattr(original, f) for f in Project.CLONE_FIELDS},
        integration_project_type="callback",
        linked_project_id=original.id,
        callback_reason=reason,
        callback_reported_at=datetime.now(timezone.utc),
        observation_mode_override=None,
        active_experiment_ids=[],
        start_date=date.today(),
        estimated_cost=0,
        actual_cost=0,
    )
    db.session.add(callback)
    db.session.flush()

    log_activity(
        "project.callback_created",
        entity_type="project",
        entity_id=callback.id,
        project_id=original.id,
        summary=f"Callback '{callback.name}' opened ({reason})",
        event_data={"callback_project_id": callback.id, "callback_reason": reason},
    )
    db.session.commit()
    logger.info(
        "Callback project created",
        extra={"project_id": callback.id, "linked_project_id": original.id},
    )
    return callback.to_dict()


def _index_observations(observations):
    """Map (knowledge_type, axis, id) → observations carrying that reference."""
    index = defaultdict(list)
    for obs in observations:
        for axis in _MATCH_AXES:
            value = getattr(obs, axis)
            if value:
                index[(obs.knowledge_type, axis, value)].append(obs)
    return index


def _related(original, index):
    """Callback observations related to ``original``, in capture order, once each."""
    seen = set()
    matches = []
    for axis in _MATCH_AXES:
        value = getattr(original, axis)
        if not value:
            continue
        for obs in index.get((original.knowledge_type, axis, value), ()):
            if obs.id not in seen:
                seen.add(obs.id)
                matches.append(obs)
    matches.sort(key=lambda o: (o.created_at, o.id))
    return matches


def propagate_callback_outcomes(callback_project_id):
    """Annotate the original job's observations with callback findings.

    Each related callback observation appends one line
    ``[CALLBACK <reason>]: <notes>`` to the original observation's notes and
    marks it capture_method="callback".

    Returns:
        Number of original observations annotated.

    Raises:
        NotFoundError: Callback project missing.
        InvalidStateError: Project is not a callback or has no linked project.
    """
    callback = _get_project_or_raise(callback_project_id)
    if callback.integration_project_type != "callback" or not callback.linked_project_id:
        raise InvalidStateError(
            resource="Project",
            resource_id=callback_project_id,
            current=callback.integration_project_type,
            action="propagate_callback_outcomes",
            reason="not a callback project with a linked original",
        )

    callback_obs = FieldObservation.query.filter_by(project_id=callback.id).all()
    original_obs = (
        FieldObservation.query
        .filter_by(project_id=callback.linked_project_id)
        .order_by(FieldObservation.created_at)
        .all()
    )
    index = _index_observations(callback_obs)

    updated = 0
    try:
        for original in original_obs:
            related = _related(original, index)
            if not related:
                continue
            lines = [
                f"[CALLBACK {callback.callback_reason}]: {obs.notes or DEFAULT_CALLBACK_NOTE}"
                for obs in related
            ]
            original.notes = "\n".join([original.notes, *lines] if original.notes else lines)
            original.capture_method = "callback"
            updated += 1

        log_activity(
            "project.callback_propagated",
            entity_type="project",
            entity_id=callback.id,
            project_id=callback.linked_project_id,
            summary=f"Callback outcomes applied to {updated} observation(s)",
            event_data={
                "callback_reason": callback.callback_reason,
                "callback_observations": len(callback_obs),
                "updated_observations": updated,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Callback outcomes propagated to %d observation(s)", updated,
        extra={"project_id": callback.id},
    )
    return updated


def get_callbacks_for_project(original_project_id):
    """Callback projects opened against a job, oldest first."""
    rows = (
        Project.query
        .filter_by(linked_project_id=original_project_id, integration_project_type="callback")
        .order_by(Project.created_at)
        .all()
    )
    return [p.to_dict() for p in rows]
