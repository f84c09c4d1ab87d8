"""
Observation Trigger Service

Bridge between the task checklist and Labs observations. When a crew
member checks a checklist step:

    template missing / generates_observation off  → no_observation
    trigger_timing == "on_check"                  → immediate_confirm (draft returned,
                                                    caller must confirm_observation)
    trigger_timing == "batch"                     → queued_batch (PendingBatchObservation)

Batch rows move pending → confirmed | skipped and are terminal after that.

The SOP's observation mode only annotates the draft (requires_* flags);
enforcing those requirements is the capture UI's job.

Usage:
    from fieldlabs.services.observation_trigger import handle_checklist_item_complete

    result = handle_checklist_item_complete(
        checklist_item_id="…", task_id="…", sop_id="…",
        project_id="…", crew_member_id="…",
    )
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from fieldlabs.core.exceptions import InvalidStateError, NotFoundError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.observation import PendingBatchObservation
from fieldlabs.models.sop import Sop, SopChecklistItemTemplate
from fieldlabs.services.field_observation_service import build_observation, schedule_linking

logger = logging.getLogger(__name__)

# Overrides a crew member may supply when confirming a queued draft
_OVERRIDE_FIELDS = (
    "deviated",
    "deviation_fields",
    "deviation_reason",
    "notes",
    "photo_ids",
    "condition_assessment",
)


@dataclass
class ObservationDraft:
    """Pre-filled observation built from checklist template defaults."""

    knowledge_type: str
    product_id: str | None = None
    technique_id: str | None = None
    tool_method_id: str | None = None
    notes: str | None = None
    photo_ids: list[str] = field(default_factory=list)
    condition_assessment: str | None = None
    requires_photo: bool = False
    requires_notes: bool = False
    requires_condition: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ObservationDraft":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class TriggerResult:
    action: str  # immediate_confirm | queued_batch | no_observation
    draft: ObservationDraft | None = None
    pending_batch_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "draft": self.draft.to_dict() if self.draft else None,
            "pending_batch_id": self.pending_batch_id,
        }


@dataclass
class BatchResult:
    total_items: int = 0
    confirmed: int = 0
    skipped: int = 0
    failed: int = 0
    observations_created: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _utcnow():
    return datetime.now(timezone.utc)


def build_draft_from_template(template: SopChecklistItemTemplate, mode: str) -> ObservationDraft:
    """Draft pre-filled from template defaults; ``mode`` sets the requires_* flags."""
    detailed = mode == "detailed"
    return ObservationDraft(
        knowledge_type=template.observation_knowledge_type or "procedure",
        product_id=template.default_product_id,
        technique_id=template.default_technique_id,
        tool_method_id=template.default_tool_id,
        requires_photo=detailed or bool(template.requires_photo),
        requires_notes=detailed,
        requires_condition=detailed,
    )


def _get_pending_or_raise(pending_batch_id: str) -> PendingBatchObservation:
    pending = db.session.get(PendingBatchObservation, pending_batch_id)
    if not pending:
        raise NotFoundError(resource="PendingBatchObservation", resource_id=pending_batch_id)
    return pending


# ── Entry point ──────────────────────────────────────────────────────────────


def handle_checklist_item_complete(
    checklist_item_id: str,
    task_id: str,
    sop_id: str,
    project_id: str,
    crew_member_id: str,
) -> TriggerResult:
    """Route a checked checklist step to the right observation flow."""
    template = db.session.get(SopChecklistItemTemplate, checklist_item_id)
    if not template or not template.generates_observation:
        return TriggerResult(action="no_observation")

    sop = db.session.get(Sop, sop_id)
    mode = sop.default_observation_mode if sop else "standard"
    draft = build_draft_from_template(template, mode)

    if template.trigger_timing == "on_check":
        return TriggerResult(action="immediate_confirm", draft=draft)

    pending = PendingBatchObservation(
        task_id=task_id,
        sop_id=sop_id,
        checklist_item_id=template.id,
        crew_member_id=crew_member_id,
        project_id=project_id,
        draft=draft.to_dict(),
        status="pending",
        queued_at=_utcnow(),
    )
    db.session.add(pending)
    db.session.commit()

    logger.info(
        "Observation queued for batch confirmation",
        extra={"pending_batch_id": pending.id, "task_id": task_id, "sop_id": sop_id},
    )
    return TriggerResult(action="queued_batch", pending_batch_id=pending.id)


# ── Confirmation ─────────────────────────────────────────────────────────────


def confirm_observation(
    draft: ObservationDraft | dict,
    task_id: str,
    project_id: str,
    crew_member_id: str,
    *,
    sop_version_id: str | None = None,
    deviated: bool = False,
    deviation_fields: list[str] | None = None,
    deviation_reason: str | None = None,
    notes: str | None = None,
    photo_ids: list[str] | None = None,
    condition_assessment: str | None = None,
    work_category_code: str | None = None,
    trade: str | None = None,
    stage_code: str | None = None,
    location_id: str | None = None,
    _commit: bool = True,
) -> dict:
    """Create exactly one FieldObservation from a (possibly amended) draft.

    Auto-linking runs as a deferred side effect after commit; its failures
    are logged and never reach the caller. Emits labs.observation_deviated
    when ``deviated`` is set, labs.observation_confirmed otherwise.
    """
    if isinstance(draft, dict):
        draft = ObservationDraft.from_dict(draft)

    observation = build_observation({
        "project_id": project_id,
        "task_id": task_id,
        "crew_member_id": crew_member_id,
        "knowledge_type": draft.knowledge_type,
        "product_id": draft.product_id,
        "technique_id": draft.technique_id,
        "tool_method_id": draft.tool_method_id,
        "capture_method": "automatic",
        "sop_version_id": sop_version_id,
        "notes": notes if notes is not None else draft.notes,
        "photo_ids": photo_ids if photo_ids is not None else draft.photo_ids,
        "condition_assessment": condition_assessment or draft.condition_assessment,
        "deviated": deviated,
        "deviation_fields": deviation_fields,
        "deviation_reason": deviation_reason,
        "work_category_code": work_category_code,
        "trade": trade,
        "stage_code": stage_code,
        "location_id": location_id,
    })
    db.session.add(observation)
    db.session.flush()

    event_type = "labs.observation_deviated" if deviated else "labs.observation_confirmed"
    log_activity(
        event_type,
        entity_type="observation",
        entity_id=observation.id,
        project_id=project_id,
        summary=f"{observation.knowledge_type} observation",
        event_data={
            "knowledge_type": observation.knowledge_type,
            "task_id": task_id,
            "deviated": deviated,
            "deviation_fields": deviation_fields,
            "work_category_code": work_category_code,
            "trade": trade,
            "stage_code": stage_code,
        },
    )

    if _commit:
        db.session.commit()
        schedule_linking(observation.id)

    logger.info(
        "Observation confirmed%s", " (deviated)" if deviated else "",
        extra={"observation_id": observation.id, "project_id": project_id, "task_id": task_id},
    )
    return observation.to_dict()


def confirm_batch_item(pending_batch_id: str, overrides: dict | None = None) -> dict:
    """Confirm one queued draft, optionally amending it.

    Raises:
        NotFoundError: No such pending row.
        InvalidStateError: Row already confirmed or skipped.
    """
    pending = _get_pending_or_raise(pending_batch_id)
    if pending.status != "pending":
        raise InvalidStateError(
            resource="PendingBatchObservation",
            resource_id=pending_batch_id,
            current=pending.status,
            action="confirm",
            reason="batch item already processed",
        )

    overrides = {k: v for k, v in (overrides or {}).items() if k in _OVERRIDE_FIELDS and v is not None}
    try:
        observation = confirm_observation(
            dict(pending.draft),
            pending.task_id,
            pending.project_id,
            pending.crew_member_id,
            sop_version_id=pending.sop_id,
            _commit=False,
            **overrides,
        )
        pending.status = "confirmed"
        pending.processed_at = _utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    schedule_linking(observation["id"])
    return observation


def skip_batch_item(pending_batch_id: str) -> dict:
    """Mark a queued draft as skipped; no observation is created.

    Raises:
        NotFoundError: No such pending row.
        InvalidStateError: Row already confirmed or skipped.
    """
    pending = _get_pending_or_raise(pending_batch_id)
    if pending.status != "pending":
        raise InvalidStateError(
            resource="PendingBatchObservation",
            resource_id=pending_batch_id,
            current=pending.status,
            action="skip",
            reason="batch item already processed",
        )
    pending.status = "skipped"
    pending.processed_at = _utcnow()
    log_activity(
        "labs.batch_item_skipped",
        entity_type="pending_batch_observation",
        entity_id=pending.id,
        project_id=pending.project_id,
        summary="Batch observation skipped",
        event_data={"task_id": pending.task_id, "checklist_item_id": pending.checklist_item_id},
    )
    db.session.commit()
    return pending.to_dict()


def confirm_all_batch(task_id: str) -> BatchResult:
    """Confirm every pending draft of a task, one at a time.

    Each confirmation commits on its own: a failure is counted and logged,
    earlier confirmations stay. One labs.batch_processed event summarises
    the run.
    """
    pending_rows = get_batch_queue_rows(task_id)
    result = BatchResult(total_items=len(pending_rows))
    project_id = pending_rows[0].project_id if pending_rows else None
    pending_ids = [row.id for row in pending_rows]

    for pending_id in pending_ids:
        try:
            observation = confirm_batch_item(pending_id)
        except Exception as exc:
            result.failed += 1
            result.errors.append({"pending_batch_id": pending_id, "error": str(exc)})
            logger.warning(
                "Batch confirmation failed: %s", exc,
                extra={"pending_batch_id": pending_id, "task_id": task_id},
            )
            continue
        result.confirmed += 1
        result.observations_created.append(observation["id"])

    log_activity(
        "labs.batch_processed",
        entity_type="task",
        entity_id=task_id,
        project_id=project_id,
        summary=f"Batch: {result.confirmed} confirmed, {result.skipped} skipped",
        event_data={
            "total_items": result.total_items,
            "confirmed": result.confirmed,
            "skipped": result.skipped,
            "failed": result.failed,
        },
    )
    db.session.commit()
    return result


def clear_processed_batch(task_id: str) -> int:
    """Delete every non-pending batch row for a task. Returns the count."""
    deleted = (
        PendingBatchObservation.query
        .filter(
            PendingBatchObservation.task_id == task_id,
            PendingBatchObservation.status != "pending",
        )
        .delete(synchronize_session="fetch")
    )
    db.session.commit()
    return deleted


# ── Reads ────────────────────────────────────────────────────────────────────


def get_batch_queue_rows(task_id: str) -> list[PendingBatchObservation]:
    return (
        PendingBatchObservation.query
        .filter_by(task_id=task_id, status="pending")
        .order_by(PendingBatchObservation.queued_at)
        .all()
    )


def get_batch_queue(task_id: str) -> list[dict]:
    """Pending drafts for a task, oldest first."""
    return [row.to_dict() for row in get_batch_queue_rows(task_id)]


def get_pending_batch_count(task_id: str | None = None) -> int:
    q = PendingBatchObservation.query.filter_by(status="pending")
    if task_id:
        q = q.filter_by(task_id=task_id)
    return q.count()
