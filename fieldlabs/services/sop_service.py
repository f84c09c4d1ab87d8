"""SOP service — lifecycle, versioning and checklist template management.

Versioning:
  sop_code identifies a procedure across versions. create_new_version()
  supersedes the current row, inserts version N+1 and copies the checklist.
  The three steps share one transaction: on any failure nothing is written,
  so a sop_code can never be left with zero or two current versions.

Checklist ordering:
  step_number is 1-based and contiguous per SOP. Insert and remove shift the
  later steps in the same transaction as the insert/delete itself; a partial
  renumbering is never committed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from fieldlabs.core.exceptions import ConflictError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.sop import (
    CERTIFICATION_LEVELS,
    CHECKLIST_CATEGORIES,
    CHECKLIST_TYPES,
    KNOWLEDGE_TYPES,
    OBSERVATION_MODES,
    SCRIPT_PHASES,
    SOP_STATUSES,
    TRIGGER_TIMINGS,
    Sop,
    SopChecklistItemTemplate,
)

logger = logging.getLogger(__name__)

# Fields a new version may override; anything absent is inherited
_VERSION_PATCH_FIELDS = (
    "title",
    "description",
    "effective_date",
    "default_observation_mode",
    "certification_level",
    "required_supervised_completions",
    "review_question_count",
    "review_pass_threshold",
    "field_guide_ref",
    "status",
    "created_by",
)

# Inherited verbatim from the superseded version, never patchable
_VERSION_FIXED_FIELDS = ("sop_code", "trade_family")

_CHECKLIST_EDITABLE_FIELDS = (
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


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _get_sop_or_raise(sop_id: str) -> Sop:
    sop = db.session.get(Sop, sop_id)
    if not sop:
        raise NotFoundError(resource="Sop", resource_id=sop_id)
    return sop


def _get_item_or_raise(item_id: str) -> SopChecklistItemTemplate:
    item = db.session.get(SopChecklistItemTemplate, item_id)
    if not item:
        raise NotFoundError(resource="SopChecklistItemTemplate", resource_id=item_id)
    return item


def _current_row(sop_code: str) -> Sop | None:
    return Sop.query.filter_by(sop_code=sop_code, is_current=True).first()


def _items_for(sop_id: str) -> list[SopChecklistItemTemplate]:
    return (
        SopChecklistItemTemplate.query
        .filter_by(sop_id=sop_id)
        .order_by(SopChecklistItemTemplate.step_number)
        .all()
    )


def _check_enum(data: dict, field: str, allowed: frozenset) -> None:
    value = data.get(field)
    if value is not None and value not in allowed:
        raise ValidationError(
            f"{field} must be one of: {', '.join(sorted(allowed))}",
            details={field: "invalid"},
        )


def _check_positive_int(data: dict, field: str) -> None:
    value = data.get(field)
    if value is None:
        return
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", details={field: "invalid"})


def _validate_sop_fields(data: dict) -> None:
    _check_enum(data, "status", SOP_STATUSES)
    _check_enum(data, "default_observation_mode", OBSERVATION_MODES)
    _check_enum(data, "certification_level", CERTIFICATION_LEVELS)
    for field in ("required_supervised_completions", "review_question_count", "review_pass_threshold"):
        _check_positive_int(data, field)
    threshold = data.get("review_pass_threshold")
    if threshold is not None and threshold > 100:
        raise ValidationError("review_pass_threshold must be ≤ 100", details={"review_pass_threshold": "invalid"})


def _validate_checklist_fields(data: dict) -> None:
    _check_enum(data, "checklist_type", CHECKLIST_TYPES)
    _check_enum(data, "category", CHECKLIST_CATEGORIES)
    _check_enum(data, "trigger_timing", TRIGGER_TIMINGS)
    _check_enum(data, "observation_knowledge_type", KNOWLEDGE_TYPES)
    _check_enum(data, "script_phase", SCRIPT_PHASES)


def _build_checklist_item(sop_id: str, step_number: int, data: dict) -> SopChecklistItemTemplate:
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    _validate_checklist_fields(data)

    fields = {k: data[k] for k in _CHECKLIST_EDITABLE_FIELDS if k in data}
    fields["title"] = title
    return SopChecklistItemTemplate(sop_id=sop_id, step_number=step_number, **fields)


def _commit_or_rollback() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _log_checklist_change(sop_id: str, action: str, item_id: str | None = None,
                          step_number: int | None = None) -> None:
    summary = f"Checklist item {action}"
    if step_number is not None:
        summary += f" at step {step_number}"
    log_activity(
        "labs.sop_checklist_changed",
        entity_type="sop",
        entity_id=sop_id,
        summary=summary,
        event_data={"action": action, "item_id": item_id, "step_number": step_number},
    )


# ---------------------------------------------------------------------------
# SOP lifecycle
# ---------------------------------------------------------------------------


def create_sop(data: dict) -> dict:
    """Create a new SOP as version 1 and make it current.

    Business rules:
        - sop_code, title and trade_family are required.
        - A sop_code that already has a current version must go through
          create_new_version() instead.
        - Enum fields are validated against the sop model constants.

    Raises:
        ValidationError: Missing required fields, invalid enum values, or a
            current version already exists for sop_code.
        ConflictError: An archived version 1 of sop_code already exists.
    """
    sop_code = (data.get("sop_code") or "").strip()
    title = (data.get("title") or "").strip()
    trade_family = (data.get("trade_family") or "").strip()

    missing = [name for name, value in (
        ("sop_code", sop_code), ("title", title), ("trade_family", trade_family),
    ) if not value]
    if missing:
        raise ValidationError(
            f"Missing required SOP fields: {', '.join(missing)}",
            details={name: "required" for name in missing},
        )
    _validate_sop_fields(data)

    if _current_row(sop_code):
        raise ValidationError(
            f"SOP {sop_code} already exists; publish a new version instead",
            details={"sop_code": "exists"},
        )

    sop = Sop(
        sop_code=sop_code,
        title=title,
        description=(data.get("description") or "").strip() or None,
        trade_family=trade_family,
        version=1,
        version_notes=data.get("version_notes"),
        previous_version_id=None,
        is_current=True,
        superseded_date=None,
        default_observation_mode=data.get("default_observation_mode", "standard"),
        certification_level=data.get("certification_level", "apprentice"),
        required_supervised_completions=data.get("required_supervised_completions", 3),
        review_question_count=data.get("review_question_count", 10),
        review_pass_threshold=data.get("review_pass_threshold", 80),
        field_guide_ref=data.get("field_guide_ref"),
        status=data.get("status", "draft"),
        created_by=data.get("created_by"),
    )
    if data.get("effective_date"):
        sop.effective_date = data["effective_date"]
    db.session.add(sop)
    try:
        db.session.flush()
    except IntegrityError:
        # An archived lineage still owns version 1 of this code
        db.session.rollback()
        raise ConflictError(resource="Sop", field="sop_code", value=sop_code) from None

    log_activity(
        "labs.sop_created",
        entity_type="sop",
        entity_id=sop.id,
        summary=f"{sop.sop_code} — {sop.title}",
        event_data={"sop_code": sop.sop_code, "trade_family": sop.trade_family},
    )
    _commit_or_rollback()

    logger.info("SOP created", extra={"sop_id": sop.id, "sop_code": sop.sop_code})
    return sop.to_dict()


def create_new_version(sop_code: str, patch: dict | None, version_notes: str) -> dict:
    """Publish version N+1 of an SOP.

    Steps (single transaction):
        1. Supersede the current version (is_current=False, superseded_date=now).
        2. Insert the new version, inheriting every field absent from ``patch``.
        3. Copy every checklist template, preserving step numbers and defaults.

    Raises:
        NotFoundError: No current version exists for sop_code.
        ValidationError: Patch contains invalid values.
    """
    patch = patch or {}
    current = _current_row(sop_code)
    if not current:
        raise NotFoundError(resource="Sop", resource_id=sop_code)

    if "title" in patch and not (patch["title"] or "").strip():
        raise ValidationError("title cannot be empty", details={"title": "required"})
    _validate_sop_fields(patch)

    now = datetime.now(timezone.utc)
    previous_items = _items_for(current.id)

    try:
        current.is_current = False
        current.superseded_date = now
        # Flush the supersede first so the new row never coexists as a second current
        db.session.flush()

        fields = {f: getattr(current, f) for f in _VERSION_PATCH_FIELDS + _VERSION_FIXED_FIELDS}
        fields.update({f: patch[f] for f in _VERSION_PATCH_FIELDS if f in patch})
        if "effective_date" not in patch:
            fields["effective_date"] = now

        new_sop = Sop(
            **fields,
            version=current.version + 1,
            version_notes=version_notes,
            previous_version_id=current.id,
            is_current=True,
            superseded_date=None,
        )
        db.session.add(new_sop)
        db.session.flush()

        for item in previous_items:
            db.session.add(SopChecklistItemTemplate(
                sop_id=new_sop.id,
                **{f: getattr(item, f) for f in SopChecklistItemTemplate.COPY_FIELDS},
            ))
        db.session.flush()
    except Exception:
        db.session.rollback()
        logger.exception("SOP versioning rolled back", extra={"sop_code": sop_code})
        raise

    log_activity(
        "labs.sop_version_created",
        entity_type="sop",
        entity_id=new_sop.id,
        summary=f"{new_sop.sop_code} v{new_sop.version}",
        event_data={
            "sop_code": new_sop.sop_code,
            "previous_version_id": current.id,
            "version_notes": version_notes,
            "checklist_items_copied": len(previous_items),
        },
    )
    _commit_or_rollback()

    logger.info(
        "SOP version %d published", new_sop.version,
        extra={"sop_id": new_sop.id, "sop_code": new_sop.sop_code},
    )
    return new_sop.to_dict()


def archive_sop(sop_id: str) -> dict:
    """Archive an SOP version (status=archived, is_current=False).

    Raises:
        NotFoundError: SOP does not exist.
    """
    sop = _get_sop_or_raise(sop_id)
    sop.status = "archived"
    sop.is_current = False
    db.session.flush()

    log_activity(
        "labs.sop_archived",
        entity_type="sop",
        entity_id=sop.id,
        summary=f"{sop.sop_code} — {sop.title}",
        event_data={"sop_code": sop.sop_code, "version": sop.version},
    )
    _commit_or_rollback()

    logger.info("SOP archived", extra={"sop_id": sop.id, "sop_code": sop.sop_code})
    return sop.to_dict()


# ---------------------------------------------------------------------------
# Checklist template management
# ---------------------------------------------------------------------------


def add_checklist_item(sop_id: str, data: dict) -> dict:
    """Append a checklist item at max(step_number) + 1."""
    _get_sop_or_raise(sop_id)
    max_step = db.session.execute(
        select(func.max(SopChecklistItemTemplate.step_number))
        .where(SopChecklistItemTemplate.sop_id == sop_id)
    ).scalar()

    item = _build_checklist_item(sop_id, (max_step or 0) + 1, data)
    db.session.add(item)
    db.session.flush()
    _log_checklist_change(sop_id, "added", item.id, item.step_number)
    _commit_or_rollback()
    return item.to_dict()


def insert_checklist_item(sop_id: str, data: dict, after_step_number: int) -> dict:
    """Insert a checklist item after ``after_step_number``.

    Every later item is shifted by +1 first. ``after_step_number=0`` inserts
    at the top; a value past the end appends.

    Raises:
        NotFoundError: SOP does not exist.
        ValidationError: Negative position or invalid item data.
    """
    _get_sop_or_raise(sop_id)
    if after_step_number < 0:
        raise ValidationError("after_step_number must be ≥ 0", details={"after_step_number": "invalid"})

    existing = _items_for(sop_id)
    position = min(after_step_number, len(existing)) + 1
    item = _build_checklist_item(sop_id, position, data)

    try:
        for other in existing:
            if other.step_number >= position:
                other.step_number += 1
        db.session.add(item)
        db.session.flush()
        _log_checklist_change(sop_id, "inserted", item.id, position)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Checklist item inserted at step %d", position,
        extra={"sop_id": sop_id},
    )
    return item.to_dict()


def remove_checklist_item(item_id: str) -> None:
    """Delete a checklist item and close the gap in step numbers.

    Raises:
        NotFoundError: Item does not exist.
    """
    item = _get_item_or_raise(item_id)
    sop_id = item.sop_id
    removed_step = item.step_number

    try:
        db.session.delete(item)
        db.session.flush()
        for other in _items_for(sop_id):
            if other.step_number > removed_step:
                other.step_number -= 1
        _log_checklist_change(sop_id, "removed", item_id, removed_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Checklist item removed from step %d", removed_step, extra={"sop_id": sop_id})


def update_checklist_item(item_id: str, data: dict) -> dict:
    """Update a checklist item's content. Position changes go through reorder."""
    item = _get_item_or_raise(item_id)
    if "step_number" in data:
        raise ValidationError(
            "step_number cannot be edited directly; use reorder_checklist_items",
            details={"step_number": "read_only"},
        )
    if "title" in data and not (data["title"] or "").strip():
        raise ValidationError("title cannot be empty", details={"title": "required"})
    _validate_checklist_fields(data)

    for field in _CHECKLIST_EDITABLE_FIELDS:
        if field in data:
            setattr(item, field, data[field].strip() if field == "title" else data[field])
    db.session.flush()
    _log_checklist_change(item.sop_id, "updated", item.id, item.step_number)
    _commit_or_rollback()
    return item.to_dict()


def reorder_checklist_items(sop_id: str, item_ids: list[str]) -> list[dict]:
    """Renumber a SOP's checklist 1..N following ``item_ids`` order.

    Raises:
        NotFoundError: SOP does not exist.
        ValidationError: item_ids is not exactly the SOP's checklist.
    """
    _get_sop_or_raise(sop_id)
    items = {i.id: i for i in _items_for(sop_id)}
    if len(item_ids) != len(set(item_ids)) or set(item_ids) != set(items):
        raise ValidationError(
            "item_ids must list every checklist item of the SOP exactly once",
            details={"item_ids": "mismatch"},
        )

    try:
        for position, item_id in enumerate(item_ids, start=1):
            items[item_id].step_number = position
        db.session.flush()
        _log_checklist_change(sop_id, "reordered")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return [i.to_dict() for i in _items_for(sop_id)]


# ---------------------------------------------------------------------------
# Query helpers for the observation trigger pipeline
# ---------------------------------------------------------------------------


def get_observation_config(sop_id: str) -> dict:
    """Return the SOP, its observation-generating steps and its default mode.

    Raises:
        NotFoundError: SOP does not exist.
    """
    sop = _get_sop_or_raise(sop_id)
    items = (
        SopChecklistItemTemplate.query
        .filter_by(sop_id=sop_id, generates_observation=True)
        .order_by(SopChecklistItemTemplate.step_number)
        .all()
    )
    return {
        "sop": sop.to_dict(),
        "observation_items": [i.to_dict() for i in items],
        "mode": sop.default_observation_mode,
    }


def get_checklist_for_task(sop_id: str, checklist_type: str | None = None) -> list[dict]:
    """Ordered checklist for a task's SOP, optionally filtered by checklist_type."""
    q = SopChecklistItemTemplate.query.filter_by(sop_id=sop_id)
    if checklist_type:
        q = q.filter_by(checklist_type=checklist_type)
    return [i.to_dict() for i in q.order_by(SopChecklistItemTemplate.step_number).all()]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_sop(sop_id: str, include_checklist: bool = False) -> dict:
    return _get_sop_or_raise(sop_id).to_dict(include_checklist=include_checklist)


def list_sops() -> list[dict]:
    return [s.to_dict() for s in Sop.query.order_by(Sop.sop_code, Sop.version).all()]


def get_current_by_sop_code(sop_code: str) -> dict | None:
    sop = _current_row(sop_code)
    return sop.to_dict() if sop else None


def list_current(trade_family: str | None = None) -> list[dict]:
    q = Sop.query.filter_by(is_current=True)
    if trade_family:
        q = q.filter_by(trade_family=trade_family)
    return [s.to_dict() for s in q.order_by(Sop.sop_code).all()]


def get_version_history(sop_code: str) -> list[dict]:
    """Every version ever created for sop_code, newest first."""
    rows = Sop.query.filter_by(sop_code=sop_code).order_by(Sop.version.desc()).all()
    return [s.to_dict() for s in rows]


def list_by_status(status: str) -> list[dict]:
    if status not in SOP_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(sorted(SOP_STATUSES))}")
    return [s.to_dict() for s in Sop.query.filter_by(status=status).order_by(Sop.sop_code).all()]
