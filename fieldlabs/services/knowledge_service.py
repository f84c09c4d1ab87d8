"""Knowledge item service — creation, crew feedback, challenges and deprecation.

Score-bearing changes (agreement rate, challenges) go through
confidence_scoring.record_event so the ledger stays complete. Deprecation
is the one human-only status transition and bypasses scoring.

Challenge lifecycle:
    pending → under_review | accepted | rejected | needs_more_data
Only pending challenges count against the score.
"""

import logging
from datetime import datetime, timezone

from fieldlabs.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.knowledge import CHALLENGE_STATUSES, KnowledgeChallenge, KnowledgeItem
from fieldlabs.models.sop import KNOWLEDGE_TYPES
from fieldlabs.services import confidence_scoring

logger = logging.getLogger(__name__)

CHALLENGE_FILED_CHANGE = -10
CHALLENGE_RESOLVED_CHANGE = 10

_LIST_FIELDS = ("product_ids", "technique_ids", "tool_method_ids", "combination_ids", "tags")


def _get_item_or_raise(item_id):
    item = db.session.get(KnowledgeItem, item_id)
    if not item:
        raise NotFoundError(resource="KnowledgeItem", resource_id=item_id)
    return item


def create_knowledge_item(data):
    """Create a draft knowledge item at the base score.

    Raises:
        ValidationError: Missing title/summary/category or unknown knowledge type.
    """
    missing = [f for f in ("knowledge_type", "category", "title", "summary") if not (data.get(f) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required knowledge item fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    if data["knowledge_type"] not in KNOWLEDGE_TYPES:
        raise ValidationError(
            f"knowledge_type must be one of: {', '.join(sorted(KNOWLEDGE_TYPES))}",
            details={"knowledge_type": "invalid"},
        )

    item = KnowledgeItem(
        knowledge_type=data["knowledge_type"],
        category=data["category"].strip(),
        title=data["title"].strip(),
        summary=data["summary"].strip(),
        details=data.get("details"),
        confidence_score=confidence_scoring.BASE_SCORE,
        last_confidence_update=datetime.now(timezone.utc),
        observation_count=0,
        experiment_count=0,
        status="draft",
        created_by=data.get("created_by") or "system",
        **{f: list(data.get(f) or []) for f in _LIST_FIELDS},
    )
    db.session.add(item)
    db.session.flush()

    log_activity(
        "labs.knowledge_item_created",
        entity_type="knowledge_item",
        entity_id=item.id,
        summary=f"Knowledge item '{item.title}' created",
        event_data={"knowledge_type": item.knowledge_type, "category": item.category},
    )
    db.session.commit()
    logger.info("Knowledge item created", extra={"knowledge_item_id": item.id})
    return item.to_dict()


def get_knowledge_item(item_id):
    return _get_item_or_raise(item_id).to_dict()


def list_knowledge_items(status=None, knowledge_type=None):
    q = KnowledgeItem.query
    if status:
        q = q.filter_by(status=status)
    if knowledge_type:
        q = q.filter_by(knowledge_type=knowledge_type)
    return [i.to_dict() for i in q.order_by(KnowledgeItem.created_at).all()]


def set_crew_agreement_rate(item_id, rate, user_id=None):
    """Record crew agreement (0..1) and rescore.

    A rate at or above 0.5 is logged as positive feedback, below as negative.
    """
    try:
        rate = float(rate)
    except (TypeError, ValueError):
        raise ValidationError(
            "crew_agreement_rate must be a number",
            details={"crew_agreement_rate": "invalid"},
        )
    if not 0.0 <= rate <= 1.0:
        raise ValidationError(
            "crew_agreement_rate must be between 0 and 1",
            details={"crew_agreement_rate": "out_of_range"},
        )
    item = _get_item_or_raise(item_id)
    previous = item.crew_agreement_rate
    item.crew_agreement_rate = rate
    db.session.flush()

    event_type = "crew_feedback_positive" if rate >= 0.5 else "crew_feedback_negative"
    change = round((rate - (previous if previous is not None else 0.5)) * confidence_scoring.AGREEMENT_WEIGHT)
    return confidence_scoring.record_event(
        item_id, event_type, change,
        notes=f"Crew agreement rate set to {rate:.2f}",
        user_id=user_id,
    )


# ── Challenges ───────────────────────────────────────────────────────────────


def file_challenge(item_id, data):
    """Open a pending challenge against an item and rescore."""
    item = _get_item_or_raise(item_id)
    missing = [f for f in ("submitted_by", "reason", "description") if not (data.get(f) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required challenge fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )

    challenge = KnowledgeChallenge(
        knowledge_item_id=item.id,
        submitted_by=data["submitted_by"].strip(),
        reason=data["reason"].strip(),
        description=data["description"].strip(),
        supporting_evidence_ids=list(data.get("supporting_evidence_ids") or []),
        status="pending",
    )
    db.session.add(challenge)
    db.session.flush()

    log_activity(
        "labs.challenge_filed",
        entity_type="knowledge_challenge",
        entity_id=challenge.id,
        summary=f"Challenge filed against '{item.title}'",
        event_data={"knowledge_item_id": item.id, "reason": challenge.reason},
    )
    confidence_scoring.record_event(
        item.id, "challenge_filed", CHALLENGE_FILED_CHANGE,
        source_id=challenge.id, user_id=data.get("user_id"),
        notes=challenge.reason,
    )
    return challenge.to_dict()


def resolve_challenge(challenge_id, status, reviewed_by, resolution=None):
    """Move a pending challenge to its review outcome and rescore.

    Raises:
        NotFoundError: No such challenge.
        ValidationError: Unknown or non-terminal target status.
        InvalidStateError: Challenge is no longer pending.
    """
    challenge = db.session.get(KnowledgeChallenge, challenge_id)
    if not challenge:
        raise NotFoundError(resource="KnowledgeChallenge", resource_id=challenge_id)
    if status not in CHALLENGE_STATUSES or status == "pending":
        raise ValidationError(
            f"Invalid challenge resolution status '{status}'",
            details={"status": "invalid"},
        )
    if challenge.status != "pending":
        raise InvalidStateError(
            resource="KnowledgeChallenge",
            resource_id=challenge_id,
            current=challenge.status,
            action="resolve",
        )
    if not (reviewed_by or "").strip():
        raise ValidationError("reviewed_by is required", details={"reviewed_by": "required"})

    challenge.status = status
    challenge.reviewed_by = reviewed_by.strip()
    challenge.reviewed_at = datetime.now(timezone.utc)
    challenge.resolution = resolution
    db.session.flush()

    log_activity(
        "labs.challenge_resolved",
        entity_type="knowledge_challenge",
        entity_id=challenge.id,
        summary=f"Challenge {status}",
        event_data={"knowledge_item_id": challenge.knowledge_item_id, "status": status},
    )
    confidence_scoring.record_event(
        challenge.knowledge_item_id, "challenge_resolved", CHALLENGE_RESOLVED_CHANGE,
        source_id=challenge.id, notes=resolution,
    )
    return challenge.to_dict()


def list_challenges(item_id, status=None):
    q = KnowledgeChallenge.query.filter_by(knowledge_item_id=item_id)
    if status:
        q = q.filter_by(status=status)
    return [c.to_dict() for c in q.order_by(KnowledgeChallenge.created_at).all()]


# ── Manual transitions ───────────────────────────────────────────────────────


def deprecate_knowledge_item(item_id, user_id=None):
    """Retire an item. Deprecated items are never rescored out of deprecation."""
    item = _get_item_or_raise(item_id)
    if item.status == "deprecated":
        raise InvalidStateError(
            resource="KnowledgeItem",
            resource_id=item_id,
            current=item.status,
            action="deprecate",
        )
    old_status = item.status
    item.status = "deprecated"
    log_activity(
        "labs.knowledge_status_changed",
        entity_type="knowledge_item",
        entity_id=item.id,
        summary=f"{item.title}: {old_status} → deprecated",
        event_data={"from": old_status, "to": "deprecated", "user_id": user_id},
    )
    db.session.commit()
    logger.info("Knowledge item deprecated", extra={"knowledge_item_id": item.id})
    return item.to_dict()
