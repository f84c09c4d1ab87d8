"""
Confidence scoring engine.

Score formula (integer, clamped 0..100, rounded half away from zero):

    50
    + min(observation_count * 2, 30)
    + min(experiment_count * 10, 40)
    + (crew_agreement_rate - 0.5) * 20      when a rate has been recorded
    - 10 per pending challenge
    - 1 per full 30 days since last_confidence_update

Status transitions driven by the score:

    published → under_review   score < 50
    draft     → published      score ≥ 70

Every other transition (deprecation, re-publishing after review) is a
human decision and lives in knowledge_service.

record_event() is the only writer of confidence_score, the scoring
counters and the ConfidenceEvent ledger.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import func, select

from fieldlabs.core.exceptions import NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import log_activity
from fieldlabs.models.base import as_utc
from fieldlabs.models.knowledge import (
    CONFIDENCE_EVENT_TYPES,
    ConfidenceEvent,
    KnowledgeChallenge,
    KnowledgeItem,
)

logger = logging.getLogger(__name__)

BASE_SCORE = 50
OBSERVATION_WEIGHT = 2
OBSERVATION_CAP = 30
EXPERIMENT_WEIGHT = 10
EXPERIMENT_CAP = 40
AGREEMENT_WEIGHT = 20
CHALLENGE_PENALTY = 10
DECAY_PERIOD_DAYS = 30

PUBLISH_THRESHOLD = 70
REVIEW_THRESHOLD = 50

# Counter bumped on the item before rescoring
_COUNTER_EFFECTS = {
    "observation_added": "observation_count",
    "experiment_completed": "experiment_count",
}


def _round_half_away(value: float) -> int:
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


def compute_score(
    observation_count: int,
    experiment_count: int,
    crew_agreement_rate: float | None,
    active_challenge_count: int,
    last_update: datetime | None,
    now: datetime,
) -> int:
    """Pure scoring function; no database access."""
    score = float(BASE_SCORE)
    score += min(observation_count * OBSERVATION_WEIGHT, OBSERVATION_CAP)
    score += min(experiment_count * EXPERIMENT_WEIGHT, EXPERIMENT_CAP)

    if crew_agreement_rate is not None:
        score += (crew_agreement_rate - 0.5) * AGREEMENT_WEIGHT

    score -= active_challenge_count * CHALLENGE_PENALTY

    if last_update is not None:
        elapsed_days = (as_utc(now) - as_utc(last_update)).total_seconds() / 86400
        score -= math.floor(max(elapsed_days, 0) / DECAY_PERIOD_DAYS)

    return _round_half_away(max(0.0, min(100.0, score)))


def determine_status(current_status: str, score: int) -> str:
    """Status implied by ``score``; unchanged when no threshold is crossed."""
    if current_status == "published" and score < REVIEW_THRESHOLD:
        return "under_review"
    if current_status == "draft" and score >= PUBLISH_THRESHOLD:
        return "published"
    return current_status


def _get_item_or_raise(item_id: str) -> KnowledgeItem:
    item = db.session.get(KnowledgeItem, item_id)
    if not item:
        raise NotFoundError(resource="KnowledgeItem", resource_id=item_id)
    return item


def count_active_challenges(item_id: str) -> int:
    """Only pending challenges depress the score."""
    return db.session.scalar(
        select(func.count(KnowledgeChallenge.id)).where(
            KnowledgeChallenge.knowledge_item_id == item_id,
            KnowledgeChallenge.status == "pending",
        )
    ) or 0


def _score_item(item: KnowledgeItem, now: datetime) -> int:
    return compute_score(
        observation_count=item.observation_count or 0,
        experiment_count=item.experiment_count or 0,
        crew_agreement_rate=item.crew_agreement_rate,
        active_challenge_count=count_active_challenges(item.id),
        last_update=item.last_confidence_update,
        now=now,
    )


def calculate_score(item_id: str, now: datetime | None = None) -> int:
    """Current score for an item. Read-only.

    Raises:
        NotFoundError: No such knowledge item.
    """
    item = _get_item_or_raise(item_id)
    return _score_item(item, now or datetime.now(timezone.utc))


def record_event(
    item_id: str,
    event_type: str,
    change: int,
    source_id: str | None = None,
    notes: str | None = None,
    user_id: str | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """Apply an event to a knowledge item and append it to the ledger.

    ``change`` is stored as declared by the caller; the stored
    new_confidence_score is always the recomputed value.

    Returns:
        The ConfidenceEvent as a dict.

    Raises:
        ValidationError: Unknown event type.
        NotFoundError: No such knowledge item.
    """
    if event_type not in CONFIDENCE_EVENT_TYPES:
        raise ValidationError(
            f"Unknown confidence event type '{event_type}'",
            details={"event_type": "invalid"},
        )
    item = _get_item_or_raise(item_id)
    now = now or datetime.now(timezone.utc)

    counter = _COUNTER_EFFECTS.get(event_type)
    if counter:
        setattr(item, counter, (getattr(item, counter) or 0) + 1)

    new_score = _score_item(item, now)
    old_score = item.confidence_score
    old_status = item.status
    new_status = determine_status(old_status, new_score)

    last_sequence = db.session.scalar(
        select(func.max(ConfidenceEvent.sequence)).where(ConfidenceEvent.knowledge_item_id == item.id)
    ) or 0
    event = ConfidenceEvent(
        knowledge_item_id=item.id,
        event_type=event_type,
        confidence_change=int(change),
        new_confidence_score=new_score,
        source_id=source_id,
        user_id=user_id,
        notes=notes,
        timestamp=now,
        sequence=last_sequence + 1,
    )
    db.session.add(event)

    item.confidence_score = new_score
    item.last_confidence_update = now
    item.status = new_status
    db.session.flush()

    log_activity(
        "labs.confidence_updated",
        entity_type="knowledge_item",
        entity_id=item.id,
        summary=f"{item.title}: confidence {old_score} → {new_score}",
        event_data={
            "event_type": event_type,
            "change": int(change),
            "old_score": old_score,
            "new_score": new_score,
            "source_id": source_id,
        },
    )
    if new_status != old_status:
        log_activity(
            "labs.knowledge_status_changed",
            entity_type="knowledge_item",
            entity_id=item.id,
            summary=f"{item.title}: {old_status} → {new_status}",
            event_data={"from": old_status, "to": new_status, "score": new_score},
        )
        logger.info(
            "Knowledge item %s → %s", old_status, new_status,
            extra={"knowledge_item_id": item.id},
        )

    db.session.commit()
    logger.info(
        "Confidence event %s: %s → %s", event_type, old_score, new_score,
        extra={"knowledge_item_id": item.id, "event_type": event_type},
    )
    return event.to_dict()


def get_history(item_id: str) -> list[dict]:
    """Full confidence ledger for an item in append order.

    Ordered by ``sequence``; a caller-supplied (backdated) timestamp does not
    move an event ahead of ones recorded before it.
    """
    rows = (
        ConfidenceEvent.query
        .filter_by(knowledge_item_id=item_id)
        .order_by(ConfidenceEvent.sequence)
        .all()
    )
    return [r.to_dict() for r in rows]
