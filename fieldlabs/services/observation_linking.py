"""Observation linking service — edges between field observations and knowledge items.

Auto-detection rules (evaluated per knowledge item, first match wins):

    1. Catalog membership   product/technique item lists the observation's
                            product/technique id → 95; tool_method → 90
    2. Combination          delegated to a pluggable combination matcher → 80
    3. Type + trade         same knowledge_type and item.category equals the
                            observation's trade (case-insensitive) → 60

An observation can link to many items but gets at most one auto link per
item. relink_observation() drops only auto_detected links, so Labs-assigned
and experiment links survive a re-run.

Combination matchers:
    heuristic   any combination-type item matches an observation that
                references a combination (no identity check)
    membership  the item's combination_ids must contain the observation's
                combination_id
The default comes from app.config["COMBINATION_LINK_STRATEGY"]; callers may
pass their own callable ``(observation, item) -> confidence | None``.

Known gap: two concurrent relinks of one observation may both delete and
recreate; the pair check below narrows but does not close that window.
"""

from __future__ import annotations

import logging
from typing import Callable

from flask import current_app
from sqlalchemy import select

from fieldlabs.core.exceptions import NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.knowledge import KnowledgeItem
from fieldlabs.models.observation import FieldObservation, ObservationKnowledgeLink

logger = logging.getLogger(__name__)

CombinationMatcher = Callable[[FieldObservation, KnowledgeItem], "int | None"]

PRODUCT_MATCH_CONFIDENCE = 95
TECHNIQUE_MATCH_CONFIDENCE = 95
TOOL_METHOD_MATCH_CONFIDENCE = 90
COMBINATION_MATCH_CONFIDENCE = 80
TYPE_TRADE_MATCH_CONFIDENCE = 60


# ---------------------------------------------------------------------------
# Combination matchers
# ---------------------------------------------------------------------------


def heuristic_combination_matcher(observation: FieldObservation, item: KnowledgeItem) -> int | None:
    if observation.combination_id and item.knowledge_type == "combination":
        return COMBINATION_MATCH_CONFIDENCE
    return None


def membership_combination_matcher(observation: FieldObservation, item: KnowledgeItem) -> int | None:
    if (
        observation.combination_id
        and item.knowledge_type == "combination"
        and observation.combination_id in (item.combination_ids or [])
    ):
        return COMBINATION_MATCH_CONFIDENCE
    return None


COMBINATION_MATCHERS: dict[str, CombinationMatcher] = {
    "heuristic": heuristic_combination_matcher,
    "membership": membership_combination_matcher,
}


def _resolve_matcher(matcher: CombinationMatcher | str | None) -> CombinationMatcher:
    if callable(matcher):
        return matcher
    name = matcher or current_app.config.get("COMBINATION_LINK_STRATEGY", "heuristic")
    try:
        return COMBINATION_MATCHERS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown combination link strategy '{name}'. "
            f"Must be one of: {', '.join(sorted(COMBINATION_MATCHERS))}"
        ) from None


# ---------------------------------------------------------------------------
# Auto-detection
# ---------------------------------------------------------------------------


def match_confidence(
    observation: FieldObservation,
    item: KnowledgeItem,
    combination_matcher: CombinationMatcher = heuristic_combination_matcher,
) -> int | None:
    """Return the auto-link confidence for (observation, item), or None."""
    if (
        observation.product_id
        and item.knowledge_type == "product"
        and observation.product_id in (item.product_ids or [])
    ):
        return PRODUCT_MATCH_CONFIDENCE

    if (
        observation.technique_id
        and item.knowledge_type == "technique"
        and observation.technique_id in (item.technique_ids or [])
    ):
        return TECHNIQUE_MATCH_CONFIDENCE

    if (
        observation.tool_method_id
        and item.knowledge_type == "tool_method"
        and observation.tool_method_id in (item.tool_method_ids or [])
    ):
        return TOOL_METHOD_MATCH_CONFIDENCE

    combination = combination_matcher(observation, item)
    if combination is not None:
        return combination

    if (
        observation.knowledge_type == item.knowledge_type
        and observation.trade
        and item.category
        and item.category.lower() == observation.trade.lower()
    ):
        return TYPE_TRADE_MATCH_CONFIDENCE

    return None


def _auto_link(observation: FieldObservation, matcher: CombinationMatcher) -> list[ObservationKnowledgeLink]:
    """Create auto links for one observation. Flushes; the caller commits."""
    already_linked = {
        row.knowledge_item_id
        for row in ObservationKnowledgeLink.query.filter_by(
            observation_id=observation.id, link_type="auto_detected",
        ).all()
    }

    created = []
    for item in KnowledgeItem.query.order_by(KnowledgeItem.created_at).all():
        if item.id in already_linked:
            continue
        confidence = match_confidence(observation, item, matcher)
        if confidence is None:
            continue
        link = ObservationKnowledgeLink(
            observation_id=observation.id,
            knowledge_item_id=item.id,
            link_type="auto_detected",
            link_confidence=confidence,
            created_by="system",
        )
        db.session.add(link)
        created.append(link)
    db.session.flush()

    logger.debug(
        "Auto-linked observation to %d knowledge item(s)", len(created),
        extra={"observation_id": observation.id},
    )
    return created


def auto_link_observation_id(observation_id: str, combination_matcher=None) -> int:
    """Side-effect entry point: link by id without committing.

    Returns the number of links created (0 when the observation is gone).
    """
    observation = db.session.get(FieldObservation, observation_id)
    if not observation:
        logger.warning("Observation vanished before linking", extra={"observation_id": observation_id})
        return 0
    return len(_auto_link(observation, _resolve_matcher(combination_matcher)))


def link_observation(observation: FieldObservation, combination_matcher=None) -> list[dict]:
    """Run every auto-detection rule for ``observation`` and persist the links."""
    links = _auto_link(observation, _resolve_matcher(combination_matcher))
    db.session.commit()
    return [link.to_dict() for link in links]


def relink_observation(observation_id: str, combination_matcher=None) -> list[dict]:
    """Delete auto_detected links for an observation, then re-run detection.

    Manual (labs_assigned) and experiment_required links are preserved.
    Returns [] if the observation does not exist.
    """
    observation = db.session.get(FieldObservation, observation_id)
    if not observation:
        return []

    matcher = _resolve_matcher(combination_matcher)
    try:
        deleted = (
            ObservationKnowledgeLink.query
            .filter_by(observation_id=observation_id, link_type="auto_detected")
            .delete(synchronize_session="fetch")
        )
        links = _auto_link(observation, matcher)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Relinked observation: %d auto link(s) replaced by %d", deleted, len(links),
        extra={"observation_id": observation_id},
    )
    return [link.to_dict() for link in links]


# ---------------------------------------------------------------------------
# Manual links
# ---------------------------------------------------------------------------


def _require_pair(observation_id: str, knowledge_item_id: str) -> None:
    if not db.session.get(FieldObservation, observation_id):
        raise NotFoundError(resource="FieldObservation", resource_id=observation_id)
    if not db.session.get(KnowledgeItem, knowledge_item_id):
        raise NotFoundError(resource="KnowledgeItem", resource_id=knowledge_item_id)


def create_manual_link(
    observation_id: str,
    knowledge_item_id: str,
    created_by: str,
    notes: str | None = None,
) -> dict:
    """Labs admin assigns an observation to a knowledge item."""
    _require_pair(observation_id, knowledge_item_id)
    link = ObservationKnowledgeLink(
        observation_id=observation_id,
        knowledge_item_id=knowledge_item_id,
        link_type="labs_assigned",
        link_confidence=None,
        notes=(notes or "").strip() or None,
        created_by=created_by,
    )
    db.session.add(link)
    db.session.commit()
    return link.to_dict()


def create_experiment_link(observation_id: str, knowledge_item_id: str) -> dict:
    """Link required by an experiment protocol."""
    _require_pair(observation_id, knowledge_item_id)
    link = ObservationKnowledgeLink(
        observation_id=observation_id,
        knowledge_item_id=knowledge_item_id,
        link_type="experiment_required",
        link_confidence=None,
        created_by="system",
    )
    db.session.add(link)
    db.session.commit()
    return link.to_dict()


def delete_link(link_id: str) -> bool:
    link = db.session.get(ObservationKnowledgeLink, link_id)
    if not link:
        return False
    db.session.delete(link)
    db.session.commit()
    return True


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_links_for_observation(observation_id: str) -> list[dict]:
    rows = ObservationKnowledgeLink.query.filter_by(observation_id=observation_id).all()
    return [r.to_dict() for r in rows]


def get_links_for_knowledge_item(knowledge_item_id: str) -> list[dict]:
    rows = ObservationKnowledgeLink.query.filter_by(knowledge_item_id=knowledge_item_id).all()
    return [r.to_dict() for r in rows]


def get_observation_context(observation_id: str) -> list[dict]:
    """Knowledge items linked to an observation.

    Links are created as a deferred side effect of confirmation, so this may
    briefly trail a just-created observation.
    """
    linked = select(ObservationKnowledgeLink.knowledge_item_id).where(
        ObservationKnowledgeLink.observation_id == observation_id
    )
    rows = (
        KnowledgeItem.query
        .filter(KnowledgeItem.id.in_(linked))
        .order_by(KnowledgeItem.created_at)
        .all()
    )
    return [r.to_dict() for r in rows]


def get_evidence_for_knowledge_item(knowledge_item_id: str) -> list[dict]:
    """Observations linked to a knowledge item."""
    linked = select(ObservationKnowledgeLink.observation_id).where(
        ObservationKnowledgeLink.knowledge_item_id == knowledge_item_id
    )
    rows = (
        FieldObservation.query
        .filter(FieldObservation.id.in_(linked))
        .order_by(FieldObservation.created_at)
        .all()
    )
    return [r.to_dict() for r in rows]
