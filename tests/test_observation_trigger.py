"""
Tests for the observation trigger pipeline.

Covers:
  - handle_checklist_item_complete: no_observation / immediate_confirm / queued_batch
  - draft pre-fill rules per observation mode
  - confirm_observation: one automatic observation, deviated vs confirmed events,
    auto-linking as a side effect (and its failures staying invisible)
  - batch queue: confirm / skip state machine, overrides, confirm_all_batch
    partial failure, clear_processed_batch, pending counts
"""

import pytest

from fieldlabs.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import ActivityEvent
from fieldlabs.models.observation import FieldObservation, ObservationKnowledgeLink, PendingBatchObservation
from fieldlabs.services import knowledge_service, observation_linking, observation_trigger, sop_service
from fieldlabs.services.observation_trigger import ObservationDraft

TASK_ID = "task-1"
PROJECT_ID = "proj-1"
CREW_ID = "crew-1"


def _make_sop(mode="standard"):
    return sop_service.create_sop({
        "sop_code": "FL-02",
        "title": "LVP Install",
        "trade_family": "flooring",
        "default_observation_mode": mode,
    })


def _make_item(sop_id, **fields):
    data = {"title": "Glue down", "generates_observation": True}
    data.update(fields)
    return sop_service.add_checklist_item(sop_id, data)


def _check(item_id, sop_id, task_id=TASK_ID):
    return observation_trigger.handle_checklist_item_complete(
        checklist_item_id=item_id,
        task_id=task_id,
        sop_id=sop_id,
        project_id=PROJECT_ID,
        crew_member_id=CREW_ID,
    )


def _queue(sop_id, count=1, task_id=TASK_ID, **item_fields):
    item = _make_item(sop_id, trigger_timing="batch", **item_fields)
    return [_check(item["id"], sop_id, task_id).pending_batch_id for _ in range(count)]


# ═════════════════════════════════════════════════════════════════════════════
# handle_checklist_item_complete
# ═════════════════════════════════════════════════════════════════════════════


class TestHandleChecklistItemComplete:
    def test_missing_template(self):
        sop = _make_sop()
        result = _check("no-such-item", sop["id"])
        assert result.action == "no_observation"
        assert result.draft is None

    def test_non_generating_template(self):
        sop = _make_sop()
        item = _make_item(sop["id"], generates_observation=False)
        assert _check(item["id"], sop["id"]).action == "no_observation"

    def test_on_check_returns_draft(self):
        sop = _make_sop()
        item = _make_item(
            sop["id"],
            observation_knowledge_type="product",
            default_product_id="prod-7",
            default_technique_id="tech-1",
            default_tool_id="tool-2",
        )
        result = _check(item["id"], sop["id"])
        assert result.action == "immediate_confirm"
        assert result.pending_batch_id is None
        assert result.draft.knowledge_type == "product"
        assert result.draft.product_id == "prod-7"
        assert result.draft.technique_id == "tech-1"
        assert result.draft.tool_method_id == "tool-2"
        assert result.draft.photo_ids == []
        assert PendingBatchObservation.query.count() == 0

    def test_knowledge_type_defaults_to_procedure(self):
        sop = _make_sop()
        item = _make_item(sop["id"])
        assert _check(item["id"], sop["id"]).draft.knowledge_type == "procedure"

    def test_standard_mode_flags(self):
        sop = _make_sop("standard")
        item = _make_item(sop["id"], requires_photo=True)
        draft = _check(item["id"], sop["id"]).draft
        assert draft.requires_photo is True
        assert draft.requires_notes is False
        assert draft.requires_condition is False

    def test_detailed_mode_flags(self):
        sop = _make_sop("detailed")
        item = _make_item(sop["id"])
        draft = _check(item["id"], sop["id"]).draft
        assert (draft.requires_photo, draft.requires_notes, draft.requires_condition) == (True, True, True)

    def test_missing_sop_falls_back_to_standard(self):
        sop = _make_sop("detailed")
        item = _make_item(sop["id"])
        draft = _check(item["id"], "some-other-sop").draft
        assert draft.requires_notes is False

    def test_batch_creates_pending_row(self):
        sop = _make_sop()
        item = _make_item(sop["id"], trigger_timing="batch")
        result = _check(item["id"], sop["id"])
        assert result.action == "queued_batch"
        pending = db.session.get(PendingBatchObservation, result.pending_batch_id)
        assert pending.status == "pending"
        assert pending.draft["knowledge_type"] == "procedure"
        assert pending.checklist_item_id == item["id"]

    def test_result_to_dict(self):
        sop = _make_sop()
        item = _make_item(sop["id"])
        as_dict = _check(item["id"], sop["id"]).to_dict()
        assert as_dict["action"] == "immediate_confirm"
        assert as_dict["draft"]["knowledge_type"] == "procedure"


# ═════════════════════════════════════════════════════════════════════════════
# confirm_observation
# ═════════════════════════════════════════════════════════════════════════════


class TestConfirmObservation:
    def test_creates_automatic_observation(self):
        draft = ObservationDraft(knowledge_type="product", product_id="prod-1")
        obs = observation_trigger.confirm_observation(draft, TASK_ID, PROJECT_ID, CREW_ID, notes="Looks good")
        assert obs["capture_method"] == "automatic"
        assert obs["product_id"] == "prod-1"
        assert obs["notes"] == "Looks good"
        assert FieldObservation.query.count() == 1

    def test_accepts_dict_draft(self):
        obs = observation_trigger.confirm_observation(
            {"knowledge_type": "technique", "technique_id": "t-1", "requires_photo": True},
            TASK_ID, PROJECT_ID, CREW_ID,
        )
        assert obs["technique_id"] == "t-1"

    def test_confirmed_event(self):
        observation_trigger.confirm_observation(ObservationDraft("procedure"), TASK_ID, PROJECT_ID, CREW_ID)
        assert ActivityEvent.query.filter_by(event_type="labs.observation_confirmed").count() == 1
        assert ActivityEvent.query.filter_by(event_type="labs.observation_deviated").count() == 0

    def test_deviated_event(self):
        obs = observation_trigger.confirm_observation(
            ObservationDraft("procedure"), TASK_ID, PROJECT_ID, CREW_ID,
            deviated=True, deviation_fields=["product_id"], deviation_reason="Out of stock",
        )
        assert obs["deviated"] is True
        assert obs["deviation_fields"] == ["product_id"]
        event = ActivityEvent.query.filter_by(event_type="labs.observation_deviated").one()
        assert event.entity_id == obs["id"]

    def test_invalid_knowledge_type(self):
        with pytest.raises(ValidationError):
            observation_trigger.confirm_observation(ObservationDraft("vibes"), TASK_ID, PROJECT_ID, CREW_ID)
        assert FieldObservation.query.count() == 0

    def test_auto_links_after_confirmation(self):
        item = knowledge_service.create_knowledge_item({
            "knowledge_type": "product", "category": "flooring",
            "title": "Glue X", "summary": "Works", "product_ids": ["prod-1"],
        })
        obs = observation_trigger.confirm_observation(
            ObservationDraft("product", product_id="prod-1"), TASK_ID, PROJECT_ID, CREW_ID,
        )
        links = observation_linking.get_links_for_observation(obs["id"])
        assert [(l["knowledge_item_id"], l["link_confidence"]) for l in links] == [(item["id"], 95)]

    def test_linking_failure_is_swallowed(self, monkeypatch, side_effects):
        def boom(*args, **kwargs):
            raise RuntimeError("linker down")

        monkeypatch.setattr(observation_linking, "_auto_link", boom)
        obs = observation_trigger.confirm_observation(ObservationDraft("procedure"), TASK_ID, PROJECT_ID, CREW_ID)
        assert db.session.get(FieldObservation, obs["id"]) is not None
        assert [f.label for f in side_effects.failures] == ["observation_linking"]

    def test_queued_linking_runs_on_drain(self, queued_side_effects):
        knowledge_service.create_knowledge_item({
            "knowledge_type": "product", "category": "flooring",
            "title": "Glue X", "summary": "Works", "product_ids": ["prod-1"],
        })
        obs = observation_trigger.confirm_observation(
            ObservationDraft("product", product_id="prod-1"), TASK_ID, PROJECT_ID, CREW_ID,
        )
        assert observation_linking.get_links_for_observation(obs["id"]) == []
        assert queued_side_effects.pending_count == 1

        outcomes = queued_side_effects.drain()
        assert [o.ok for o in outcomes] == [True]
        assert len(observation_linking.get_links_for_observation(obs["id"])) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Batch queue
# ═════════════════════════════════════════════════════════════════════════════


class TestBatchQueue:
    def test_two_checks_create_two_pending_rows(self):
        sop = _make_sop()
        first, second = _queue(sop["id"], count=2)
        assert first != second
        assert observation_trigger.get_pending_batch_count(TASK_ID) == 2

        observation_trigger.confirm_batch_item(first)
        assert db.session.get(PendingBatchObservation, first).status == "confirmed"
        assert db.session.get(PendingBatchObservation, second).status == "pending"
        assert observation_trigger.get_pending_batch_count(TASK_ID) == 1

    def test_confirm_sets_processed_at_and_creates_observation(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"], default_product_id="prod-3", observation_knowledge_type="product")
        obs = observation_trigger.confirm_batch_item(pending_id)
        pending = db.session.get(PendingBatchObservation, pending_id)
        assert pending.processed_at is not None
        assert obs["product_id"] == "prod-3"
        assert obs["sop_version_id"] == sop["id"]
        assert obs["task_id"] == TASK_ID

    def test_confirm_with_overrides(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"])
        obs = observation_trigger.confirm_batch_item(
            pending_id, {"notes": "Used 2 tubes", "condition_assessment": "fair", "deviated": True},
        )
        assert obs["notes"] == "Used 2 tubes"
        assert obs["condition_assessment"] == "fair"
        assert obs["deviated"] is True

    def test_confirm_missing(self):
        with pytest.raises(NotFoundError):
            observation_trigger.confirm_batch_item("missing")

    def test_confirm_twice(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"])
        observation_trigger.confirm_batch_item(pending_id)
        with pytest.raises(InvalidStateError):
            observation_trigger.confirm_batch_item(pending_id)
        assert FieldObservation.query.count() == 1

    def test_skip(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"])
        skipped = observation_trigger.skip_batch_item(pending_id)
        assert skipped["status"] == "skipped"
        assert skipped["processed_at"] is not None
        assert FieldObservation.query.count() == 0
        assert ActivityEvent.query.filter_by(event_type="labs.batch_item_skipped").count() == 1

    def test_skip_missing(self):
        with pytest.raises(NotFoundError):
            observation_trigger.skip_batch_item("missing")

    def test_skip_after_confirm(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"])
        observation_trigger.confirm_batch_item(pending_id)
        with pytest.raises(InvalidStateError):
            observation_trigger.skip_batch_item(pending_id)

    def test_confirm_after_skip(self):
        sop = _make_sop()
        (pending_id,) = _queue(sop["id"])
        observation_trigger.skip_batch_item(pending_id)
        with pytest.raises(InvalidStateError):
            observation_trigger.confirm_batch_item(pending_id)

    def test_get_batch_queue_only_pending_for_task(self):
        sop = _make_sop()
        ids = _queue(sop["id"], count=3)
        _queue(sop["id"], task_id="task-2")
        observation_trigger.skip_batch_item(ids[0])
        queue = observation_trigger.get_batch_queue(TASK_ID)
        assert [q["id"] for q in queue] == ids[1:]
        assert observation_trigger.get_pending_batch_count() == 3


class TestConfirmAllBatch:
    def test_confirms_everything_pending(self):
        sop = _make_sop()
        ids = _queue(sop["id"], count=3)
        observation_trigger.skip_batch_item(ids[0])

        result = observation_trigger.confirm_all_batch(TASK_ID)
        assert result.total_items == 2
        assert result.confirmed == 2
        assert result.failed == 0
        assert len(result.observations_created) == 2
        assert observation_trigger.get_pending_batch_count(TASK_ID) == 0

        event = ActivityEvent.query.filter_by(event_type="labs.batch_processed").one()
        assert event.event_data["confirmed"] == 2

    def test_failure_does_not_roll_back_earlier_successes(self):
        sop = _make_sop()
        good_1, bad, good_2 = _queue(sop["id"], count=3)
        broken = db.session.get(PendingBatchObservation, bad)
        broken.draft = {**broken.draft, "knowledge_type": "not_a_type"}
        db.session.commit()

        result = observation_trigger.confirm_all_batch(TASK_ID)
        assert result.total_items == 3
        assert result.confirmed == 2
        assert result.failed == 1
        assert result.errors[0]["pending_batch_id"] == bad
        assert FieldObservation.query.count() == 2
        assert db.session.get(PendingBatchObservation, bad).status == "pending"
        assert db.session.get(PendingBatchObservation, good_1).status == "confirmed"
        assert db.session.get(PendingBatchObservation, good_2).status == "confirmed"

    def test_empty_queue(self):
        result = observation_trigger.confirm_all_batch(TASK_ID)
        assert result.to_dict()["total_items"] == 0


class TestClearProcessedBatch:
    def test_deletes_only_processed(self):
        sop = _make_sop()
        ids = _queue(sop["id"], count=3)
        observation_trigger.confirm_batch_item(ids[0])
        observation_trigger.skip_batch_item(ids[1])

        assert observation_trigger.clear_processed_batch(TASK_ID) == 2
        remaining = PendingBatchObservation.query.all()
        assert [r.id for r in remaining] == [ids[2]]

    def test_nothing_to_clear(self):
        assert observation_trigger.clear_processed_batch(TASK_ID) == 0


class TestBatchLinkingUnaffected:
    def test_batch_confirm_links(self):
        sop = _make_sop()
        item = knowledge_service.create_knowledge_item({
            "knowledge_type": "product", "category": "flooring",
            "title": "Glue X", "summary": "Works", "product_ids": ["prod-9"],
        })
        (pending_id,) = _queue(sop["id"], observation_knowledge_type="product", default_product_id="prod-9")
        obs = observation_trigger.confirm_batch_item(pending_id)
        link = ObservationKnowledgeLink.query.filter_by(observation_id=obs["id"]).one()
        assert link.knowledge_item_id == item["id"]
