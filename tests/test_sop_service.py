"""
Tests for the SOP service.

Covers:
  - create_sop: version 1, current, validation of required fields and enums
  - create_new_version: supersede + insert + checklist copy (FL-02 example)
  - create_new_version: failure leaves the previous version current
  - archive_sop: clears is_current
  - one current row per sop_code after mixed lifecycle operations
  - checklist add / insert / remove / reorder keep steps contiguous 1..N
  - update_checklist_item refuses positional edits
  - get_observation_config, get_checklist_for_task and read helpers
"""

import pytest

from fieldlabs.core.exceptions import ConflictError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import ActivityEvent
from fieldlabs.models.sop import Sop, SopChecklistItemTemplate
from fieldlabs.services import sop_service


def _make_sop(sop_code="FL-02", **overrides):
    data = {
        "sop_code": sop_code,
        "title": "LVP Floating Floor Install",
        "trade_family": "flooring",
        "status": "active",
    }
    data.update(overrides)
    return sop_service.create_sop(data)


def _add_items(sop_id, titles, **fields):
    return [sop_service.add_checklist_item(sop_id, {"title": t, **fields}) for t in titles]


def _steps(sop_id):
    return [(i["step_number"], i["title"]) for i in sop_service.get_checklist_for_task(sop_id)]


def _current_count(sop_code):
    return Sop.query.filter_by(sop_code=sop_code, is_current=True).count()


# ═════════════════════════════════════════════════════════════════════════════
# create_sop
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateSop:
    def test_creates_version_one_as_current(self):
        sop = _make_sop()
        assert sop["version"] == 1
        assert sop["is_current"] is True
        assert sop["previous_version_id"] is None
        assert sop["metadata"]["version"] == 1

    def test_defaults(self):
        sop = _make_sop()
        assert sop["default_observation_mode"] == "standard"
        assert sop["required_supervised_completions"] == 3
        assert sop["review_question_count"] == 10
        assert sop["review_pass_threshold"] == 80

    def test_missing_required_fields(self):
        with pytest.raises(ValidationError) as exc:
            sop_service.create_sop({"sop_code": "FL-09"})
        assert set(exc.value.details) == {"title", "trade_family"}

    def test_invalid_observation_mode(self):
        with pytest.raises(ValidationError):
            _make_sop(default_observation_mode="verbose")

    def test_existing_current_code_rejected(self):
        _make_sop()
        with pytest.raises(ValidationError):
            _make_sop()

    def test_archived_code_cannot_restart_at_version_one(self):
        sop = _make_sop()
        sop_service.archive_sop(sop["id"])
        with pytest.raises(ConflictError):
            _make_sop()

    def test_logs_activity(self):
        sop = _make_sop()
        event = ActivityEvent.query.filter_by(event_type="labs.sop_created").one()
        assert event.entity_id == sop["id"]
        assert event.event_data["sop_code"] == "FL-02"


# ═════════════════════════════════════════════════════════════════════════════
# create_new_version
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateNewVersion:
    def test_fl02_example(self):
        v1 = _make_sop()
        _add_items(v1["id"], ["Acclimate planks", "Check subfloor flatness", "Lay underlayment"])

        v2 = sop_service.create_new_version("FL-02", {"title": "LVP Install rev B"}, "Added moisture test")

        assert v2["version"] == 2
        assert v2["previous_version_id"] == v1["id"]
        assert v2["is_current"] is True
        assert v2["title"] == "LVP Install rev B"
        assert v2["trade_family"] == "flooring"

        old = sop_service.get_sop(v1["id"])
        assert old["is_current"] is False
        assert old["superseded_date"] is not None

        assert _steps(v2["id"]) == [
            (1, "Acclimate planks"),
            (2, "Check subfloor flatness"),
            (3, "Lay underlayment"),
        ]
        # v1's checklist is untouched
        assert len(_steps(v1["id"])) == 3

    def test_copies_trigger_configuration(self):
        v1 = _make_sop()
        sop_service.add_checklist_item(v1["id"], {
            "title": "Seal seams",
            "generates_observation": True,
            "trigger_timing": "batch",
            "observation_knowledge_type": "product",
            "default_product_id": "prod-1",
        })
        v2 = sop_service.create_new_version("FL-02", None, "copy")
        copied = sop_service.get_checklist_for_task(v2["id"])[0]
        assert copied["generates_observation"] is True
        assert copied["trigger_timing"] == "batch"
        assert copied["default_product_id"] == "prod-1"

    def test_inherits_fields_absent_from_patch(self):
        _make_sop(default_observation_mode="detailed", required_supervised_completions=5)
        v2 = sop_service.create_new_version("FL-02", {"description": "new"}, "desc")
        assert v2["default_observation_mode"] == "detailed"
        assert v2["required_supervised_completions"] == 5

    def test_missing_sop_code(self):
        with pytest.raises(NotFoundError):
            sop_service.create_new_version("NOPE-1", {}, "x")

    def test_invalid_patch_leaves_current_version(self):
        v1 = _make_sop()
        with pytest.raises(ValidationError):
            sop_service.create_new_version("FL-02", {"certification_level": "wizard"}, "x")
        assert sop_service.get_current_by_sop_code("FL-02")["id"] == v1["id"]

    def test_failed_copy_rolls_back_supersede(self, monkeypatch):
        v1 = _make_sop()
        _add_items(v1["id"], ["Step A"])

        monkeypatch.setattr(SopChecklistItemTemplate, "COPY_FIELDS", ("step_number", "no_such_column"))
        with pytest.raises(Exception):
            sop_service.create_new_version("FL-02", None, "broken")

        db.session.expire_all()
        assert _current_count("FL-02") == 1
        assert sop_service.get_current_by_sop_code("FL-02")["id"] == v1["id"]
        assert Sop.query.filter_by(sop_code="FL-02").count() == 1

    def test_version_history_descending_and_complete(self):
        _make_sop()
        sop_service.create_new_version("FL-02", None, "v2")
        sop_service.create_new_version("FL-02", None, "v3")
        history = sop_service.get_version_history("FL-02")
        assert [h["version"] for h in history] == [3, 2, 1]


class TestArchiveSop:
    def test_archive(self):
        sop = _make_sop()
        archived = sop_service.archive_sop(sop["id"])
        assert archived["status"] == "archived"
        assert archived["is_current"] is False
        assert sop_service.get_current_by_sop_code("FL-02") is None

    def test_archive_missing(self):
        with pytest.raises(NotFoundError):
            sop_service.archive_sop("missing")

    def test_single_current_after_mixed_operations(self):
        _make_sop()
        _make_sop("PT-01", trade_family="paint")
        sop_service.create_new_version("FL-02", None, "v2")
        current = sop_service.get_current_by_sop_code("FL-02")
        sop_service.archive_sop(current["id"])
        sop_service.create_new_version("PT-01", None, "v2")
        sop_service.create_new_version("PT-01", None, "v3")

        assert _current_count("FL-02") == 0
        assert _current_count("PT-01") == 1
        assert [s["sop_code"] for s in sop_service.list_current()] == ["PT-01"]


# ═════════════════════════════════════════════════════════════════════════════
# Checklist templates
# ═════════════════════════════════════════════════════════════════════════════


class TestChecklistOrdering:
    def test_add_appends(self):
        sop = _make_sop()
        _add_items(sop["id"], ["A", "B"])
        assert _steps(sop["id"]) == [(1, "A"), (2, "B")]

    def test_add_requires_title(self):
        sop = _make_sop()
        with pytest.raises(ValidationError):
            sop_service.add_checklist_item(sop["id"], {"title": "  "})

    def test_add_to_missing_sop(self):
        with pytest.raises(NotFoundError):
            sop_service.add_checklist_item("missing", {"title": "A"})

    def test_insert_shifts_later_steps(self):
        sop = _make_sop()
        _add_items(sop["id"], ["A", "B", "C"])
        sop_service.insert_checklist_item(sop["id"], {"title": "X"}, after_step_number=1)
        assert _steps(sop["id"]) == [(1, "A"), (2, "X"), (3, "B"), (4, "C")]

    def test_insert_at_top(self):
        sop = _make_sop()
        _add_items(sop["id"], ["A", "B"])
        sop_service.insert_checklist_item(sop["id"], {"title": "X"}, after_step_number=0)
        assert _steps(sop["id"]) == [(1, "X"), (2, "A"), (3, "B")]

    def test_insert_past_end_appends(self):
        sop = _make_sop()
        _add_items(sop["id"], ["A"])
        sop_service.insert_checklist_item(sop["id"], {"title": "X"}, after_step_number=10)
        assert _steps(sop["id"]) == [(1, "A"), (2, "X")]

    def test_remove_closes_gap(self):
        sop = _make_sop()
        items = _add_items(sop["id"], ["A", "B", "C", "D"])
        sop_service.remove_checklist_item(items[1]["id"])
        assert _steps(sop["id"]) == [(1, "A"), (2, "C"), (3, "D")]

    def test_remove_missing(self):
        with pytest.raises(NotFoundError):
            sop_service.remove_checklist_item("missing")

    def test_steps_contiguous_after_mixed_edits(self):
        sop = _make_sop()
        items = _add_items(sop["id"], ["A", "B", "C"])
        sop_service.insert_checklist_item(sop["id"], {"title": "X"}, 2)
        sop_service.remove_checklist_item(items[0]["id"])
        sop_service.insert_checklist_item(sop["id"], {"title": "Y"}, 0)
        sop_service.remove_checklist_item(items[2]["id"])
        numbers = [n for n, _ in _steps(sop["id"])]
        assert numbers == list(range(1, len(numbers) + 1))

    def test_reorder(self):
        sop = _make_sop()
        a, b, c = _add_items(sop["id"], ["A", "B", "C"])
        sop_service.reorder_checklist_items(sop["id"], [c["id"], a["id"], b["id"]])
        assert _steps(sop["id"]) == [(1, "C"), (2, "A"), (3, "B")]

    def test_reorder_requires_full_set(self):
        sop = _make_sop()
        a, b = _add_items(sop["id"], ["A", "B"])
        with pytest.raises(ValidationError):
            sop_service.reorder_checklist_items(sop["id"], [a["id"]])
        with pytest.raises(ValidationError):
            sop_service.reorder_checklist_items(sop["id"], [a["id"], a["id"]])


class TestUpdateChecklistItem:
    def test_updates_content(self):
        sop = _make_sop()
        (item,) = _add_items(sop["id"], ["A"])
        updated = sop_service.update_checklist_item(item["id"], {"title": "A2", "is_critical": True})
        assert updated["title"] == "A2"
        assert updated["is_critical"] is True
        assert updated["metadata"]["version"] == 2

    def test_rejects_step_number(self):
        sop = _make_sop()
        (item,) = _add_items(sop["id"], ["A"])
        with pytest.raises(ValidationError):
            sop_service.update_checklist_item(item["id"], {"step_number": 5})

    def test_rejects_invalid_trigger_timing(self):
        sop = _make_sop()
        (item,) = _add_items(sop["id"], ["A"])
        with pytest.raises(ValidationError):
            sop_service.update_checklist_item(item["id"], {"trigger_timing": "later"})

    def test_missing_item(self):
        with pytest.raises(NotFoundError):
            sop_service.update_checklist_item("missing", {"title": "x"})


class TestChecklistActivity:
    def _actions(self, sop_id):
        events = (
            ActivityEvent.query
            .filter_by(event_type="labs.sop_checklist_changed", entity_id=sop_id)
            .order_by(ActivityEvent.created_at)
            .all()
        )
        return [e.event_data["action"] for e in events]

    def test_every_checklist_edit_is_logged(self):
        sop = _make_sop()
        a, b = _add_items(sop["id"], ["A", "B"])
        sop_service.insert_checklist_item(sop["id"], {"title": "X"}, after_step_number=1)
        sop_service.update_checklist_item(a["id"], {"title": "A2"})
        sop_service.reorder_checklist_items(
            sop["id"], [i["id"] for i in reversed(sop_service.get_checklist_for_task(sop["id"]))],
        )
        sop_service.remove_checklist_item(b["id"])

        assert sorted(self._actions(sop["id"])) == sorted(
            ["added", "added", "inserted", "updated", "reordered", "removed"]
        )

    def test_event_carries_item_and_step(self):
        sop = _make_sop()
        (item,) = _add_items(sop["id"], ["A"])
        event = ActivityEvent.query.filter_by(event_type="labs.sop_checklist_changed").one()
        assert event.event_data == {"action": "added", "item_id": item["id"], "step_number": 1}

    def test_failed_edit_is_not_logged(self):
        sop = _make_sop()
        with pytest.raises(ValidationError):
            sop_service.add_checklist_item(sop["id"], {"title": "  "})
        assert self._actions(sop["id"]) == []


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_observation_config(self):
        sop = _make_sop(default_observation_mode="detailed")
        sop_service.add_checklist_item(sop["id"], {"title": "Prep"})
        sop_service.add_checklist_item(sop["id"], {"title": "Glue", "generates_observation": True})
        config = sop_service.get_observation_config(sop["id"])
        assert config["mode"] == "detailed"
        assert config["sop"]["id"] == sop["id"]
        assert [i["title"] for i in config["observation_items"]] == ["Glue"]

    def test_observation_config_missing(self):
        with pytest.raises(NotFoundError):
            sop_service.get_observation_config("missing")

    def test_checklist_filtered_by_type(self):
        sop = _make_sop()
        sop_service.add_checklist_item(sop["id"], {"title": "Daily sweep", "checklist_type": "daily"})
        sop_service.add_checklist_item(sop["id"], {"title": "Install", "checklist_type": "activity"})
        daily = sop_service.get_checklist_for_task(sop["id"], checklist_type="daily")
        assert [i["title"] for i in daily] == ["Daily sweep"]

    def test_get_sop_with_checklist(self):
        sop = _make_sop()
        _add_items(sop["id"], ["A", "B"])
        loaded = sop_service.get_sop(sop["id"], include_checklist=True)
        assert [i["title"] for i in loaded["checklist_items"]] == ["A", "B"]

    def test_list_current_by_trade_family(self):
        _make_sop()
        _make_sop("PT-01", trade_family="paint")
        assert [s["sop_code"] for s in sop_service.list_current("paint")] == ["PT-01"]

    def test_list_by_status(self):
        _make_sop()
        _make_sop("PT-01", trade_family="paint", status="draft")
        assert [s["sop_code"] for s in sop_service.list_by_status("draft")] == ["PT-01"]
        with pytest.raises(ValidationError):
            sop_service.list_by_status("bogus")

    def test_list_sops_includes_all_versions(self):
        _make_sop()
        sop_service.create_new_version("FL-02", None, "v2")
        assert len(sop_service.list_sops()) == 2
