"""
Tests for callback projects and outcome propagation.

Covers:
  - create_callback_project: clone shape, callback fields, validation
  - propagate_callback_outcomes: matching by knowledge type + catalog id,
    note format, capture_method flip, count of annotated observations
  - guards: missing project, non-callback project, missing link
  - get_callbacks_for_project
"""

from datetime import date
from decimal import Decimal

import pytest

from fieldlabs.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from fieldlabs.models import db
from fieldlabs.models.activity import ActivityEvent
from fieldlabs.models.observation import FieldObservation
from fieldlabs.models.project import Project
from fieldlabs.services import callback_project


def _make_project(**fields):
    data = {
        "name": "Smith kitchen",
        "status": "completed",
        "client_id": "client-1",
        "address": "12 Elm St",
        "project_type": "flooring",
        "start_date": date(2025, 1, 6),
        "estimated_cost": Decimal("12000.00"),
        "actual_cost": Decimal("11800.00"),
        "active_experiment_ids": ["exp-1"],
        "observation_mode_override": "detailed",
    }
    data.update(fields)
    project = Project(**data)
    db.session.add(project)
    db.session.commit()
    return project


def _make_obs(project_id, knowledge_type="product", notes=None, **fields):
    obs = FieldObservation(
        project_id=project_id,
        crew_member_id="crew-1",
        knowledge_type=knowledge_type,
        capture_method="automatic",
        notes=notes,
        **fields,
    )
    db.session.add(obs)
    db.session.commit()
    return obs


def _callback(original, reason="warranty_claim"):
    return callback_project.create_callback_project(original.id, reason, "Smith kitchen callback")


class TestCreateCallbackProject:
    def test_clones_shape(self):
        original = _make_project()
        cb = _callback(original)
        assert cb["integration_project_type"] == "callback"
        assert cb["linked_project_id"] == original.id
        assert cb["callback_reason"] == "warranty_claim"
        assert cb["callback_reported_at"] is not None
        assert cb["client_id"] == "client-1"
        assert cb["address"] == "12 Elm St"
        assert cb["project_type"] == "flooring"
        assert cb["name"] == "Smith kitchen callback"

    def test_resets_budget_schedule_and_experiments(self):
        original = _make_project()
        cb = _callback(original)
        assert cb["budget"] == {"estimated_cost": 0.0, "actual_cost": 0.0}
        assert cb["start_date"] == date.today().isoformat()
        assert cb["active_experiment_ids"] == []
        assert cb["observation_mode_override"] is None

    def test_logs_activity(self):
        original = _make_project()
        cb = _callback(original)
        event = ActivityEvent.query.filter_by(event_type="project.callback_created").one()
        assert event.entity_id == cb["id"]
        assert event.project_id == original.id

    def test_missing_original(self):
        with pytest.raises(NotFoundError):
            callback_project.create_callback_project("missing", "warranty_claim", "x")

    def test_invalid_reason(self):
        original = _make_project()
        with pytest.raises(ValidationError):
            _callback(original, reason="bored")


class TestPropagateCallbackOutcomes:
    def test_annotates_matching_observations(self):
        original = _make_project()
        cb = _callback(original, reason="quality_issue")
        matched = _make_obs(original.id, product_id="glue-x", notes="Applied per label")
        untouched = _make_obs(original.id, product_id="glue-y")
        _make_obs(cb["id"], product_id="glue-x", notes="Planks lifting at seams")

        assert callback_project.propagate_callback_outcomes(cb["id"]) == 1

        db.session.expire_all()
        matched = db.session.get(FieldObservation, matched.id)
        assert matched.notes == "Applied per label\n[CALLBACK quality_issue]: Planks lifting at seams"
        assert matched.capture_method == "callback"
        untouched = db.session.get(FieldObservation, untouched.id)
        assert untouched.notes is None
        assert untouched.capture_method == "automatic"

    def test_default_note_and_empty_original_notes(self):
        original = _make_project()
        cb = _callback(original)
        target = _make_obs(original.id, "technique", technique_id="t-1")
        _make_obs(cb["id"], "technique", technique_id="t-1")

        callback_project.propagate_callback_outcomes(cb["id"])
        db.session.expire_all()
        assert db.session.get(FieldObservation, target.id).notes == (
            "[CALLBACK warranty_claim]: Issue identified during callback"
        )

    def test_requires_same_knowledge_type(self):
        original = _make_project()
        cb = _callback(original)
        _make_obs(original.id, "product", product_id="p-1")
        _make_obs(cb["id"], "material", product_id="p-1")
        assert callback_project.propagate_callback_outcomes(cb["id"]) == 0

    def test_any_shared_axis_matches(self):
        original = _make_project()
        cb = _callback(original)
        _make_obs(original.id, "tool_method", product_id="p-1", tool_method_id="tm-1")
        _make_obs(cb["id"], "tool_method", product_id="p-2", tool_method_id="tm-1")
        assert callback_project.propagate_callback_outcomes(cb["id"]) == 1

    def test_one_line_per_related_callback_observation(self):
        original = _make_project()
        cb = _callback(original)
        target = _make_obs(original.id, product_id="p-1", technique_id="t-1")
        _make_obs(cb["id"], product_id="p-1", notes="Seam gap")
        # Shares two axes with the original but is still reported once
        _make_obs(cb["id"], product_id="p-1", technique_id="t-1", notes="Edge curl")

        assert callback_project.propagate_callback_outcomes(cb["id"]) == 1
        db.session.expire_all()
        notes = db.session.get(FieldObservation, target.id).notes.split("\n")
        assert notes == ["[CALLBACK warranty_claim]: Seam gap", "[CALLBACK warranty_claim]: Edge curl"]

    def test_observations_without_catalog_ids_never_match(self):
        original = _make_project()
        cb = _callback(original)
        _make_obs(original.id, "procedure")
        _make_obs(cb["id"], "procedure")
        assert callback_project.propagate_callback_outcomes(cb["id"]) == 0

    def test_logs_activity(self):
        original = _make_project()
        cb = _callback(original)
        callback_project.propagate_callback_outcomes(cb["id"])
        event = ActivityEvent.query.filter_by(event_type="project.callback_propagated").one()
        assert event.event_data["updated_observations"] == 0

    def test_missing_project(self):
        with pytest.raises(NotFoundError):
            callback_project.propagate_callback_outcomes("missing")

    def test_not_a_callback(self):
        original = _make_project()
        with pytest.raises(InvalidStateError):
            callback_project.propagate_callback_outcomes(original.id)

    def test_callback_without_link(self):
        orphan = _make_project(integration_project_type="callback", callback_reason="quality_issue")
        with pytest.raises(InvalidStateError):
            callback_project.propagate_callback_outcomes(orphan.id)


class TestGetCallbacksForProject:
    def test_lists_only_callbacks_of_original(self):
        original = _make_project()
        other = _make_project(name="Jones bath")
        first = _callback(original)
        second = _callback(original, reason="customer_complaint")
        _callback(other)

        callbacks = callback_project.get_callbacks_for_project(original.id)
        assert [c["id"] for c in callbacks] == [first["id"], second["id"]]
        assert callback_project.get_callbacks_for_project("missing") == []
