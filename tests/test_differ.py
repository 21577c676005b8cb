# Copyright (c) Syntropy Systems
"""Tests for change classification."""

import random

from expwatch.detection.differ import SignificanceThresholds, compare_fields, diff
from expwatch.models.changes import ChangeType
from expwatch.snapshot import build_experiment


def exp(exp_id, domain="x.com", status="Running", **fields):
    raw = {"id": exp_id, "name": fields.pop("name", f"Exp {exp_id}"), "status": status, **fields}
    return build_experiment(raw, domain=domain, url=f"https://{domain}/")


class TestDiffScenarios:
    """End-to-end classification examples."""

    def test_status_change(self):
        """Running to Paused is one STATUS_CHANGED entry."""
        result = diff([exp("A", status="Running")], [exp("A", status="Paused")])
        counts = result.summary.changes_by_type
        assert counts.STATUS_CHANGED == 1
        assert counts.NEW == counts.REMOVED == counts.MODIFIED == 0
        assert result.has_changes is True
        change = result.change_details.status_changes[0]
        assert change.previous_status == "Running"
        assert change.new_status == "Paused"
        assert "status" in change.changed_fields
        assert "is_active" in change.changed_fields

    def test_all_new_from_empty(self):
        """Against an empty previous set everything is NEW."""
        result = diff([], [exp("A", domain="x.com"), exp("B", domain="y.com")])
        assert result.summary.changes_by_type.NEW == 2
        assert result.summary.affected_domains_count == 2
        assert result.summary.significant_changes is False

    def test_reordered_variations_no_change(self):
        """Reordering variations with the same content is not a change."""
        before = exp("A", variations=[{"id": "v1"}, {"id": "v2"}])
        after = exp("A", variations=[{"id": "v2"}, {"id": "v1"}])
        result = diff([before], [after])
        assert result.has_changes is False
        assert result.summary.total_changes == 0

    def test_removed(self):
        """An experiment missing from the current scan is REMOVED."""
        result = diff([exp("A"), exp("B")], [exp("B")])
        counts = result.summary.changes_by_type
        assert counts.REMOVED == 1
        assert counts.NEW == counts.STATUS_CHANGED == counts.MODIFIED == 0
        assert result.change_details.removed_experiments[0].experiment_id == "A"
        assert result.change_details.removed_experiments[0].previous_status == "Running"

    def test_significant_by_count_and_domains(self):
        """Twelve changes across six domains exceed both thresholds."""
        domains = [f"site{i}.com" for i in range(6)]
        previous = [exp(f"E{i}", domain=domains[i % 6], name="old") for i in range(12)]
        current = [exp(f"E{i}", domain=domains[i % 6], name="new") for i in range(12)]
        result = diff(previous, current)
        assert result.summary.total_changes == 12
        assert result.summary.changes_by_type.MODIFIED == 12
        assert result.summary.affected_domains_count == 6
        assert result.summary.significant_changes is True


class TestDiffProperties:
    """Completeness and determinism of the differ."""

    def test_modified_fields(self):
        before = exp("A", audience_ids=["1"], metrics=[{"id": "m1"}])
        after = exp("A", audience_ids=["1", "2"], metrics=[{"id": "m1"}, {"id": "m2"}])
        result = diff([before], [after])
        change = result.change_details.modified_experiments[0]
        assert change.change_type == ChangeType.MODIFIED
        assert change.modified_fields == ["audience_ids", "metrics"]
        audience = change.detailed_changes[0]
        assert audience.details == {"added": ["2"], "removed": []}

    def test_status_takes_priority(self):
        """A status change with other edits is reported once, as STATUS_CHANGED."""
        before = exp("A", status="Running", name="old")
        after = exp("A", status="Paused", name="new")
        result = diff([before], [after])
        assert result.summary.total_changes == 1
        assert result.summary.changes_by_type.STATUS_CHANGED == 1
        assert result.change_details.status_changes[0].changed_fields[0] == "name"

    def test_identity_includes_domain_and_url(self):
        """The same id on another site is a different experiment."""
        result = diff([exp("A", domain="x.com")], [exp("A", domain="y.com")])
        assert result.summary.changes_by_type.NEW == 1
        assert result.summary.changes_by_type.REMOVED == 1

    def test_every_key_accounted_for(self):
        previous = [exp("A"), exp("B"), exp("C", status="Paused")]
        current = [exp("B"), exp("C", status="Running"), exp("D")]
        result = diff(previous, current)
        details = result.change_details
        ids = sorted(
            c.experiment_id
            for group in (
                details.new_experiments,
                details.removed_experiments,
                details.status_changes,
                details.modified_experiments,
            )
            for c in group
        )
        assert ids == ["A", "C", "D"]

    def test_deterministic_under_shuffle(self):
        previous = [exp(f"E{i}", domain=f"d{i % 3}.com") for i in range(9)]
        current = [exp(f"E{i}", domain=f"d{i % 3}.com", status="Paused") for i in range(3, 12)]
        expected = diff(previous, current)
        rng = random.Random(7)
        for _ in range(5):
            shuffled_prev = previous[:]
            shuffled_cur = current[:]
            rng.shuffle(shuffled_prev)
            rng.shuffle(shuffled_cur)
            assert diff(shuffled_prev, shuffled_cur) == expected

    def test_identical_sets_no_change(self):
        snapshot = [exp("A"), exp("B", domain="y.com")]
        result = diff(snapshot, list(snapshot))
        assert result.has_changes is False
        assert result.summary.affected_domains == []

    def test_first_version_ignores_previous(self):
        result = diff([exp("A")], [exp("A")], first_version=True)
        assert result.summary.changes_by_type.NEW == 1

    def test_malformed_inputs_treated_as_empty(self):
        result = diff(None, "not a list")
        assert result.has_changes is False
        result = diff({"bad": True}, [exp("A")])
        assert result.summary.changes_by_type.NEW == 1

    def test_raw_mappings_accepted(self):
        """Stored snapshot records diff the same as built experiments."""
        stored = [exp("A").model_dump(mode="json")]
        result = diff(stored, [exp("A", status="Paused")])
        assert result.summary.changes_by_type.STATUS_CHANGED == 1

    def test_duplicate_key_last_wins(self):
        result = diff([exp("A")], [exp("A", status="Paused"), exp("A")])
        assert result.has_changes is False

    def test_custom_thresholds(self):
        thresholds = SignificanceThresholds(total_changes=1, affected_domains=5)
        result = diff([], [exp("A"), exp("B")], thresholds=thresholds)
        assert result.summary.significant_changes is True

    def test_threshold_is_strict(self):
        """Exactly ten changes is not significant."""
        current = [exp(f"E{i}") for i in range(10)]
        result = diff([], current)
        assert result.summary.total_changes == 10
        assert result.summary.significant_changes is False

    def test_previous_version_metadata(self):
        result = diff([], [], previous_version_number=3, previous_run_timestamp="2024-01-01T00:00:00Z")
        assert result.previous_version_number == 3
        assert result.previous_run_timestamp == "2024-01-01T00:00:00Z"


class TestCompareFields:
    """Tests for compare_fields()."""

    def test_keyed_details(self):
        before = exp("A", variations=[{"id": "a", "weight": 50}, {"id": "b"}])
        after = exp("A", variations=[{"id": "a", "weight": 60}, {"id": "c"}])
        changes = compare_fields(before, after)
        assert [c.field for c in changes] == ["variations"]
        details = changes[0].details
        assert details["added"] == ["c"]
        assert details["removed"] == ["b"]
        assert details["changed"] == ["a"]
        assert details["count_change"] == 0

    def test_no_changes(self):
        assert compare_fields(exp("A"), exp("A")) == []
