"""
Response text selection tests.
"""
from pathlib import Path

import pytest

from constitution.models import Evaluation, Scores
from constitution.responses import (
    DEFAULT_TEMPLATES,
    build_response,
    load_templates,
    strongest_category,
)


def _scores(value, fairness, protection):
    total = value * 0.35 + fairness * 0.35 + protection * 0.30
    return Scores(value=value, fairness=fairness, protection=protection, total=total)


APPROVED = DEFAULT_TEMPLATES["approved"]
REJECTED = DEFAULT_TEMPLATES["rejected"]


class TestTemplates:

    def test_yaml_matches_builtin(self):
        assert load_templates() == DEFAULT_TEMPLATES

    def test_missing_file_falls_back(self, tmp_path):
        assert load_templates(tmp_path / "absent.yaml") is DEFAULT_TEMPLATES

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_templates(Path(path))


class TestStrongestCategory:

    def test_strict_max(self):
        assert strongest_category(_scores(0.8, 0.9, 0.85)) == "fairness"

    def test_tie_has_no_strongest(self):
        assert strongest_category(_scores(0.9, 0.9, 0.8)) is None


class TestBuildResponse:

    def test_approved_high_consensus(self):
        text = build_response(_scores(0.85, 0.95, 0.9), approved=True, high_consensus=True)
        assert text == (
            APPROVED["opening"]
            + APPROVED["strongest"]["fairness"]
            + APPROVED["consensus"]["high"]
        )

    def test_approved_with_recommendations(self):
        text = build_response(_scores(0.75, 0.9, 0.78), approved=True, high_consensus=False)
        assert text == (
            APPROVED["opening"]
            + APPROVED["strongest"]["fairness"]
            + APPROVED["consensus"]["low"]
            + APPROVED["recommendations"]["value"]
            + APPROVED["recommendations"]["protection"]
        )

    def test_approved_tie_skips_strongest(self):
        text = build_response(_scores(0.9, 0.9, 0.85), approved=True, high_consensus=True)
        assert text == APPROVED["opening"] + APPROVED["consensus"]["high"]

    def test_rejected(self):
        text = build_response(_scores(0.5, 0.6, 0.9), approved=False, high_consensus=False)
        assert text == (
            REJECTED["opening"]
            + REJECTED["deficits"]["value"]
            + REJECTED["deficits"]["fairness"]
            + REJECTED["closing"]
        )

    def test_rejected_without_deficits(self):
        text = build_response(_scores(0.7, 0.7, 0.7), approved=False, high_consensus=True)
        assert text == REJECTED["opening"] + REJECTED["closing"]

    def test_same_inputs_same_text(self):
        scores = _scores(0.8, 0.75, 0.82)
        assert build_response(scores, True, False) == build_response(scores, True, False)


class TestEvaluationWire:

    def test_from_api_dict(self):
        data = {
            "scores": {"value": 0.8, "fairness": 0.9, "protection": 0.825, "total": 0.8425},
            "consensusIndex": 0.99,
            "approved": True,
            "highConsensus": True,
            "response": "After constitutional analysis...",
            "timestamp": "2025-01-01T12:00:00Z",
        }
        evaluation = Evaluation.from_api_dict(data, proposal_id="prop_1")

        assert evaluation.scores.fairness == 0.9
        assert evaluation.approved is True
        assert evaluation.response_text == "After constitutional analysis..."
        assert evaluation.created_at.year == 2025
        assert evaluation.to_api_dict()["timestamp"] == "2025-01-01T12:00:00Z"
