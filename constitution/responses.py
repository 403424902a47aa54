"""
Deterministic response text for an evaluated proposal.

Templates are stored as YAML next to this module and loaded with
PyYAML's safe_load. If the file is missing the built-in copy below is used,
so scoring never depends on package data being installed.

Selection rules:
- Approved: opening, the strictly strongest category (none on a tie),
  the consensus line, then a recommendation per score under 0.8.
- Rejected: opening, a deficit line per score under 0.7, then the closing.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import Scores


CATEGORIES = ("value", "fairness", "protection")

DEFAULT_TEMPLATES: Dict[str, Any] = {
    "recommendation_threshold": 0.8,
    "deficit_threshold": 0.7,
    "approved": {
        "opening": "After constitutional analysis, I've determined that your proposal aligns well with our governance principles. ",
        "strongest": {
            "value": "The value generation aspects are particularly strong. ",
            "fairness": "The fairness distribution framework is well-designed. ",
            "protection": "The protective safeguards are robust and comprehensive. ",
        },
        "consensus": {
            "high": "There is strong consensus across all constitutional parameters. ",
            "low": "However, there is room to improve consensus alignment. ",
        },
        "recommendations": {
            "value": "Consider enhancing the value generation mechanisms. ",
            "fairness": "The fairness distribution framework could be strengthened. ",
            "protection": "The protection protocols may benefit from additional safeguards. ",
        },
    },
    "rejected": {
        "opening": "After constitutional analysis, I've determined that your proposal requires refinement to fully align with our governance principles. ",
        "deficits": {
            "value": "The value generation mechanisms need significant enhancement. ",
            "fairness": "The fairness distribution framework is inadequate. ",
            "protection": "The protection mechanisms are insufficient. ",
        },
        "closing": "I recommend addressing these issues before resubmission.",
    },
}


def _get_templates_path() -> Path:
    return Path(__file__).parent / "responses.yaml"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Template file {path} must contain a mapping at top-level")
        return data


@lru_cache(maxsize=None)
def load_templates(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load response templates.

    Resolution order:
    1) explicit path
    2) responses.yaml beside this module
    3) built-in defaults
    """
    candidate = path or _get_templates_path()
    if candidate.exists():
        return _load_file(candidate)
    return DEFAULT_TEMPLATES


def strongest_category(scores: Scores) -> Optional[str]:
    """Category strictly greater than both others, or None on a tie."""
    values = {name: getattr(scores, name) for name in CATEGORIES}
    for name in CATEGORIES:
        others = [v for other, v in values.items() if other != name]
        if all(values[name] > v for v in others):
            return name
    return None


def build_response(
    scores: Scores,
    approved: bool,
    high_consensus: bool,
    templates: Optional[Dict[str, Any]] = None,
) -> str:
    t = templates or load_templates()

    if approved:
        section = t["approved"]
        parts = [section["opening"]]

        strongest = strongest_category(scores)
        if strongest:
            parts.append(section["strongest"][strongest])

        parts.append(section["consensus"]["high" if high_consensus else "low"])

        threshold = t.get("recommendation_threshold", 0.8)
        for name in CATEGORIES:
            if getattr(scores, name) < threshold:
                parts.append(section["recommendations"][name])
        return "".join(parts)

    section = t["rejected"]
    parts = [section["opening"]]
    threshold = t.get("deficit_threshold", 0.7)
    for name in CATEGORIES:
        if getattr(scores, name) < threshold:
            parts.append(section["deficits"][name])
    parts.append(section["closing"])
    return "".join(parts)
