from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from formconfig.stages import (  # noqa: E402
    CANONICAL_STAGES,
    list_stages,
    next_required_stage,
    normalize_stage,
    normalize_stage_list,
    required_at_hint,
    stage_rank,
    unknown_stages,
)


def test_normalize_stage_accepts_aliases_and_case():
    assert normalize_stage("Submitted") == "submitted"
    assert normalize_stage(" under_review ") == "review"
    assert normalize_stage("pre-draft") == "predraft"
    assert normalize_stage("archived") is None
    assert normalize_stage(None) is None


def test_stage_set_can_be_extended_by_data():
    order = CANONICAL_STAGES + ("archived",)

    assert normalize_stage("archived", stage_order=order) == "archived"
    assert stage_rank("archived", stage_order=order) == len(CANONICAL_STAGES)


def test_normalize_stage_list_drops_unknown_and_duplicates():
    assert normalize_stage_list(["draft", "DRAFT", "bogus", "submitted"]) == ["draft", "submitted"]
    assert unknown_stages(["draft", "bogus", 7]) == ["bogus", "7"]


def test_next_required_stage_is_strictly_after_current():
    assert next_required_stage(["draft", "submitted"], "draft") == "submitted"
    assert next_required_stage(["paid", "submitted"], "predraft") == "submitted"
    assert next_required_stage(["draft"], "submitted") is None


def test_unknown_current_stage_ranks_before_every_stage():
    assert next_required_stage(["submitted", "draft"], "bogus") == "draft"


def test_required_at_hint_uses_stage_label():
    assert required_at_hint("submitted") == "Required at: Submitted"
    assert required_at_hint("review") == "Required at: Under Review"
    assert required_at_hint(None) is None


def test_list_stages_follows_lifecycle_order():
    stages = list_stages()

    assert [item["stage"] for item in stages] == list(CANONICAL_STAGES)
    assert stages[0] == {"stage": "predraft", "label": "Pre-draft", "order": 0}
