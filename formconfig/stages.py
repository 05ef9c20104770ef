from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

# Lifecycle order used for stage gating and "Required at" hints.
CANONICAL_STAGES = (
    "predraft",
    "draft",
    "submitted",
    "review",
    "approval",
    "returned",
    "rejected",
    "completed",
    "paid",
)

STAGE_ALIASES = {
    "under_review": "review",
    "under-review": "review",
    "pre_draft": "predraft",
    "pre-draft": "predraft",
}

STAGE_LABELS = {
    "predraft": "Pre-draft",
    "draft": "Draft",
    "submitted": "Submitted",
    "review": "Under Review",
    "approval": "Approval",
    "returned": "Returned",
    "rejected": "Rejected",
    "completed": "Completed",
    "paid": "Paid",
}


def normalize_stage(value: Any, *, stage_order: Sequence[str] = CANONICAL_STAGES) -> Optional[str]:
    """Return the canonical stage name for ``value`` or None when it is not on the allow-list."""
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    if not cleaned:
        return None
    cleaned = STAGE_ALIASES.get(cleaned, cleaned)
    if cleaned in stage_order:
        return cleaned
    return None


def is_known_stage(value: Any, *, stage_order: Sequence[str] = CANONICAL_STAGES) -> bool:
    return normalize_stage(value, stage_order=stage_order) is not None


def stage_rank(stage: Any, *, stage_order: Sequence[str] = CANONICAL_STAGES) -> int:
    normalized = normalize_stage(stage, stage_order=stage_order)
    if normalized is None:
        return -1
    return list(stage_order).index(normalized)


def normalize_stage_list(
    stages: Optional[Iterable[Any]],
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> list[str]:
    normalized: list[str] = []
    for stage in stages or []:
        clean = normalize_stage(stage, stage_order=stage_order)
        if clean and clean not in normalized:
            normalized.append(clean)
    return normalized


def unknown_stages(
    stages: Optional[Iterable[Any]],
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> list[str]:
    return [
        str(stage)
        for stage in stages or []
        if normalize_stage(stage, stage_order=stage_order) is None
    ]


def next_required_stage(
    required_at_stage: Optional[Iterable[Any]],
    current_stage: Any,
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> Optional[str]:
    """First stage in ``required_at_stage`` that comes strictly after ``current_stage``.

    An unrecognised current stage ranks before every known stage, so the
    earliest listed stage is returned.
    """
    current_rank = stage_rank(current_stage, stage_order=stage_order)
    candidates = [
        stage
        for stage in normalize_stage_list(required_at_stage, stage_order=stage_order)
        if stage_rank(stage, stage_order=stage_order) > current_rank
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda stage: stage_rank(stage, stage_order=stage_order))


def stage_label(stage: str) -> str:
    return STAGE_LABELS.get(stage, stage.replace("_", " ").title())


def required_at_hint(stage: Optional[str]) -> Optional[str]:
    if not stage:
        return None
    return f"Required at: {stage_label(stage)}"


def list_stages(*, stage_order: Sequence[str] = CANONICAL_STAGES) -> list[dict[str, Any]]:
    return [
        {"stage": stage, "label": stage_label(stage), "order": index}
        for index, stage in enumerate(stage_order)
    ]
