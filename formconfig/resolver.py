from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from .schema_model import FormConfiguration, FormField
from .stages import (
    CANONICAL_STAGES,
    is_known_stage,
    next_required_stage,
    normalize_stage,
    normalize_stage_list,
    required_at_hint,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class GroupStatus:
    name: str
    field_ids: list[str] = field(default_factory=list)
    required: bool = False
    satisfied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.name,
            "fieldIds": list(self.field_ids),
            "required": self.required,
            "satisfied": self.satisfied,
        }


@dataclass
class Resolution:
    stage: Optional[str]
    visible: set[str] = field(default_factory=set)
    required_now: set[str] = field(default_factory=set)
    groups: dict[str, GroupStatus] = field(default_factory=dict)
    next_required_stage: dict[str, str] = field(default_factory=dict)
    cyclic: set[str] = field(default_factory=set)
    dangling: set[str] = field(default_factory=set)

    @property
    def unsatisfied_groups(self) -> list[GroupStatus]:
        return [group for group in self.groups.values() if group.required and not group.satisfied]

    def hints(self) -> dict[str, str]:
        return {
            field_id: required_at_hint(stage)
            for field_id, stage in self.next_required_stage.items()
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "visible": sorted(self.visible),
            "requiredNow": sorted(self.required_now),
            "groups": [group.to_dict() for group in self.groups.values()],
            "nextRequiredStage": dict(self.next_required_stage),
            "requiredAtHints": self.hints(),
            "cyclicFields": sorted(self.cyclic),
            "danglingDependencies": sorted(self.dangling),
        }


@dataclass
class StageValidationReport:
    stage: str
    errors: list[dict[str, str]] = field(default_factory=list)
    group_errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors and not self.group_errors

    def messages(self) -> list[str]:
        return [item["message"] for item in self.errors] + [
            item["message"] for item in self.group_errors
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "conditionalGroupErrors": list(self.group_errors),
        }


def resolve(
    config: FormConfiguration,
    stage: Any,
    current_values: Optional[Mapping[str, Any]] = None,
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> Resolution:
    """Compute visible and currently-required field ids for ``stage``.

    Never raises. Unknown stages disable stage-based requirements, fields
    caught in a ``dependsOn`` cycle are hidden, and fields whose
    ``dependsOn`` points at nothing stay visible but are never required.
    """
    values = dict(current_values or {})
    normalized_stage = normalize_stage(stage, stage_order=stage_order)
    fields = config.field_index()
    resolution = Resolution(stage=normalized_stage)
    resolution.cyclic = _cyclic_field_ids(fields)

    for field_id, item in fields.items():
        if _is_visible(item, fields, values, resolution):
            resolution.visible.add(field_id)

    for field_id, item in fields.items():
        if field_id not in resolution.visible:
            continue
        required = _is_required_at(item, normalized_stage, stage_order)
        if field_id in resolution.dangling:
            required = False

        group_name = item.group
        if group_name:
            group = resolution.groups.setdefault(group_name, GroupStatus(name=group_name))
            group.field_ids.append(field_id)
            group.required = group.required or required
            group.satisfied = group.satisfied or not is_empty_value(values.get(field_id))
        elif required:
            resolution.required_now.add(field_id)

        if not required and item.required_at_stage:
            upcoming = next_required_stage(
                item.required_at_stage,
                normalized_stage,
                stage_order=stage_order,
            )
            if upcoming:
                resolution.next_required_stage[field_id] = upcoming

    logger.debug(
        "Resolved stage=%s visible=%s required=%s groups=%s",
        normalized_stage,
        len(resolution.visible),
        len(resolution.required_now),
        len(resolution.groups),
    )
    return resolution


def validate_form_at_stage(
    config: FormConfiguration,
    values: Optional[Mapping[str, Any]],
    stage: Any,
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> StageValidationReport:
    current_values = dict(values or {})
    resolution = resolve(config, stage, current_values, stage_order=stage_order)
    stage_name = resolution.stage or str(stage)
    report = StageValidationReport(stage=stage_name)
    fields = config.field_index()

    for field_id, item in fields.items():
        if field_id not in resolution.visible:
            continue
        value = current_values.get(field_id)
        if is_empty_value(value):
            if field_id in resolution.required_now:
                report.errors.append(
                    {
                        "fieldId": field_id,
                        "message": f"{item.label} is required at {stage_name} stage",
                    }
                )
            continue
        type_error = _type_error(item, value)
        if type_error:
            report.errors.append({"fieldId": field_id, "message": type_error})

    for group in resolution.unsatisfied_groups:
        report.group_errors.append(
            {
                "group": group.name,
                "message": f"At least one field from '{group.name}' group is required at {stage_name} stage",
            }
        )
    return report


def can_transition_to_stage(
    config: FormConfiguration,
    values: Optional[Mapping[str, Any]],
    from_stage: Any,
    to_stage: Any,
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> tuple[bool, list[str]]:
    if not is_known_stage(to_stage, stage_order=stage_order):
        return False, [f"Unknown stage '{to_stage}'"]
    report = validate_form_at_stage(config, values, from_stage, stage_order=stage_order)
    if not report.is_valid:
        return False, report.messages()
    return True, []


def stage_completion_percentage(
    config: FormConfiguration,
    values: Optional[Mapping[str, Any]],
    stage: Any,
    *,
    stage_order: Sequence[str] = CANONICAL_STAGES,
) -> int:
    current_values = dict(values or {})
    resolution = resolve(config, stage, current_values, stage_order=stage_order)
    required_groups = [group for group in resolution.groups.values() if group.required]
    total = len(resolution.required_now) + len(required_groups)
    if total == 0:
        return 100
    filled = sum(
        1 for field_id in resolution.required_now if not is_empty_value(current_values.get(field_id))
    )
    filled += sum(1 for group in required_groups if group.satisfied)
    return int(math.floor(filled * 100 / total + 0.5))


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def display_value(value: Any) -> Optional[str]:
    """Text form of a live value, used for ``showWhen`` comparisons."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_visible(
    item: FormField,
    fields: Mapping[str, FormField],
    values: Mapping[str, Any],
    resolution: Resolution,
) -> bool:
    display = item.conditional_display
    if display is None:
        return True
    if item.id in resolution.cyclic:
        return False
    if display.depends_on not in fields:
        resolution.dangling.add(item.id)
        return True
    return display_value(values.get(display.depends_on)) in set(display.show_when)


def _is_required_at(item: FormField, stage: Optional[str], stage_order: Sequence[str]) -> bool:
    if item.required_at_stage is None:
        return bool(item.required)
    if stage is None:
        return False
    return stage in normalize_stage_list(item.required_at_stage, stage_order=stage_order)


def _cyclic_field_ids(fields: Mapping[str, FormField]) -> set[str]:
    """Ids of fields that sit on a ``dependsOn`` cycle."""
    edges = {
        field_id: item.conditional_display.depends_on
        for field_id, item in fields.items()
        if item.conditional_display is not None
    }
    cyclic: set[str] = set()
    settled: set[str] = set()
    for start in edges:
        if start in settled:
            continue
        path: list[str] = []
        on_path: set[str] = set()
        node: Optional[str] = start
        while node is not None and node in edges and node not in settled and node not in on_path:
            path.append(node)
            on_path.add(node)
            node = edges[node]
        if node is not None and node in on_path:
            cyclic.update(path[path.index(node):])
        settled.update(path)
    return cyclic


def _type_error(item: FormField, value: Any) -> Optional[str]:
    if item.field_type == "email":
        if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
            return f"{item.label} must be a valid email address"
    if item.field_type == "number":
        number = _as_number(value)
        if number is None:
            return f"{item.label} must be a valid number"
        minimum = _as_number(item.min)
        maximum = _as_number(item.max)
        if minimum is not None and number < minimum:
            return f"{item.label} must be at least {item.min}"
        if maximum is not None and number > maximum:
            return f"{item.label} must be at most {item.max}"
    if item.is_choice and item.options:
        if display_value(value) not in set(item.options):
            return f"{item.label} must be one of: {', '.join(item.options)}"
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if math.isnan(number) or math.isinf(number):
            return None
        return number
    return None
