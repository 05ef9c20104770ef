from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .resolver import is_empty_value
from .schema_model import FormConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeuristicRule:
    context_key: str
    label_terms: tuple[str, ...]
    transform: Callable[[Any], Optional[Any]]


def _location_type(value: Any) -> Optional[str]:
    text = str(value).lower()
    if "freezone" in text or "free zone" in text:
        return "freezone"
    if "mainland" in text:
        return "mainland"
    return None


def _verbatim(value: Any) -> Any:
    return value


# Evaluated in order; a field feeds at most the first rule whose terms it matches.
HEURISTIC_RULES = (
    HeuristicRule("locationType", ("license", "licence", "location"), _location_type),
    HeuristicRule("emirate", ("jurisdiction", "emirate"), _verbatim),
    HeuristicRule("activityRiskLevel", ("risk",), _verbatim),
    HeuristicRule("nationality", ("nationality",), _verbatim),
)


def build_inverse_mapping(mapping: Mapping[str, str]) -> dict[str, list[str]]:
    """contextKey -> labels that map to it, in mapping order."""
    inverse: dict[str, list[str]] = {}
    for label, context_key in mapping.items():
        inverse.setdefault(context_key, []).append(label)
    return inverse


def extract(config: FormConfiguration, field_values: Mapping[str, Any]) -> dict[str, Any]:
    """Build the rule context handed to the external risk service.

    ``field_values`` may be keyed by field id or by field label. Explicit
    ``ruleContextMapping`` entries are applied first and copied verbatim;
    unmapped fields then go through ``HEURISTIC_RULES``. A context key,
    once set, is never overwritten in the same call.
    """
    label_to_key = {
        _normalize_label(label): context_key
        for context_key, labels in build_inverse_mapping(config.rule_context_mapping).items()
        for label in labels
    }
    fields = config.field_index()
    entries: list[tuple[str, str, Any]] = []
    for raw_key, value in field_values.items():
        if is_empty_value(value):
            continue
        item = fields.get(raw_key)
        label = item.label if item is not None else str(raw_key)
        entries.append((str(raw_key), label, value))

    context: dict[str, Any] = {}
    unmapped: list[tuple[str, str, Any]] = []
    for raw_key, label, value in entries:
        context_key = label_to_key.get(_normalize_label(label)) or label_to_key.get(_normalize_label(raw_key))
        if context_key is None:
            unmapped.append((raw_key, label, value))
            continue
        if context_key not in context:
            context[context_key] = value

    for raw_key, label, value in unmapped:
        haystack = f"{label} {raw_key}".lower()
        for rule in HEURISTIC_RULES:
            if not any(term in haystack for term in rule.label_terms):
                continue
            transformed = rule.transform(value)
            if transformed is None:
                continue
            if rule.context_key not in context:
                context[rule.context_key] = transformed
                logger.debug("Heuristic %s set from field %s", rule.context_key, label)
            break
    return context


def _normalize_label(label: Any) -> str:
    return str(label).strip().lower()
