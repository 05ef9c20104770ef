from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

from .schema_model import CHOICE_FIELD_TYPES, VARIANT_ATTRIBUTES, FormConfigError
from .stages import unknown_stages

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "form_configuration.schema.json"

COMMON_FILE_TYPES = {".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx", ".xls", ".xlsx", ".txt"}

FRAGMENT_DEFINITIONS = {
    "section": "section",
    "field": "field",
    "validation_field": "field",
    "document_category": "document_category",
}


class StructuralValidationError(FormConfigError):
    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors) or "Invalid form configuration.")


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise StructuralValidationError(self.errors, self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@lru_cache(maxsize=1)
def load_schema() -> dict[str, Any]:
    payload = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise FormConfigError(f"Expected object JSON in '{SCHEMA_PATH}'.")
    return payload


def validate_form_config(payload: Any) -> ValidationReport:
    """Structural validation for an imported or template document.

    Schema violations short-circuit the cross-reference checks since
    those assume the documented shape.
    """
    report = ValidationReport()
    if not isinstance(payload, dict):
        report.errors.append(f"(root): expected a JSON object, got {type(payload).__name__}")
        return report

    report.errors.extend(_schema_errors(payload, load_schema()))
    if "metadata" not in payload:
        report.warnings.append("metadata: missing, it will be stamped on save")
    if report.errors:
        return report

    sections = payload.get("sections", [])
    validation_fields = payload.get("validationFields", [])
    categories = (payload.get("requiredDocuments") or {}).get("categories", [])

    section_ids = [section["id"] for section in sections]
    _append_duplicates(report.errors, section_ids, "Duplicate section IDs found")

    section_field_ids: list[str] = []
    located_fields: list[tuple[str, dict[str, Any]]] = []
    for s_idx, section in enumerate(sections):
        path = f"sections[{s_idx}]"
        if not section["sectionTitle"].strip():
            report.errors.append(f"{path}.sectionTitle: must not be blank")
        if not section["fields"]:
            report.warnings.append(f'Section "{section["sectionTitle"]}" has no fields')
        for f_idx, item in enumerate(section["fields"]):
            section_field_ids.append(item["id"])
            located_fields.append((f"{path}.fields[{f_idx}]", item))

    validation_ids = [item["id"] for item in validation_fields]
    for v_idx, item in enumerate(validation_fields):
        located_fields.append((f"validationFields[{v_idx}]", item))

    _append_duplicates(report.errors, section_field_ids, "Duplicate field IDs found")
    _append_duplicates(report.errors, validation_ids, "Duplicate validation field IDs found")
    for field_id in sorted(set(section_field_ids) & set(validation_ids)):
        report.warnings.append(
            f"Field '{field_id}' is defined in a section and in validationFields; "
            "it will be removed from the section on save"
        )

    for path, item in located_fields:
        _check_field(path, item, report)

    known_ids = set(section_field_ids) | set(validation_ids)
    for path, item in located_fields:
        display = item.get("conditionalDisplay")
        if display and display["dependsOn"] not in known_ids:
            report.errors.append(
                f"{path}.conditionalDisplay.dependsOn: references unknown field '{display['dependsOn']}'"
            )
    for cycle in _dependency_cycles([item for _, item in located_fields]):
        report.errors.append(f"conditionalDisplay dependency cycle: {' -> '.join(cycle)}")

    category_ids = [category["id"] for category in categories]
    _append_duplicates(report.errors, category_ids, "Duplicate document category IDs found")
    for c_idx, category in enumerate(categories):
        _check_category(f"requiredDocuments.categories[{c_idx}]", category, report)

    labels = {item["label"].strip().lower() for _, item in located_fields}
    for label in (payload.get("ruleContextMapping") or {}).keys():
        if label.strip().lower() not in labels:
            report.warnings.append(f"ruleContextMapping: label '{label}' does not match any field")
    return report


def validate_fragment(kind: str, fragment: Any) -> ValidationReport:
    """Validate a single snippet fragment against the definition for ``kind``."""
    report = ValidationReport()
    definition = FRAGMENT_DEFINITIONS.get(kind)
    if definition is None:
        report.errors.append(f"Unknown snippet kind '{kind}'.")
        return report
    if not isinstance(fragment, dict):
        report.errors.append(f"(root): expected a JSON object, got {type(fragment).__name__}")
        return report

    schema = load_schema()
    fragment_schema = {
        "definitions": schema["definitions"],
        "$ref": f"#/definitions/{definition}",
    }
    report.errors.extend(_schema_errors(fragment, fragment_schema))
    if report.errors:
        return report

    if definition == "field":
        _check_field("(root)", fragment, report)
    elif definition == "section":
        if not fragment["sectionTitle"].strip():
            report.errors.append("(root).sectionTitle: must not be blank")
        field_ids = [item["id"] for item in fragment["fields"]]
        _append_duplicates(report.errors, field_ids, "Duplicate field IDs found")
        for f_idx, item in enumerate(fragment["fields"]):
            _check_field(f"fields[{f_idx}]", item, report)
    else:
        _check_category("(root)", fragment, report)
    return report


def _schema_errors(payload: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda error: list(error.absolute_path))
    return [f"{_format_path(error.absolute_path)}: {error.message}" for error in errors]


def _format_path(parts: Any) -> str:
    path = ""
    for part in parts:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "(root)"


def _check_field(path: str, item: dict[str, Any], report: ValidationReport) -> None:
    label = item["label"]
    if not label.strip():
        report.errors.append(f"{path}.label: must not be blank")
    field_type = item["fieldType"]
    if field_type in CHOICE_FIELD_TYPES and not item.get("options"):
        report.errors.append(
            f'{path} ("{label}"): select/radio fields must define at least one option'
        )
    for attribute, allowed_types in VARIANT_ATTRIBUTES.items():
        if attribute in item and field_type not in allowed_types:
            report.warnings.append(
                f'{path} ("{label}"): {attribute} is ignored for {field_type} fields'
            )
    if "min" in item and "max" in item and item["min"] > item["max"]:
        report.errors.append(f'{path} ("{label}"): min must not exceed max')
    for stage in unknown_stages(item.get("requiredAtStage")):
        report.warnings.append(f'{path} ("{label}"): unknown stage "{stage}" in requiredAtStage')
    display = item.get("conditionalDisplay")
    if display and display["dependsOn"] == item["id"]:
        report.errors.append(f"{path}.conditionalDisplay.dependsOn: field cannot depend on itself")


def _check_category(path: str, category: dict[str, Any], report: ValidationReport) -> None:
    doc_ids = [doc["id"] for doc in category["documents"]]
    _append_duplicates(
        report.errors,
        doc_ids,
        f'Duplicate document IDs in category "{category["name"]}"',
    )
    for doc in category["documents"]:
        uncommon = [
            file_type
            for file_type in doc["acceptedFileTypes"]
            if file_type.lower() not in COMMON_FILE_TYPES
        ]
        if uncommon:
            report.warnings.append(
                f'Document "{doc["name"]}" has uncommon file types: {", ".join(uncommon)}'
            )


def _append_duplicates(errors: list[str], values: list[str], message: str) -> None:
    duplicates = [value for value, count in Counter(values).items() if count > 1]
    if duplicates:
        errors.append(f"{message}: {', '.join(duplicates)}")


def _dependency_cycles(fields: list[dict[str, Any]]) -> list[list[str]]:
    edges: dict[str, str] = {}
    for item in fields:
        display = item.get("conditionalDisplay")
        if display and item["id"] not in edges:
            edges[item["id"]] = display["dependsOn"]

    cycles: list[list[str]] = []
    settled: set[str] = set()
    for start in edges:
        path: list[str] = []
        node: str | None = start
        while node is not None and node in edges and node not in settled and node not in path:
            path.append(node)
            node = edges[node]
        if node is not None and node in path:
            cycle = path[path.index(node):]
            if len(cycle) > 1:
                cycles.append(cycle + [node])
        settled.update(path)
    return cycles
