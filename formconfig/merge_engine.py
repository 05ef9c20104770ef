from __future__ import annotations

import copy
import json
import re
from typing import Any, Iterable, Optional, Sequence, TypeVar

from .config_validation import (
    FRAGMENT_DEFINITIONS,
    StructuralValidationError,
    validate_form_config,
    validate_fragment,
)
from .schema_model import (
    DocumentCategory,
    DocumentItem,
    FormConfigError,
    FormConfiguration,
    FormField,
    Section,
)
from .stages import unknown_stages

SNIPPET_KINDS = tuple(FRAGMENT_DEFINITIONS.keys())
REORDER_COLLECTIONS = ("sections", "fields", "validationFields", "categories", "documents")

T = TypeVar("T")


class PatchRejectedError(FormConfigError):
    pass


class EditRejectedError(FormConfigError):
    pass


def replace_whole_document(new_doc: Any) -> tuple[FormConfiguration, list[str]]:
    """Validate and accept a full document (import or template load).

    Returns the parsed configuration and the non-blocking warnings.
    Raises ``StructuralValidationError`` when any blocking error is found.
    """
    if isinstance(new_doc, (str, bytes)):
        try:
            new_doc = json.loads(new_doc)
        except json.JSONDecodeError as exc:
            raise StructuralValidationError([f"JSON parsing error: {exc}"]) from exc
    report = validate_form_config(new_doc)
    report.raise_for_errors()
    try:
        config = FormConfiguration.from_dict(new_doc)
    except FormConfigError as exc:
        raise StructuralValidationError([str(exc)], report.warnings) from exc
    return config, report.warnings


def apply_snippet(
    config: FormConfiguration,
    kind: str,
    fragment: Any,
    *,
    target_section_id: Optional[str] = None,
) -> FormConfiguration:
    """Upsert one fragment by id into its target collection.

    A fragment whose id matches an existing element replaces it at the
    same position; otherwise it is appended. The input configuration is
    never modified: the fragment is either fully applied to a copy or
    rejected.
    """
    fragment = check_snippet(kind, fragment)
    updated = config.copy()
    try:
        if kind == "section":
            section = Section.from_dict(fragment)
            _reject_foreign_field_ids(updated, [item.id for item in section.fields], skip_section=section.id)
            updated.sections = upsert_by_id(updated.sections, section)
        elif kind == "field":
            item = FormField.from_dict(fragment)
            section = _target_section(updated, target_section_id)
            _reject_foreign_field_ids(updated, [item.id], skip_section=section.id)
            section.fields = upsert_by_id(section.fields, item)
        elif kind == "validation_field":
            item = FormField.from_dict(fragment)
            updated.validation_fields = upsert_by_id(updated.validation_fields, item)
        else:
            category = DocumentCategory.from_dict(fragment)
            updated.document_categories = upsert_by_id(updated.document_categories, category)
    except FormConfigError as exc:
        if isinstance(exc, PatchRejectedError):
            raise
        raise PatchRejectedError(str(exc)) from exc
    return updated


def check_snippet(kind: str, fragment: Any) -> dict[str, Any]:
    """Parse and validate a snippet fragment without applying it."""
    if kind not in SNIPPET_KINDS:
        raise PatchRejectedError(
            f"Unknown snippet kind '{kind}'. Expected one of: {', '.join(SNIPPET_KINDS)}."
        )
    fragment = _parse_fragment(fragment)
    report = validate_fragment(kind, fragment)
    if not report.is_valid:
        raise PatchRejectedError("; ".join(report.errors))
    return fragment


def dedupe(config: FormConfiguration) -> FormConfiguration:
    """Drop section copies of validation-only fields and any section left empty by that."""
    validation_ids = {item.id for item in config.validation_fields}
    updated = config.copy()
    if not validation_ids:
        return updated
    sections: list[Section] = []
    for section in updated.sections:
        kept = [item for item in section.fields if item.id not in validation_ids]
        if len(kept) != len(section.fields) and not kept:
            continue
        section.fields = kept
        sections.append(section)
    updated.sections = sections
    return updated


def reorder(items: Sequence[T], from_index: int, to_index: int) -> list[T]:
    """Stable array move of one element; ids and other positions are untouched."""
    size = len(items)
    if not 0 <= from_index < size:
        raise EditRejectedError(f"from_index {from_index} is out of range for {size} items.")
    if not 0 <= to_index < size:
        raise EditRejectedError(f"to_index {to_index} is out of range for {size} items.")
    moved = list(items)
    element = moved.pop(from_index)
    moved.insert(to_index, element)
    return moved


def reorder_collection(
    config: FormConfiguration,
    collection: str,
    from_index: int,
    to_index: int,
    *,
    parent_id: Optional[str] = None,
) -> FormConfiguration:
    updated = config.copy()
    if collection == "sections":
        updated.sections = reorder(updated.sections, from_index, to_index)
    elif collection == "fields":
        section = _require_section(updated, parent_id)
        section.fields = reorder(section.fields, from_index, to_index)
    elif collection == "validationFields":
        updated.validation_fields = reorder(updated.validation_fields, from_index, to_index)
    elif collection == "categories":
        updated.document_categories = reorder(updated.document_categories, from_index, to_index)
    elif collection == "documents":
        category = _require_category(updated, parent_id)
        category.documents = reorder(category.documents, from_index, to_index)
    else:
        raise EditRejectedError(
            f"Unknown collection '{collection}'. Expected one of: {', '.join(REORDER_COLLECTIONS)}."
        )
    return updated


def upsert_by_id(items: Sequence[T], element: T) -> list[T]:
    updated = list(items)
    index = index_of(updated, getattr(element, "id"))
    if index is None:
        updated.append(element)
    else:
        updated[index] = element
    return updated


def index_of(items: Iterable[Any], element_id: str) -> Optional[int]:
    for index, item in enumerate(items):
        if getattr(item, "id", None) == element_id:
            return index
    return None


def next_free_id(prefix: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)$")
    highest = 0
    for value in taken:
        match = pattern.match(value)
        if match:
            highest = max(highest, int(match.group(1)))
    candidate = highest + 1
    while f"{prefix}_{candidate}" in taken:
        candidate += 1
    return f"{prefix}_{candidate}"


# Structural edits used by the visual editor.


def add_section(config: FormConfiguration, *, title: str = "New Section") -> tuple[FormConfiguration, str]:
    updated = config.copy()
    section_id = next_free_id("section", [section.id for section in updated.sections])
    updated.sections.append(Section(id=section_id, section_title=title, fields=[]))
    return updated, section_id


def update_section(config: FormConfiguration, section_id: str, *, title: str) -> FormConfiguration:
    if not isinstance(title, str) or not title.strip():
        raise EditRejectedError("Section title is required.")
    updated = config.copy()
    _require_section(updated, section_id).section_title = title
    return updated


def remove_section(config: FormConfiguration, section_id: str) -> FormConfiguration:
    updated = config.copy()
    _require_section(updated, section_id)
    updated.sections = [section for section in updated.sections if section.id != section_id]
    return updated


def add_field(
    config: FormConfiguration,
    section_id: str,
    *,
    field_type: str = "text",
    label: str = "New Field",
) -> tuple[FormConfiguration, str]:
    updated = config.copy()
    section = _require_section(updated, section_id)
    field_id = next_free_id("field", [item.id for item in updated.iter_fields()])
    payload: dict[str, Any] = {
        "id": field_id,
        "fieldType": field_type,
        "label": label,
        "placeholder": "",
        "required": False,
        "helperText": "",
    }
    try:
        section.fields.append(FormField.from_dict(payload))
    except FormConfigError as exc:
        raise EditRejectedError(str(exc)) from exc
    return updated, field_id


def update_field(config: FormConfiguration, field_id: str, updates: dict[str, Any]) -> FormConfiguration:
    """Shallow-merge camelCase ``updates`` into a field wherever it lives."""
    if "id" in updates and updates["id"] != field_id:
        raise EditRejectedError("Field id cannot be changed through an update.")
    updated = config.copy()
    collection, index = _locate_field(updated, field_id)
    payload = collection[index].to_dict()
    for key, value in updates.items():
        if value is None:
            payload.pop(key, None)
        else:
            payload[key] = copy.deepcopy(value)
    report = validate_fragment("field", payload)
    if not report.is_valid:
        raise EditRejectedError("; ".join(report.errors))
    collection[index] = FormField.from_dict(payload)
    return updated


def remove_field(config: FormConfiguration, field_id: str) -> FormConfiguration:
    updated = config.copy()
    _locate_field(updated, field_id)
    for section in updated.sections:
        section.fields = [item for item in section.fields if item.id != field_id]
    updated.validation_fields = [item for item in updated.validation_fields if item.id != field_id]
    return updated


def promote_to_validation_field(config: FormConfiguration, field_id: str) -> FormConfiguration:
    """Make a section field validation-only; the section copy is removed by ``dedupe``."""
    located = _find_section_field(config, field_id)
    if located is None:
        raise EditRejectedError(f"Field '{field_id}' is not in any section.")
    updated = config.copy()
    updated.validation_fields = upsert_by_id(updated.validation_fields, copy.deepcopy(located))
    return dedupe(updated)


def demote_validation_field(
    config: FormConfiguration,
    field_id: str,
    section_id: str,
) -> FormConfiguration:
    updated = config.copy()
    index = index_of(updated.validation_fields, field_id)
    if index is None:
        raise EditRejectedError(f"Field '{field_id}' is not a validation field.")
    section = _require_section(updated, section_id)
    item = updated.validation_fields.pop(index)
    section.fields = upsert_by_id(section.fields, item)
    return updated


def add_document_category(
    config: FormConfiguration,
    *,
    name: str = "New Category",
    description: Optional[str] = None,
) -> tuple[FormConfiguration, str]:
    updated = config.copy()
    category_id = next_free_id("category", [category.id for category in updated.document_categories])
    updated.document_categories.append(
        DocumentCategory(id=category_id, name=name, description=description, documents=[])
    )
    return updated, category_id


def update_document_category(
    config: FormConfiguration,
    category_id: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> FormConfiguration:
    updated = config.copy()
    category = _require_category(updated, category_id)
    if name is not None:
        if not name.strip():
            raise EditRejectedError("Category name is required.")
        category.name = name
    if description is not None:
        category.description = description
    return updated


def remove_document_category(config: FormConfiguration, category_id: str) -> FormConfiguration:
    updated = config.copy()
    _require_category(updated, category_id)
    updated.document_categories = [
        category for category in updated.document_categories if category.id != category_id
    ]
    return updated


def add_document(
    config: FormConfiguration,
    category_id: str,
    *,
    name: str = "New Document",
    is_mandatory: bool = False,
    accepted_file_types: Optional[list[str]] = None,
    description: Optional[str] = None,
) -> tuple[FormConfiguration, str]:
    file_types = list(accepted_file_types or [".pdf"])
    if not file_types:
        raise EditRejectedError("At least one file type is required.")
    updated = config.copy()
    category = _require_category(updated, category_id)
    existing = [doc.id for item in updated.document_categories for doc in item.documents]
    doc_id = next_free_id("doc", existing)
    category.documents.append(
        DocumentItem(
            id=doc_id,
            name=name,
            is_mandatory=is_mandatory,
            accepted_file_types=file_types,
            description=description,
        )
    )
    return updated, doc_id


def update_document(
    config: FormConfiguration,
    category_id: str,
    doc_id: str,
    updates: dict[str, Any],
) -> FormConfiguration:
    updated = config.copy()
    category = _require_category(updated, category_id)
    index = index_of(category.documents, doc_id)
    if index is None:
        raise EditRejectedError(f"Document '{doc_id}' not found in category '{category_id}'.")
    payload = category.documents[index].to_dict()
    payload.update({key: copy.deepcopy(value) for key, value in updates.items() if key != "id"})
    category_payload = {"id": category.id, "name": category.name or "-", "documents": [payload]}
    report = validate_fragment("document_category", category_payload)
    if not report.is_valid:
        raise EditRejectedError("; ".join(report.errors))
    category.documents[index] = DocumentItem.from_dict(payload)
    return updated


def remove_document(config: FormConfiguration, category_id: str, doc_id: str) -> FormConfiguration:
    updated = config.copy()
    category = _require_category(updated, category_id)
    if index_of(category.documents, doc_id) is None:
        raise EditRejectedError(f"Document '{doc_id}' not found in category '{category_id}'.")
    category.documents = [doc for doc in category.documents if doc.id != doc_id]
    return updated


def set_rule_context_mapping(
    config: FormConfiguration,
    label: str,
    context_key: str,
) -> FormConfiguration:
    """Map ``label`` to ``context_key``; any other label holding that key loses it."""
    clean_label = (label or "").strip()
    clean_key = (context_key or "").strip()
    if not clean_label or not clean_key:
        raise EditRejectedError("Both label and context key are required.")
    updated = config.copy()
    updated.rule_context_mapping = {
        existing_label: existing_key
        for existing_label, existing_key in updated.rule_context_mapping.items()
        if existing_key != clean_key and existing_label != clean_label
    }
    updated.rule_context_mapping[clean_label] = clean_key
    return updated


def clear_rule_context_mapping(config: FormConfiguration, label: str) -> FormConfiguration:
    updated = config.copy()
    updated.rule_context_mapping.pop(label, None)
    return updated


# Batch transforms, applied per product by the service layer.


def set_required_stages(config: FormConfiguration, stages: list[str]) -> tuple[FormConfiguration, int]:
    """Set ``requiredAtStage`` on every section field. Validation fields are left alone."""
    invalid = unknown_stages(stages)
    if invalid:
        raise EditRejectedError(f"Unknown stages: {', '.join(invalid)}")
    updated = config.copy()
    count = 0
    for section in updated.sections:
        for item in section.fields:
            item.required_at_stage = list(stages)
            count += 1
    return updated, count


def ensure_validation_fields(
    config: FormConfiguration,
    fields: list[FormField],
) -> FormConfiguration:
    """Put ``fields`` first in ``validationFields``, keeping other existing validation fields after them."""
    ids = {item.id for item in fields}
    updated = config.copy()
    updated.validation_fields = [copy.deepcopy(item) for item in fields] + [
        item for item in updated.validation_fields if item.id not in ids
    ]
    return updated


def _parse_fragment(fragment: Any) -> Any:
    if isinstance(fragment, (str, bytes)):
        try:
            return json.loads(fragment)
        except json.JSONDecodeError as exc:
            raise PatchRejectedError(f"Invalid JSON: {exc}") from exc
    return fragment


def _target_section(config: FormConfiguration, target_section_id: Optional[str]) -> Section:
    if target_section_id:
        section = config.section_by_id(target_section_id)
        if section is None:
            raise PatchRejectedError(f"Target section '{target_section_id}' not found.")
        return section
    if not config.sections:
        raise PatchRejectedError("No sections exist to receive the field.")
    return config.sections[0]


def _reject_foreign_field_ids(
    config: FormConfiguration,
    field_ids: list[str],
    *,
    skip_section: str,
) -> None:
    wanted = set(field_ids)
    for section in config.sections:
        if section.id == skip_section:
            continue
        clashes = sorted(wanted & {item.id for item in section.fields})
        if clashes:
            raise PatchRejectedError(
                f"Field IDs already used in section '{section.id}': {', '.join(clashes)}"
            )


def _require_section(config: FormConfiguration, section_id: Optional[str]) -> Section:
    section = config.section_by_id(section_id) if section_id else None
    if section is None:
        raise EditRejectedError(f"Section '{section_id}' not found.")
    return section


def _require_category(config: FormConfiguration, category_id: Optional[str]) -> DocumentCategory:
    category = config.category_by_id(category_id) if category_id else None
    if category is None:
        raise EditRejectedError(f"Document category '{category_id}' not found.")
    return category


def _find_section_field(config: FormConfiguration, field_id: str) -> Optional[FormField]:
    for section in config.sections:
        for item in section.fields:
            if item.id == field_id:
                return item
    return None


def _locate_field(config: FormConfiguration, field_id: str) -> tuple[list[FormField], int]:
    for section in config.sections:
        index = index_of(section.fields, field_id)
        if index is not None:
            return section.fields, index
    index = index_of(config.validation_fields, field_id)
    if index is not None:
        return config.validation_fields, index
    raise EditRejectedError(f"Field '{field_id}' not found.")
