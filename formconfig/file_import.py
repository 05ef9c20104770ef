from __future__ import annotations

import csv
import io
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .schema_model import FormConfigError

MAX_UPLOAD_BYTES = 2 * 1024 * 1024
DEFAULT_SECTION_TITLE = "Imported Fields"
LIST_SEPARATORS = re.compile(r"[;|]")
TRUTHY = {"1", "true", "yes", "y", "required"}


class FileImportError(FormConfigError):
    pass


@dataclass
class ParsedUpload:
    """``kind`` is ``document`` for a whole configuration, otherwise a snippet kind."""

    kind: str
    payload: dict[str, Any]


def parse_upload(filename: str, content: bytes) -> ParsedUpload:
    if len(content) > MAX_UPLOAD_BYTES:
        raise FileImportError(f"Upload exceeds {MAX_UPLOAD_BYTES} bytes.")
    suffix = Path(filename or "").suffix.lower()
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FileImportError(f"Upload is not UTF-8 text: {exc}") from exc

    if suffix == ".json":
        return _parse_json(text)
    if suffix == ".csv":
        return ParsedUpload(kind="document", payload=parse_field_sheet(text))
    raise FileImportError(f"Unsupported file type '{suffix or filename}'. Use .json or .csv.")


def parse_field_sheet(text: str) -> dict[str, Any]:
    """Turn a CSV field sheet into a whole document, one section per ``section`` column value.

    Recognised columns: section, id, label, fieldType, required,
    requiredAtStage, options, placeholder, helperText, conditionalGroup.
    List columns use ``;`` or ``|`` as separators.
    """
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames or "label" not in reader.fieldnames:
        raise FileImportError("CSV field sheet must have a 'label' column.")

    sections: dict[str, dict[str, Any]] = {}
    for row_number, row in enumerate(reader, start=2):
        label = (row.get("label") or "").strip()
        if not label:
            continue
        title = (row.get("section") or "").strip() or DEFAULT_SECTION_TITLE
        section = sections.setdefault(
            title,
            {"id": f"section_{len(sections) + 1}", "sectionTitle": title, "fields": []},
        )
        field_id = (row.get("id") or "").strip() or _slug(label, row_number)
        item: dict[str, Any] = {
            "id": field_id,
            "fieldType": (row.get("fieldType") or "text").strip().lower() or "text",
            "label": label,
            "required": (row.get("required") or "").strip().lower() in TRUTHY,
        }
        stages = _split_list(row.get("requiredAtStage"))
        if stages:
            item["requiredAtStage"] = stages
        options = _split_list(row.get("options"))
        if options:
            item["options"] = options
        for column in ("placeholder", "helperText", "conditionalGroup"):
            value = (row.get(column) or "").strip()
            if value:
                item[column] = value
        section["fields"].append(item)

    if not sections:
        raise FileImportError("CSV field sheet contains no fields.")
    return {
        "sections": list(sections.values()),
        "validationFields": [],
        "requiredDocuments": {"categories": []},
        "ruleContextMapping": {},
    }


def _parse_json(text: str) -> ParsedUpload:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FileImportError(f"JSON parsing error: {exc}") from exc
    if not isinstance(payload, dict):
        raise FileImportError("JSON upload must contain an object.")
    if "sections" in payload:
        return ParsedUpload(kind="document", payload=payload)
    if "sectionTitle" in payload:
        return ParsedUpload(kind="section", payload=payload)
    if "fieldType" in payload:
        return ParsedUpload(kind="field", payload=payload)
    if "documents" in payload:
        return ParsedUpload(kind="document_category", payload=payload)
    raise FileImportError("JSON upload does not look like a form configuration or snippet.")


def _split_list(raw: Any) -> list[str]:
    if not isinstance(raw, str):
        return []
    return [part.strip() for part in LIST_SEPARATORS.split(raw) if part.strip()]


def _slug(label: str, row_number: int) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return slug or f"field_row_{row_number}"
