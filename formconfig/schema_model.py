from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional


FieldType = Literal[
    "text",
    "number",
    "email",
    "tel",
    "textarea",
    "select",
    "date",
    "checkbox",
    "radio",
]

FIELD_TYPES = (
    "text",
    "number",
    "email",
    "tel",
    "textarea",
    "select",
    "date",
    "checkbox",
    "radio",
)
CHOICE_FIELD_TYPES = {"select", "radio"}
RANGE_FIELD_TYPES = {"number", "date"}

# Attributes that only mean something for a given field type variant.
VARIANT_ATTRIBUTES = {
    "options": CHOICE_FIELD_TYPES,
    "min": RANGE_FIELD_TYPES,
    "max": RANGE_FIELD_TYPES,
    "step": {"number"},
}

_FIELD_KEYS = {
    "id",
    "fieldType",
    "label",
    "placeholder",
    "required",
    "requiredAtStage",
    "conditionalGroup",
    "conditionalDisplay",
    "options",
    "helperText",
    "min",
    "max",
    "step",
}
_SECTION_KEYS = {"id", "sectionTitle", "fields"}
_DOCUMENT_KEYS = {"id", "name", "description", "isMandatory", "acceptedFileTypes"}
_CATEGORY_KEYS = {"id", "name", "description", "documents"}
_METADATA_KEYS = {
    "version",
    "createdAt",
    "createdBy",
    "lastModifiedAt",
    "lastModifiedBy",
    "versionNotes",
}
_CONFIG_KEYS = {
    "metadata",
    "sections",
    "validationFields",
    "requiredDocuments",
    "ruleContextMapping",
}


class FormConfigError(ValueError):
    pass


@dataclass
class ConditionalDisplay:
    depends_on: str
    show_when: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"dependsOn": self.depends_on, "showWhen": list(self.show_when)}

    @classmethod
    def from_dict(cls, payload: Any) -> "ConditionalDisplay":
        if not isinstance(payload, dict):
            raise FormConfigError("conditionalDisplay must be an object.")
        depends_on = payload.get("dependsOn")
        if not isinstance(depends_on, str) or not depends_on:
            raise FormConfigError("conditionalDisplay.dependsOn must be a non-empty string.")
        show_when = payload.get("showWhen", [])
        if not isinstance(show_when, list):
            raise FormConfigError("conditionalDisplay.showWhen must be an array.")
        return cls(depends_on=depends_on, show_when=[str(value) for value in show_when])


@dataclass
class FormField:
    """A single input. Used both inside sections and as a validation-only field.

    ``field_type`` is the variant tag; ``options`` belongs to the choice
    variants and ``min``/``max``/``step`` to the range variants. Keys the
    model does not know are kept in ``extra`` so nothing is lost on a
    load/save cycle.
    """

    id: str
    field_type: FieldType
    label: str
    required: bool = False
    placeholder: Optional[str] = None
    required_at_stage: Optional[List[str]] = None
    conditional_group: Optional[str] = None
    conditional_display: Optional[ConditionalDisplay] = None
    options: Optional[List[str]] = None
    helper_text: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_choice(self) -> bool:
        return self.field_type in CHOICE_FIELD_TYPES

    @property
    def group(self) -> Optional[str]:
        if isinstance(self.conditional_group, str) and self.conditional_group.strip():
            return self.conditional_group.strip()
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "fieldType": self.field_type,
            "label": self.label,
            "required": self.required,
        }
        optional = {
            "placeholder": self.placeholder,
            "requiredAtStage": list(self.required_at_stage) if self.required_at_stage is not None else None,
            "conditionalGroup": self.conditional_group,
            "conditionalDisplay": self.conditional_display.to_dict() if self.conditional_display else None,
            "options": list(self.options) if self.options is not None else None,
            "helperText": self.helper_text,
            "min": self.min,
            "max": self.max,
            "step": self.step,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        payload.update(copy.deepcopy(self.extra))
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "FormField":
        if not isinstance(payload, dict):
            raise FormConfigError("Field must be an object.")
        field_id = payload.get("id")
        if not isinstance(field_id, str) or not field_id.strip():
            raise FormConfigError("Field 'id' must be a non-empty string.")
        field_type = payload.get("fieldType")
        if field_type not in FIELD_TYPES:
            raise FormConfigError(f"Field '{field_id}' has unsupported fieldType '{field_type}'.")
        label = payload.get("label")
        if not isinstance(label, str):
            raise FormConfigError(f"Field '{field_id}' must have a string label.")

        required_at_stage = payload.get("requiredAtStage")
        if required_at_stage is not None:
            if not isinstance(required_at_stage, list):
                raise FormConfigError(f"Field '{field_id}': requiredAtStage must be an array.")
            required_at_stage = [str(stage) for stage in required_at_stage]

        options = payload.get("options")
        if options is not None:
            if not isinstance(options, list):
                raise FormConfigError(f"Field '{field_id}': options must be an array.")
            options = [str(option) for option in options]

        conditional_display = payload.get("conditionalDisplay")
        return cls(
            id=field_id,
            field_type=field_type,
            label=label,
            required=bool(payload.get("required", False)),
            placeholder=payload.get("placeholder"),
            required_at_stage=required_at_stage,
            conditional_group=payload.get("conditionalGroup"),
            conditional_display=(
                ConditionalDisplay.from_dict(conditional_display)
                if conditional_display is not None
                else None
            ),
            options=options,
            helper_text=payload.get("helperText"),
            min=_optional_number(payload, "min", field_id),
            max=_optional_number(payload, "max", field_id),
            step=_optional_number(payload, "step", field_id),
            extra=_extra_keys(payload, _FIELD_KEYS),
        )


@dataclass
class Section:
    id: str
    section_title: str
    fields: List[FormField] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "id": self.id,
            "sectionTitle": self.section_title,
            "fields": [item.to_dict() for item in self.fields],
        }
        payload.update(copy.deepcopy(self.extra))
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "Section":
        if not isinstance(payload, dict):
            raise FormConfigError("Section must be an object.")
        section_id = payload.get("id")
        if not isinstance(section_id, str) or not section_id.strip():
            raise FormConfigError("Section 'id' must be a non-empty string.")
        title = payload.get("sectionTitle")
        if not isinstance(title, str):
            raise FormConfigError(f"Section '{section_id}' must have a string sectionTitle.")
        fields = payload.get("fields")
        if not isinstance(fields, list):
            raise FormConfigError(f"Section '{section_id}': fields must be an array.")
        return cls(
            id=section_id,
            section_title=title,
            fields=[FormField.from_dict(item) for item in fields],
            extra=_extra_keys(payload, _SECTION_KEYS),
        )


@dataclass
class DocumentItem:
    id: str
    name: str
    is_mandatory: bool = False
    accepted_file_types: List[str] = field(default_factory=list)
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description is not None:
            payload["description"] = self.description
        payload["isMandatory"] = self.is_mandatory
        payload["acceptedFileTypes"] = list(self.accepted_file_types)
        payload.update(copy.deepcopy(self.extra))
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "DocumentItem":
        if not isinstance(payload, dict):
            raise FormConfigError("Document must be an object.")
        doc_id = payload.get("id")
        if not isinstance(doc_id, str) or not doc_id.strip():
            raise FormConfigError("Document 'id' must be a non-empty string.")
        name = payload.get("name")
        if not isinstance(name, str):
            raise FormConfigError(f"Document '{doc_id}' must have a string name.")
        file_types = payload.get("acceptedFileTypes", [])
        if not isinstance(file_types, list):
            raise FormConfigError(f"Document '{doc_id}': acceptedFileTypes must be an array.")
        return cls(
            id=doc_id,
            name=name,
            is_mandatory=bool(payload.get("isMandatory", False)),
            accepted_file_types=[str(item) for item in file_types],
            description=payload.get("description"),
            extra=_extra_keys(payload, _DOCUMENT_KEYS),
        )


@dataclass
class DocumentCategory:
    id: str
    name: str
    documents: List[DocumentItem] = field(default_factory=list)
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description is not None:
            payload["description"] = self.description
        payload["documents"] = [item.to_dict() for item in self.documents]
        payload.update(copy.deepcopy(self.extra))
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "DocumentCategory":
        if not isinstance(payload, dict):
            raise FormConfigError("Document category must be an object.")
        category_id = payload.get("id")
        if not isinstance(category_id, str) or not category_id.strip():
            raise FormConfigError("Document category 'id' must be a non-empty string.")
        name = payload.get("name")
        if not isinstance(name, str):
            raise FormConfigError(f"Document category '{category_id}' must have a string name.")
        documents = payload.get("documents")
        if not isinstance(documents, list):
            raise FormConfigError(f"Document category '{category_id}': documents must be an array.")
        return cls(
            id=category_id,
            name=name,
            documents=[DocumentItem.from_dict(item) for item in documents],
            description=payload.get("description"),
            extra=_extra_keys(payload, _CATEGORY_KEYS),
        )


@dataclass
class ConfigMetadata:
    version: int
    created_at: str
    last_modified_at: str
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    version_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "version": self.version,
            "createdAt": self.created_at,
            "lastModifiedAt": self.last_modified_at,
        }
        if self.created_by is not None:
            payload["createdBy"] = self.created_by
        if self.last_modified_by is not None:
            payload["lastModifiedBy"] = self.last_modified_by
        if self.version_notes is not None:
            payload["versionNotes"] = self.version_notes
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "ConfigMetadata":
        if not isinstance(payload, dict):
            raise FormConfigError("metadata must be an object.")
        version = payload.get("version", 0)
        if isinstance(version, bool) or not isinstance(version, int):
            raise FormConfigError("metadata.version must be an integer.")
        created_at = str(payload.get("createdAt") or payload.get("lastModifiedAt") or "")
        return cls(
            version=version,
            created_at=created_at,
            last_modified_at=str(payload.get("lastModifiedAt") or created_at),
            created_by=payload.get("createdBy"),
            last_modified_by=payload.get("lastModifiedBy"),
            version_notes=payload.get("versionNotes"),
        )


@dataclass
class FormConfiguration:
    """The per-product form schema: the unit of persistence, versioning, import and export."""

    sections: List[Section] = field(default_factory=list)
    validation_fields: List[FormField] = field(default_factory=list)
    document_categories: List[DocumentCategory] = field(default_factory=list)
    rule_context_mapping: Dict[str, str] = field(default_factory=dict)
    metadata: Optional[ConfigMetadata] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "FormConfiguration":
        return cls()

    def iter_fields(self) -> Iterator[FormField]:
        for section in self.sections:
            yield from section.fields
        yield from self.validation_fields

    def field_index(self) -> Dict[str, FormField]:
        index: Dict[str, FormField] = {}
        for item in self.iter_fields():
            index.setdefault(item.id, item)
        return index

    def section_by_id(self, section_id: str) -> Optional[Section]:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    def category_by_id(self, category_id: str) -> Optional[DocumentCategory]:
        for category in self.document_categories:
            if category.id == category_id:
                return category
        return None

    def copy(self) -> "FormConfiguration":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.metadata is not None:
            payload["metadata"] = self.metadata.to_dict()
        payload["sections"] = [section.to_dict() for section in self.sections]
        payload["validationFields"] = [item.to_dict() for item in self.validation_fields]
        payload["requiredDocuments"] = {
            "categories": [category.to_dict() for category in self.document_categories]
        }
        payload["ruleContextMapping"] = dict(self.rule_context_mapping)
        payload.update(copy.deepcopy(self.extra))
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "FormConfiguration":
        if payload is None:
            return cls.empty()
        if not isinstance(payload, dict):
            raise FormConfigError("Form configuration must be an object.")

        sections = payload.get("sections", [])
        if not isinstance(sections, list):
            raise FormConfigError("sections must be an array.")
        validation_fields = payload.get("validationFields") or []
        if not isinstance(validation_fields, list):
            raise FormConfigError("validationFields must be an array.")

        required_documents = payload.get("requiredDocuments") or {}
        if not isinstance(required_documents, dict):
            raise FormConfigError("requiredDocuments must be an object.")
        categories = required_documents.get("categories") or []
        if not isinstance(categories, list):
            raise FormConfigError("requiredDocuments.categories must be an array.")

        mapping = payload.get("ruleContextMapping") or {}
        if not isinstance(mapping, dict):
            raise FormConfigError("ruleContextMapping must be an object.")

        metadata = payload.get("metadata")
        return cls(
            sections=[Section.from_dict(item) for item in sections],
            validation_fields=[FormField.from_dict(item) for item in validation_fields],
            document_categories=[DocumentCategory.from_dict(item) for item in categories],
            rule_context_mapping={str(label): str(key) for label, key in mapping.items()},
            metadata=ConfigMetadata.from_dict(metadata) if metadata is not None else None,
            extra=_extra_keys(payload, _CONFIG_KEYS),
        )


@dataclass(frozen=True)
class VersionEntry:
    product_id: str
    version_number: int
    snapshot: FormConfiguration
    changed_by: str
    created_at: str
    change_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "versionNumber": self.version_number,
            "snapshot": self.snapshot.to_dict(),
            "changedBy": self.changed_by,
            "changeNotes": self.change_notes,
            "createdAt": self.created_at,
        }

    def summary(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload.pop("snapshot")
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VersionEntry":
        return cls(
            product_id=str(payload["productId"]),
            version_number=int(payload["versionNumber"]),
            snapshot=FormConfiguration.from_dict(payload.get("snapshot")),
            changed_by=str(payload.get("changedBy") or ""),
            created_at=str(payload.get("createdAt") or ""),
            change_notes=payload.get("changeNotes"),
        )


def _optional_number(payload: Dict[str, Any], key: str, field_id: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FormConfigError(f"Field '{field_id}': {key} must be a number.")
    return value


def _extra_keys(payload: Dict[str, Any], known: set) -> Dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in payload.items() if key not in known}
