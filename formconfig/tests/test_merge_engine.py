from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from formconfig.config_service import export_document, sample_configuration  # noqa: E402
from formconfig.config_validation import StructuralValidationError  # noqa: E402
from formconfig.merge_engine import (  # noqa: E402
    EditRejectedError,
    PatchRejectedError,
    add_document,
    add_document_category,
    add_field,
    add_section,
    apply_snippet,
    clear_rule_context_mapping,
    dedupe,
    demote_validation_field,
    ensure_validation_fields,
    next_free_id,
    promote_to_validation_field,
    remove_document,
    remove_field,
    remove_section,
    reorder,
    reorder_collection,
    replace_whole_document,
    set_required_stages,
    set_rule_context_mapping,
    update_document,
    update_field,
    update_section,
)
from formconfig.schema_model import FormConfiguration, FormField  # noqa: E402


def _sample() -> FormConfiguration:
    return FormConfiguration.from_dict(sample_configuration())


def _field(field_id: str, label: str = "Field") -> dict:
    return {"id": field_id, "fieldType": "text", "label": label, "required": False}


def _two_sections() -> FormConfiguration:
    return FormConfiguration.from_dict(
        {
            "sections": [
                {"id": "s1", "sectionTitle": "One", "fields": [_field("a"), _field("field_x", "Old"), _field("b")]},
                {"id": "s2", "sectionTitle": "Two", "fields": [_field("c")]},
            ]
        }
    )


def test_field_snippet_replaces_matching_id_in_place():
    config = _two_sections()

    updated = apply_snippet(config, "field", _field("field_x", "New"), target_section_id="s1")

    fields = updated.sections[0].fields
    assert [item.id for item in fields] == ["a", "field_x", "b"]
    assert fields[1].label == "New"
    assert config.sections[0].fields[1].label == "Old"


def test_field_snippet_appends_new_id_to_first_section_by_default():
    updated = apply_snippet(_two_sections(), "field", json.dumps(_field("d")))

    assert [item.id for item in updated.sections[0].fields] == ["a", "field_x", "b", "d"]
    assert [item.id for item in updated.sections[1].fields] == ["c"]


def test_applying_the_same_snippet_twice_is_idempotent():
    fragment = _field("d", "Repeat")
    once = apply_snippet(_two_sections(), "field", fragment, target_section_id="s2")
    twice = apply_snippet(once, "field", fragment, target_section_id="s2")

    assert twice.to_dict() == once.to_dict()


def test_field_snippet_without_sections_is_rejected():
    with pytest.raises(PatchRejectedError, match="No sections exist"):
        apply_snippet(FormConfiguration.empty(), "field", _field("a"))


def test_field_snippet_with_unknown_target_is_rejected():
    with pytest.raises(PatchRejectedError, match="Target section 'nope' not found"):
        apply_snippet(_two_sections(), "field", _field("z"), target_section_id="nope")


def test_field_id_used_in_another_section_is_rejected():
    with pytest.raises(PatchRejectedError, match="Field IDs already used in section 's2': c"):
        apply_snippet(_two_sections(), "field", _field("c"), target_section_id="s1")


def test_invalid_snippets_are_rejected_without_changes():
    config = _two_sections()

    with pytest.raises(PatchRejectedError, match="Invalid JSON"):
        apply_snippet(config, "field", "{not json")
    with pytest.raises(PatchRejectedError, match="Unknown snippet kind"):
        apply_snippet(config, "widget", _field("z"))
    with pytest.raises(PatchRejectedError):
        apply_snippet(config, "section", _field("z"))

    assert config.to_dict() == _two_sections().to_dict()


def test_section_validation_field_and_category_snippets():
    config = _two_sections()

    config = apply_snippet(config, "section", {"id": "s2", "sectionTitle": "Two v2", "fields": [_field("c")]})
    config = apply_snippet(config, "validation_field", _field("v1"))
    config = apply_snippet(
        config,
        "document_category",
        {
            "id": "cat-1",
            "name": "Company",
            "documents": [{"id": "d1", "name": "Licence", "isMandatory": True, "acceptedFileTypes": [".pdf"]}],
        },
    )

    assert [section.section_title for section in config.sections] == ["One", "Two v2"]
    assert [item.id for item in config.validation_fields] == ["v1"]
    assert config.document_categories[0].documents[0].name == "Licence"


def test_dedupe_removes_section_copies_and_empty_sections():
    config = _two_sections()
    config.validation_fields = [FormField.from_dict(_field("c")), FormField.from_dict(_field("a"))]

    deduped = dedupe(config)

    assert [section.id for section in deduped.sections] == ["s1"]
    assert [item.id for item in deduped.sections[0].fields] == ["field_x", "b"]
    assert dedupe(deduped).to_dict() == deduped.to_dict()


def test_dedupe_keeps_sections_that_were_already_empty():
    config = FormConfiguration.from_dict(
        {
            "sections": [{"id": "s1", "sectionTitle": "Empty", "fields": []}],
            "validationFields": [_field("v1")],
        }
    )

    assert [section.id for section in dedupe(config).sections] == ["s1"]


def test_replace_whole_document_accepts_valid_and_rejects_invalid():
    config, warnings = replace_whole_document(json.dumps(sample_configuration()))

    assert config.to_dict() == sample_configuration()
    assert "metadata: missing, it will be stamped on save" in warnings

    broken = sample_configuration()
    broken["sections"][0]["fields"][3]["options"] = []
    with pytest.raises(StructuralValidationError) as excinfo:
        replace_whole_document(broken)
    assert any("at least one option" in error for error in excinfo.value.errors)


def test_export_then_import_returns_equivalent_document():
    config = _sample()

    exported = export_document(config, author="ops@example.com")
    restored, _ = replace_whole_document(exported)

    assert restored.metadata.last_modified_by == "ops@example.com"
    restored.metadata = None
    assert restored.to_dict() == config.to_dict()


def test_reorder_is_a_stable_move():
    assert reorder(["a", "b", "c", "d"], 0, 2) == ["b", "c", "a", "d"]
    assert reorder(["a", "b", "c", "d"], 3, 0) == ["d", "a", "b", "c"]
    with pytest.raises(EditRejectedError):
        reorder(["a"], 0, 1)


def test_reorder_collection_targets_nested_lists():
    config = _two_sections()

    moved = reorder_collection(config, "fields", 2, 0, parent_id="s1")
    swapped = reorder_collection(config, "sections", 1, 0)

    assert [item.id for item in moved.sections[0].fields] == ["b", "a", "field_x"]
    assert [section.id for section in swapped.sections] == ["s2", "s1"]
    with pytest.raises(EditRejectedError, match="Unknown collection"):
        reorder_collection(config, "rows", 0, 0)
    with pytest.raises(EditRejectedError, match="Section 'missing' not found"):
        reorder_collection(config, "fields", 0, 0, parent_id="missing")


def test_next_free_id_uses_first_number_after_highest():
    assert next_free_id("field", []) == "field_1"
    assert next_free_id("field", ["field_1", "field_4", "other"]) == "field_5"


def test_section_and_field_edits():
    config, section_id = add_section(_two_sections(), title="Three")
    config, field_id = add_field(config, section_id, field_type="email", label="Work Email")
    config = update_field(config, field_id, {"required": True, "helperText": None})
    config = update_section(config, section_id, title="Contact")

    section = config.section_by_id(section_id)
    assert section_id == "section_1"
    assert field_id == "field_1"
    assert section.section_title == "Contact"
    assert section.fields[0].required is True
    assert section.fields[0].helper_text is None

    with pytest.raises(EditRejectedError, match="cannot be changed"):
        update_field(config, field_id, {"id": "other"})
    with pytest.raises(EditRejectedError):
        update_field(config, field_id, {"fieldType": "select"})

    config = remove_field(config, field_id)
    assert config.section_by_id(section_id).fields == []
    config = remove_section(config, section_id)
    assert config.section_by_id(section_id) is None


def test_promote_and_demote_validation_field():
    promoted = promote_to_validation_field(_two_sections(), "c")

    assert [item.id for item in promoted.validation_fields] == ["c"]
    assert [section.id for section in promoted.sections] == ["s1"]

    demoted = demote_validation_field(promoted, "c", "s1")
    assert demoted.validation_fields == []
    assert [item.id for item in demoted.sections[0].fields][-1] == "c"

    with pytest.raises(EditRejectedError):
        promote_to_validation_field(_two_sections(), "missing")


def test_document_category_edits():
    config, category_id = add_document_category(FormConfiguration.empty(), name="Company")
    config, doc_id = add_document(config, category_id, name="Trade Licence", is_mandatory=True)
    config = update_document(config, category_id, doc_id, {"acceptedFileTypes": [".pdf", ".png"]})

    document = config.category_by_id(category_id).documents[0]
    assert (category_id, doc_id) == ("category_1", "doc_1")
    assert document.accepted_file_types == [".pdf", ".png"]

    with pytest.raises(EditRejectedError):
        update_document(config, category_id, doc_id, {"acceptedFileTypes": []})

    config = remove_document(config, category_id, doc_id)
    assert config.category_by_id(category_id).documents == []


def test_rule_context_mapping_keeps_one_label_per_key():
    config = set_rule_context_mapping(_sample(), "License Type", "locationType")
    config = set_rule_context_mapping(config, "Business Location", "locationType")

    assert config.rule_context_mapping == {
        "Employment Type": "employmentType",
        "Business Location": "locationType",
    }
    assert "Employment Type" not in clear_rule_context_mapping(config, "Employment Type").rule_context_mapping


def test_set_required_stages_touches_section_fields_only():
    updated, count = set_required_stages(_sample(), ["review"])

    assert count == 5
    assert all(item.required_at_stage == ["review"] for item in updated.sections[0].fields)
    assert updated.validation_fields[0].required_at_stage == ["submitted"]
    with pytest.raises(EditRejectedError, match="Unknown stages: archived"):
        set_required_stages(_sample(), ["archived"])


def test_ensure_validation_fields_puts_given_fields_first():
    config = _sample()
    config.validation_fields.append(FormField.from_dict(_field("extra")))
    wanted = [FormField.from_dict(_field("risk_level", "Risk Level")), FormField.from_dict(_field("extra", "Extra v2"))]

    updated = ensure_validation_fields(config, wanted)

    assert [item.id for item in updated.validation_fields] == [
        "risk_level",
        "extra",
        "estimated_completion_time",
    ]
    assert updated.validation_fields[1].label == "Extra v2"
