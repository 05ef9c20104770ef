from __future__ import annotations

import json
import logging
import re
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from .config_service import sample_configuration
from .config_store import ConfigStoreError
from .config_validation import StructuralValidationError, validate_form_config
from .file_import import parse_upload
from .merge_engine import check_snippet
from .resolver import (
    can_transition_to_stage,
    resolve,
    stage_completion_percentage,
    validate_form_at_stage,
)
from .risk_client import RiskServiceClient, RiskServiceError
from .rule_context import extract
from .schema_model import FormConfigError, FormConfiguration, FormField, VersionEntry
from .settings import ALLOWED_ORIGINS, BROADCAST_ENABLED, DATA_DIR, build_service
from .stages import list_stages
from .version_ledger import VersionLedgerError, VersionNotFoundError

logger = logging.getLogger(__name__)

form_config_service = build_service(DATA_DIR)
risk_client = RiskServiceClient.from_env()

app = FastAPI(title="Form Configuration Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SaveConfigBody(BaseModel):
    config: dict[str, Any]
    author: str
    notes: str | None = None


class ImportConfigBody(BaseModel):
    document: dict[str, Any]
    author: str
    notes: str | None = None


class SnippetBody(BaseModel):
    kind: str
    fragment: Any
    applyTo: str = "current"
    targetSectionId: str | None = None
    author: str
    notes: str | None = None


class ReorderBody(BaseModel):
    collection: str
    fromIndex: int
    toIndex: int
    parentId: str | None = None
    author: str


class EditBody(BaseModel):
    operation: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    author: str
    notes: str | None = None


class ResolveBody(BaseModel):
    stage: str | None = None
    values: dict[str, Any] = Field(default_factory=dict)


class StageValidationBody(BaseModel):
    stage: str
    values: dict[str, Any] = Field(default_factory=dict)
    targetStage: str | None = None


class FieldValuesBody(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)


class RequiredStagesMigrationBody(BaseModel):
    stages: list[str]
    author: str


class ValidationFieldsMigrationBody(BaseModel):
    fields: list[dict[str, Any]]
    productIds: list[str] | None = None
    author: str


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, StructuralValidationError):
        return HTTPException(status_code=400, detail={"errors": exc.errors, "warnings": exc.warnings})
    if isinstance(exc, VersionNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, FormConfigError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RiskServiceError):
        return HTTPException(status_code=502, detail=str(exc))
    logger.error("Form configuration request failed: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))


def _edit_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """camelCase argument names to keyword names; nested values are passed through."""
    return {re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower(): value for key, value in arguments.items()}


def _saved_payload(entry: VersionEntry, warnings: list[str] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "version": entry.summary(),
        "config": entry.snapshot.to_dict(),
    }
    if warnings is not None:
        payload["warnings"] = warnings
    return payload


def _load_config(product_id: str) -> FormConfiguration:
    try:
        return form_config_service.load(product_id)
    except (FormConfigError, ConfigStoreError) as exc:
        raise _http_error(exc) from exc


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/stages")
async def get_stages():
    return {"stages": list_stages()}


@app.get("/api/templates/sample")
async def get_sample_template():
    return sample_configuration()


@app.get("/api/products")
async def list_products():
    return {"products": form_config_service.list_products()}


@app.get("/api/products/{product_id}/form-config")
def get_form_config(product_id: str):
    return _load_config(product_id).to_dict()


@app.put("/api/products/{product_id}/form-config")
def save_form_config(product_id: str, body: SaveConfigBody):
    report = validate_form_config(body.config)
    try:
        report.raise_for_errors()
        config = FormConfiguration.from_dict(body.config)
        entry = form_config_service.save(product_id, config, author=body.author, notes=body.notes)
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return {**_saved_payload(entry), "validation": report.to_dict()}


@app.post("/api/products/{product_id}/form-config/import")
def import_form_config(product_id: str, body: ImportConfigBody):
    try:
        entry, warnings = form_config_service.import_document(
            product_id,
            body.document,
            author=body.author,
            notes=body.notes,
        )
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return _saved_payload(entry, warnings)


@app.post("/api/products/{product_id}/form-config/import-file")
def import_form_config_file(
    product_id: str,
    file: UploadFile = File(...),
    author: str = Form("unknown"),
    targetSectionId: str | None = Form(None),
):
    content = file.file.read()
    try:
        parsed = parse_upload(file.filename or "", content)
        if parsed.kind == "document":
            entry, warnings = form_config_service.import_document(
                product_id,
                parsed.payload,
                author=author,
                notes=f"Imported from {file.filename}",
            )
            return {**_saved_payload(entry, warnings), "kind": parsed.kind}
        entry = form_config_service.apply_snippet(
            product_id,
            parsed.kind,
            parsed.payload,
            target_section_id=targetSectionId,
            author=author,
            notes=f"Applied {parsed.kind} from {file.filename}",
        )
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return {**_saved_payload(entry), "kind": parsed.kind}


@app.get("/api/products/{product_id}/form-config/export")
def export_form_config(product_id: str, author: str = "system"):
    try:
        exported = form_config_service.export_document(product_id, author=author)
    except (FormConfigError, ConfigStoreError) as exc:
        raise _http_error(exc) from exc
    headers = {"Content-Disposition": f'attachment; filename="form-config-{product_id}.json"'}
    return Response(
        content=json.dumps(exported, indent=2),
        media_type="application/json",
        headers=headers,
    )


@app.post("/api/products/{product_id}/form-config/snippets")
def apply_form_config_snippet(product_id: str, body: SnippetBody):
    if body.applyTo not in ("current", "all"):
        raise HTTPException(status_code=400, detail="applyTo must be 'current' or 'all'")
    if body.applyTo == "all" and not BROADCAST_ENABLED:
        raise HTTPException(status_code=403, detail="Broadcast snippets are disabled")
    try:
        if body.applyTo == "all":
            return form_config_service.broadcast_snippet(
                body.kind,
                body.fragment,
                target_section_id=body.targetSectionId,
                author=body.author,
                notes=body.notes,
            ).to_dict()
        entry = form_config_service.apply_snippet(
            product_id,
            body.kind,
            body.fragment,
            target_section_id=body.targetSectionId,
            author=body.author,
            notes=body.notes,
        )
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return _saved_payload(entry)


@app.post("/api/products/{product_id}/form-config/reorder")
def reorder_form_config(product_id: str, body: ReorderBody):
    try:
        entry = form_config_service.reorder(
            product_id,
            body.collection,
            body.fromIndex,
            body.toIndex,
            parent_id=body.parentId,
            author=body.author,
        )
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return _saved_payload(entry)


@app.post("/api/products/{product_id}/form-config/edits")
def edit_form_config(product_id: str, body: EditBody):
    try:
        entry, created_id = form_config_service.edit(
            product_id,
            body.operation,
            _edit_arguments(body.arguments),
            author=body.author,
            notes=body.notes,
        )
    except (FormConfigError, ConfigStoreError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return {**_saved_payload(entry), "createdId": created_id}


@app.post("/api/products/{product_id}/form-config/resolve")
def resolve_form_config(product_id: str, body: ResolveBody):
    config = _load_config(product_id)
    payload = resolve(config, body.stage, body.values).to_dict()
    payload["completionPercentage"] = stage_completion_percentage(config, body.values, body.stage)
    return payload


@app.post("/api/products/{product_id}/form-config/validate")
def validate_form_values(product_id: str, body: StageValidationBody):
    config = _load_config(product_id)
    payload = validate_form_at_stage(config, body.values, body.stage).to_dict()
    if body.targetStage:
        allowed, messages = can_transition_to_stage(config, body.values, body.stage, body.targetStage)
        payload["targetStage"] = body.targetStage
        payload["canTransition"] = allowed
        payload["transitionMessages"] = messages
    return payload


@app.post("/api/products/{product_id}/rule-context")
def build_rule_context(product_id: str, body: FieldValuesBody):
    return {"context": extract(_load_config(product_id), body.values)}


@app.post("/api/products/{product_id}/risk-assessment")
def assess_risk(product_id: str, body: FieldValuesBody):
    context = extract(_load_config(product_id), body.values)
    try:
        result = risk_client.assess(product_id=product_id, context=context)
    except RiskServiceError as exc:
        raise _http_error(exc) from exc
    return {"context": context, "result": result}


@app.get("/api/products/{product_id}/versions")
def list_versions(product_id: str):
    try:
        entries = form_config_service.history(product_id)
    except (FormConfigError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return {"versions": [entry.summary() for entry in entries]}


@app.get("/api/products/{product_id}/versions/{version_number}")
def get_version(product_id: str, version_number: int):
    try:
        return form_config_service.get_version(product_id, version_number).to_dict()
    except (FormConfigError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc


@app.post("/api/products/{product_id}/versions/{version_number}/restore")
def restore_version(product_id: str, version_number: int):
    try:
        restored = form_config_service.restore(product_id, version_number)
    except (FormConfigError, VersionLedgerError) as exc:
        raise _http_error(exc) from exc
    return {"restoredFromVersion": version_number, "config": restored.to_dict()}


@app.post("/api/migrations/required-stages")
def migrate_required_stages(body: RequiredStagesMigrationBody):
    try:
        result = form_config_service.migrate_required_stages(body.stages, author=body.author)
    except (FormConfigError, ConfigStoreError) as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@app.post("/api/migrations/validation-fields")
def migrate_validation_fields(body: ValidationFieldsMigrationBody):
    try:
        fields = [FormField.from_dict(check_snippet("validation_field", item)) for item in body.fields]
        result = form_config_service.migrate_validation_fields(
            fields,
            product_ids=body.productIds,
            author=body.author,
        )
    except (FormConfigError, ConfigStoreError) as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("formconfig.main:app", host="0.0.0.0", port=8000, reload=True)
