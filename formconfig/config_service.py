from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config_store import ConfigStoreError, FormConfigStore, validate_product_id
from .editor_session import EditorSession
from .merge_engine import (
    EditRejectedError,
    add_document,
    add_document_category,
    add_field,
    add_section,
    apply_snippet,
    check_snippet,
    clear_rule_context_mapping,
    dedupe,
    demote_validation_field,
    ensure_validation_fields,
    promote_to_validation_field,
    remove_document,
    remove_document_category,
    remove_field,
    remove_section,
    reorder_collection,
    replace_whole_document,
    set_required_stages,
    set_rule_context_mapping,
    update_document,
    update_document_category,
    update_field,
    update_section,
)
from .schema_model import ConfigMetadata, FormConfigError, FormConfiguration, FormField, VersionEntry
from .stages import unknown_stages
from .version_ledger import VersionLedger, VersionLedgerError

logger = logging.getLogger(__name__)

STRUCTURAL_EDITS: dict[str, Callable[..., Any]] = {
    "add_section": add_section,
    "update_section": update_section,
    "remove_section": remove_section,
    "add_field": add_field,
    "update_field": update_field,
    "remove_field": remove_field,
    "promote_to_validation_field": promote_to_validation_field,
    "demote_validation_field": demote_validation_field,
    "add_document_category": add_document_category,
    "update_document_category": update_document_category,
    "remove_document_category": remove_document_category,
    "add_document": add_document,
    "update_document": update_document,
    "remove_document": remove_document,
    "set_rule_context_mapping": set_rule_context_mapping,
    "clear_rule_context_mapping": clear_rule_context_mapping,
}


@dataclass
class ProductResult:
    product_id: str
    status: str
    detail: Optional[str] = None
    version_number: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "status": self.status,
            "details": self.detail,
            "versionNumber": self.version_number,
        }


@dataclass
class BatchResult:
    results: list[ProductResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "success": self.count("success"),
            "skipped": self.count("skipped"),
            "errors": self.count("error"),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "results": [result.to_dict() for result in self.results],
        }


class FormConfigService:
    """Load, edit, save and version form configurations.

    Writes to the same product are serialized with a per-product lock;
    different products proceed independently. Saving always dedupes,
    persists the document, then appends one version.
    """

    def __init__(
        self,
        *,
        store: FormConfigStore,
        ledger: VersionLedger,
        broadcast_workers: int = 4,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.broadcast_workers = max(1, broadcast_workers)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def product_lock(self, product_id: str) -> threading.Lock:
        validate_product_id(product_id)
        with self._locks_guard:
            return self._locks.setdefault(product_id, threading.Lock())

    def list_products(self) -> list[str]:
        return self.store.list_products()

    def load(self, product_id: str) -> FormConfiguration:
        with self.product_lock(product_id):
            return self.store.get_or_create(product_id)

    def save(
        self,
        product_id: str,
        config: FormConfiguration,
        *,
        author: str,
        notes: Optional[str] = None,
    ) -> VersionEntry:
        with self.product_lock(product_id):
            return self._save_locked(product_id, config, author=author, notes=notes)

    def import_document(
        self,
        product_id: str,
        document: Any,
        *,
        author: str,
        notes: Optional[str] = None,
    ) -> tuple[VersionEntry, list[str]]:
        config, warnings = replace_whole_document(document)
        entry = self.save(product_id, config, author=author, notes=notes or "Imported configuration")
        logger.info(
            "Imported form configuration for product %s with %s warnings",
            product_id,
            len(warnings),
        )
        return entry, warnings

    def export_document(self, product_id: str, *, author: str) -> dict[str, Any]:
        return export_document(self.load(product_id), author=author)

    def open_session(self, product_id: str) -> EditorSession:
        return EditorSession.open(product_id, self.load(product_id))

    def save_session(
        self,
        session: EditorSession,
        *,
        author: str,
        notes: Optional[str] = None,
    ) -> tuple[EditorSession, VersionEntry]:
        entry = self.save(session.product_id, session.document_for_save(), author=author, notes=notes)
        return session.mark_saved(entry.snapshot), entry

    def apply_snippet(
        self,
        product_id: str,
        kind: str,
        fragment: Any,
        *,
        target_section_id: Optional[str] = None,
        author: str,
        notes: Optional[str] = None,
    ) -> VersionEntry:
        with self.product_lock(product_id):
            session = EditorSession.open(product_id, self.store.get_or_create(product_id))
            session = session.stage_snippet(
                kind,
                fragment,
                target_section_id=target_section_id,
            ).apply_pending()
            return self._save_locked(
                product_id,
                session.document_for_save(),
                author=author,
                notes=notes or f"Applied {kind} snippet",
            )

    def edit(
        self,
        product_id: str,
        operation: str,
        arguments: Optional[dict[str, Any]] = None,
        *,
        author: str,
        notes: Optional[str] = None,
    ) -> tuple[VersionEntry, Optional[str]]:
        """Apply one visual-editor edit and save it. Returns the entry and any id the edit created."""
        handler = STRUCTURAL_EDITS.get(operation)
        if handler is None:
            raise EditRejectedError(f"Unknown edit operation '{operation}'.")
        with self.product_lock(product_id):
            config = self.store.get_or_create(product_id)
            try:
                outcome = handler(config, **(arguments or {}))
            except TypeError as exc:
                raise EditRejectedError(f"Invalid arguments for '{operation}': {exc}") from exc
            created_id = None
            if isinstance(outcome, tuple):
                outcome, created_id = outcome
            entry = self._save_locked(
                product_id,
                outcome,
                author=author,
                notes=notes or f"Edit: {operation}",
            )
        return entry, created_id

    def broadcast_snippet(
        self,
        kind: str,
        fragment: Any,
        *,
        target_section_id: Optional[str] = None,
        author: str,
        notes: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """Apply the same upsert to every stored product, best-effort."""
        fragment = check_snippet(kind, fragment)

        def transform(config: FormConfiguration) -> FormConfiguration:
            return apply_snippet(config, kind, fragment, target_section_id=target_section_id)

        result = self._run_batch(
            transform,
            author=author,
            notes=notes or f"Applied {kind} snippet to all products",
            cancel_event=cancel_event,
        )
        logger.info("Broadcast %s snippet: %s", kind, result.summary())
        return result

    def migrate_required_stages(
        self,
        stages: list[str],
        *,
        author: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        invalid = unknown_stages(stages)
        if invalid:
            raise EditRejectedError(f"Unknown stages: {', '.join(invalid)}")

        def transform(config: FormConfiguration) -> FormConfiguration:
            updated, _ = set_required_stages(config, stages)
            return updated

        result = self._run_batch(
            transform,
            author=author,
            notes=f"Set requiredAtStage to {', '.join(stages)} on all section fields",
            cancel_event=cancel_event,
        )
        logger.info("Required stage migration: %s", result.summary())
        return result

    def migrate_validation_fields(
        self,
        fields: list[FormField],
        *,
        product_ids: Optional[list[str]] = None,
        author: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        def transform(config: FormConfiguration) -> FormConfiguration:
            return ensure_validation_fields(config, fields)

        result = self._run_batch(
            transform,
            author=author,
            notes="Updated validation fields",
            product_ids=product_ids,
            cancel_event=cancel_event,
        )
        logger.info("Validation field migration: %s", result.summary())
        return result

    def reorder(
        self,
        product_id: str,
        collection: str,
        from_index: int,
        to_index: int,
        *,
        parent_id: Optional[str] = None,
        author: str,
    ) -> VersionEntry:
        with self.product_lock(product_id):
            config = self.store.get_or_create(product_id)
            updated = reorder_collection(config, collection, from_index, to_index, parent_id=parent_id)
            return self._save_locked(product_id, updated, author=author, notes=f"Reordered {collection}")

    def history(self, product_id: str) -> list[VersionEntry]:
        return self.ledger.history(product_id)

    def get_version(self, product_id: str, version_number: int) -> VersionEntry:
        return self.ledger.get(product_id, version_number)

    def restore(self, product_id: str, version_number: int) -> FormConfiguration:
        """Snapshot of an earlier version, ready to be saved again. Nothing is written."""
        return self.ledger.restore(self.ledger.get(product_id, version_number))

    def _save_locked(
        self,
        product_id: str,
        config: FormConfiguration,
        *,
        author: str,
        notes: Optional[str],
    ) -> VersionEntry:
        clean_author = (author or "").strip() or "unknown"
        document = dedupe(config)
        version_number = self.ledger.next_version_number(product_id)
        document.metadata = stamp_metadata(
            document.metadata,
            version=version_number,
            author=clean_author,
            notes=notes,
        )
        previous = self.store.read_raw(product_id)
        self.store.upsert(product_id, document)
        try:
            entry = self.ledger.commit(
                product_id,
                document,
                clean_author,
                notes,
                version_number=version_number,
            )
        except (VersionLedgerError, OSError):
            logger.warning(
                "Version %s commit failed for product %s; restoring previous document",
                version_number,
                product_id,
            )
            self.store.restore_raw(product_id, previous)
            raise
        logger.info("Saved form configuration for product %s as version %s", product_id, version_number)
        return entry

    def _run_batch(
        self,
        transform: Callable[[FormConfiguration], FormConfiguration],
        *,
        author: str,
        notes: str,
        product_ids: Optional[list[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        stored = self.store.list_products()
        targets = [product for product in stored if product_ids is None or product in product_ids]

        def run_one(product_id: str) -> ProductResult:
            if cancel_event is not None and cancel_event.is_set():
                return ProductResult(product_id, "skipped", "cancelled")
            try:
                with self.product_lock(product_id):
                    config = self.store.get_or_create(product_id)
                    updated = transform(config)
                    entry = self._save_locked(product_id, updated, author=author, notes=notes)
            except FormConfigError as exc:
                logger.warning("Skipped product %s: %s", product_id, exc)
                return ProductResult(product_id, "skipped", str(exc))
            except (ConfigStoreError, VersionLedgerError, OSError) as exc:
                logger.warning("Failed to update product %s: %s", product_id, exc)
                return ProductResult(product_id, "error", str(exc))
            except Exception as exc:
                logger.exception("Unexpected failure updating product %s", product_id)
                return ProductResult(product_id, "error", f"{type(exc).__name__}: {exc}")
            return ProductResult(product_id, "success", "updated", entry.version_number)

        with ThreadPoolExecutor(max_workers=self.broadcast_workers) as executor:
            results = list(executor.map(run_one, targets))

        missing = [product for product in product_ids or [] if product not in stored]
        results.extend(ProductResult(product, "skipped", "no stored configuration") for product in missing)
        return BatchResult(results=results)


def stamp_metadata(
    metadata: Optional[ConfigMetadata],
    *,
    version: int,
    author: str,
    notes: Optional[str] = None,
) -> ConfigMetadata:
    now = _now_iso()
    return ConfigMetadata(
        version=version,
        created_at=metadata.created_at if metadata and metadata.created_at else now,
        created_by=metadata.created_by if metadata and metadata.created_by else author,
        last_modified_at=now,
        last_modified_by=author,
        version_notes=notes,
    )


def export_document(config: FormConfiguration, *, author: str) -> dict[str, Any]:
    """JSON-ready export; metadata is re-stamped, the stored version number is kept."""
    exported = config.copy()
    version = exported.metadata.version if exported.metadata else 0
    notes = exported.metadata.version_notes if exported.metadata else None
    exported.metadata = stamp_metadata(exported.metadata, version=version, author=author, notes=notes)
    return exported.to_dict()


def sample_configuration() -> dict[str, Any]:
    """Starter document offered by the template library."""
    return {
        "sections": [
            {
                "id": "section-1",
                "sectionTitle": "Basic Information",
                "fields": [
                    {
                        "id": "field-1",
                        "fieldType": "text",
                        "label": "Full Name",
                        "placeholder": "Enter your full name",
                        "required": True,
                        "requiredAtStage": ["draft", "submitted"],
                        "helperText": "Please enter your legal name as it appears on official documents",
                    },
                    {
                        "id": "field-2",
                        "fieldType": "email",
                        "label": "Email Address",
                        "placeholder": "your.email@example.com",
                        "required": True,
                        "requiredAtStage": ["draft"],
                        "conditionalGroup": "contact-info",
                    },
                    {
                        "id": "field-3",
                        "fieldType": "tel",
                        "label": "Phone Number",
                        "placeholder": "+971 XX XXX XXXX",
                        "required": False,
                        "requiredAtStage": ["submitted"],
                        "conditionalGroup": "contact-info",
                    },
                    {
                        "id": "field-4",
                        "fieldType": "select",
                        "label": "Employment Type",
                        "required": True,
                        "options": ["Salaried", "Self-Employed"],
                    },
                    {
                        "id": "field-5",
                        "fieldType": "text",
                        "label": "Business Name",
                        "required": False,
                        "requiredAtStage": ["submitted"],
                        "conditionalDisplay": {"dependsOn": "field-4", "showWhen": ["Self-Employed"]},
                    },
                ],
            }
        ],
        "validationFields": [
            {
                "id": "estimated_completion_time",
                "fieldType": "date",
                "label": "Expected Date",
                "required": False,
                "requiredAtStage": ["submitted"],
                "helperText": "Must be set before submission",
            }
        ],
        "requiredDocuments": {
            "categories": [
                {
                    "id": "category-1",
                    "name": "Identity Documents",
                    "description": "Required identification documents",
                    "documents": [
                        {
                            "id": "doc-1",
                            "name": "Passport Copy",
                            "description": "Clear copy of passport bio page",
                            "isMandatory": True,
                            "acceptedFileTypes": [".pdf", ".jpg", ".png"],
                        },
                        {
                            "id": "doc-2",
                            "name": "Emirates ID",
                            "description": "Both sides of Emirates ID",
                            "isMandatory": True,
                            "acceptedFileTypes": [".pdf", ".jpg", ".png"],
                        },
                    ],
                }
            ]
        },
        "ruleContextMapping": {"Employment Type": "employmentType"},
    }


def _now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
