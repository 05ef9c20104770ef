from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .merge_engine import SNIPPET_KINDS, PatchRejectedError, apply_snippet, dedupe
from .schema_model import FormConfiguration


@dataclass(frozen=True)
class PendingSnippet:
    kind: str
    fragment: Any
    apply_to: str = "current"
    target_section_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "fragment": copy.deepcopy(self.fragment),
            "applyTo": self.apply_to,
            "targetSectionId": self.target_section_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingSnippet":
        return cls(
            kind=str(payload.get("kind", "")),
            fragment=copy.deepcopy(payload.get("fragment")),
            apply_to=str(payload.get("applyTo") or "current"),
            target_section_id=payload.get("targetSectionId"),
        )


@dataclass(frozen=True)
class EditorSession:
    """Editing state for one product, passed between calls instead of held globally.

    Every transition returns a new session; the loaded document is only
    replaced once a pending snippet applies cleanly.
    """

    product_id: str
    document: FormConfiguration
    pending_snippet: Optional[PendingSnippet] = None
    selected_section_id: Optional[str] = None
    selected_field_id: Optional[str] = None
    dirty: bool = False
    messages: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def open(cls, product_id: str, document: FormConfiguration) -> "EditorSession":
        return cls(product_id=product_id, document=document.copy())

    def select(
        self,
        *,
        section_id: Optional[str] = None,
        field_id: Optional[str] = None,
    ) -> "EditorSession":
        return replace(self, selected_section_id=section_id, selected_field_id=field_id)

    def edit(self, document: FormConfiguration) -> "EditorSession":
        return replace(self, document=document, dirty=True)

    def stage_snippet(
        self,
        kind: str,
        fragment: Any,
        *,
        apply_to: str = "current",
        target_section_id: Optional[str] = None,
    ) -> "EditorSession":
        if kind not in SNIPPET_KINDS:
            raise PatchRejectedError(f"Unknown snippet kind '{kind}'.")
        if apply_to not in ("current", "all"):
            raise PatchRejectedError(f"Unknown applyTo '{apply_to}'.")
        pending = PendingSnippet(
            kind=kind,
            fragment=copy.deepcopy(fragment),
            apply_to=apply_to,
            target_section_id=target_section_id or self.selected_section_id,
        )
        return replace(self, pending_snippet=pending)

    def discard_snippet(self) -> "EditorSession":
        return replace(self, pending_snippet=None)

    def apply_pending(self) -> "EditorSession":
        """Apply the staged snippet to this session's document.

        Broadcast snippets are not applied here; the service layer runs
        them against every product.
        """
        pending = self.pending_snippet
        if pending is None:
            raise PatchRejectedError("No snippet is pending.")
        if pending.apply_to != "current":
            raise PatchRejectedError("Broadcast snippets are applied by the service, not the session.")
        document = apply_snippet(
            self.document,
            pending.kind,
            pending.fragment,
            target_section_id=pending.target_section_id,
        )
        return replace(
            self,
            document=document,
            pending_snippet=None,
            dirty=True,
            messages=self.messages + (f"Applied {pending.kind} snippet.",),
        )

    def document_for_save(self) -> FormConfiguration:
        return dedupe(self.document)

    def mark_saved(self, document: FormConfiguration) -> "EditorSession":
        return replace(self, document=document.copy(), dirty=False, pending_snippet=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "document": self.document.to_dict(),
            "pendingSnippet": self.pending_snippet.to_dict() if self.pending_snippet else None,
            "selectedSectionId": self.selected_section_id,
            "selectedFieldId": self.selected_field_id,
            "dirty": self.dirty,
            "messages": list(self.messages),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EditorSession":
        pending = payload.get("pendingSnippet")
        return cls(
            product_id=str(payload["productId"]),
            document=FormConfiguration.from_dict(payload.get("document")),
            pending_snippet=PendingSnippet.from_dict(pending) if isinstance(pending, dict) else None,
            selected_section_id=payload.get("selectedSectionId"),
            selected_field_id=payload.get("selectedFieldId"),
            dirty=bool(payload.get("dirty", False)),
            messages=tuple(str(message) for message in payload.get("messages") or []),
        )
