from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from .schema_model import FormConfigError, FormConfiguration

logger = logging.getLogger(__name__)

PRODUCT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,127}")
CONFIG_FILENAME = "form_config.json"


class ConfigStoreError(RuntimeError):
    pass


class InvalidProductIdError(FormConfigError):
    pass


class FormConfigStore:
    """One form configuration document per product, upserted on the product id."""

    def __init__(self, *, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def list_products(self) -> list[str]:
        products: list[str] = []
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir() and (entry / CONFIG_FILENAME).exists():
                products.append(entry.name)
        return products

    def get(self, product_id: str) -> Optional[FormConfiguration]:
        path = self._store_path(product_id)
        if not path.exists():
            return None
        try:
            return FormConfiguration.from_dict(self._read_json(path, product_id))
        except FormConfigError as exc:
            raise ConfigStoreError(
                f"Stored form configuration for product '{product_id}' is malformed: {exc}"
            ) from exc

    def get_or_create(self, product_id: str) -> FormConfiguration:
        config = self.get(product_id)
        if config is not None:
            return config
        config = FormConfiguration.empty()
        self.upsert(product_id, config)
        logger.info("Created empty form configuration for product %s", product_id)
        return config

    def upsert(self, product_id: str, config: FormConfiguration) -> None:
        path = self._store_path(product_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            tmp_path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to persist form configuration for product '{product_id}': {exc}"
            ) from exc

    def read_raw(self, product_id: str) -> Optional[bytes]:
        path = self._store_path(product_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to read form configuration for product '{product_id}': {exc}"
            ) from exc

    def restore_raw(self, product_id: str, raw: Optional[bytes]) -> None:
        """Put back bytes taken by ``read_raw``; ``None`` removes the document."""
        path = self._store_path(product_id)
        try:
            if raw is None:
                path.unlink(missing_ok=True)
                return
            tmp_path = path.with_name(f"{path.name}.tmp")
            tmp_path.write_bytes(raw)
            tmp_path.replace(path)
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to restore form configuration for product '{product_id}': {exc}"
            ) from exc

    def _store_path(self, product_id: str) -> Path:
        return self.root / validate_product_id(product_id) / CONFIG_FILENAME

    def _read_json(self, path: Path, product_id: str) -> dict[str, Any]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigStoreError(
                f"Failed to read form configuration for product '{product_id}': {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise ConfigStoreError(
                f"Invalid form configuration for product '{product_id}': expected object."
            )
        return payload


def validate_product_id(product_id: Any) -> str:
    if not isinstance(product_id, str) or not PRODUCT_ID_PATTERN.fullmatch(product_id):
        raise InvalidProductIdError(f"Invalid product id '{product_id}'.")
    return product_id
