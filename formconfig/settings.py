from __future__ import annotations

import os
from pathlib import Path

from .config_service import FormConfigService
from .config_store import FormConfigStore
from .version_ledger import VersionLedger

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("FORM_CONFIG_DATA_DIR") or BASE_DIR / "data")
BROADCAST_ENABLED = os.getenv("FORM_CONFIG_BROADCAST_ENABLED", "true").strip().lower() not in {
    "0",
    "false",
    "off",
    "no",
}
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("FORM_CONFIG_ALLOWED_ORIGINS", "*").split(",")
    if origin.strip()
]


def _parse_workers(raw_value: str | None, *, fallback: int) -> int:
    try:
        value = int(raw_value) if raw_value is not None else fallback
    except ValueError:
        return fallback
    return value if value > 0 else fallback


BROADCAST_WORKERS = _parse_workers(os.getenv("FORM_CONFIG_BROADCAST_WORKERS"), fallback=4)


def build_service(data_dir: Path, *, broadcast_workers: int = BROADCAST_WORKERS) -> FormConfigService:
    """Service rooted at ``data_dir``; directories are created here, not at import."""
    products_dir = data_dir / "products"
    return FormConfigService(
        store=FormConfigStore(root=products_dir),
        ledger=VersionLedger(root=products_dir),
        broadcast_workers=broadcast_workers,
    )
