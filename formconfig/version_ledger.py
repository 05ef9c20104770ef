from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .config_store import validate_product_id
from .schema_model import FormConfigError, FormConfiguration, VersionEntry

logger = logging.getLogger(__name__)

VERSION_FILE_PATTERN = re.compile(r"^v(\d{6})\.json$")


class VersionLedgerError(RuntimeError):
    pass


class VersionNotFoundError(VersionLedgerError):
    pass


class VersionLedger:
    """Append-only history of full form configuration snapshots per product.

    Each entry is one file, ``<root>/<product_id>/versions/v000001.json``,
    created exclusively so an existing version is never overwritten.
    """

    def __init__(self, *, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def next_version_number(self, product_id: str) -> int:
        numbers = self._version_numbers(product_id)
        return (max(numbers) if numbers else 0) + 1

    def commit(
        self,
        product_id: str,
        snapshot: FormConfiguration,
        author: str,
        notes: Optional[str] = None,
        *,
        version_number: Optional[int] = None,
    ) -> VersionEntry:
        number = version_number if version_number is not None else self.next_version_number(product_id)
        if number < 1:
            raise VersionLedgerError("version_number must be 1 or greater.")
        entry = VersionEntry(
            product_id=product_id,
            version_number=number,
            snapshot=snapshot.copy(),
            changed_by=(author or "").strip() or "unknown",
            created_at=self._now_iso(),
            change_notes=_clean_optional_str(notes),
        )

        versions_dir = self._versions_dir(product_id)
        versions_dir.mkdir(parents=True, exist_ok=True)
        path = versions_dir / _version_filename(number)
        try:
            with path.open("x", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), indent=2))
        except FileExistsError as exc:
            logger.warning(
                "Version %s for product %s already exists; concurrent save suspected",
                number,
                product_id,
            )
            raise VersionLedgerError(
                f"Version {number} already exists for product '{product_id}'."
            ) from exc
        except OSError as exc:
            raise VersionLedgerError(f"Failed to persist version {number}: {exc}") from exc

        logger.info("Committed version %s for product %s by %s", number, product_id, entry.changed_by)
        return entry

    def history(self, product_id: str) -> list[VersionEntry]:
        """All versions for ``product_id``, newest first."""
        entries = [self._read_entry(product_id, number) for number in self._version_numbers(product_id)]
        entries.sort(key=lambda entry: entry.version_number, reverse=True)
        for anomaly in self._anomalies([entry.version_number for entry in entries]):
            logger.warning("Version ledger anomaly for product %s: %s", product_id, anomaly)
        return entries

    def get(self, product_id: str, version_number: int) -> VersionEntry:
        if version_number not in self._version_numbers(product_id):
            raise VersionNotFoundError(
                f"Version {version_number} not found for product '{product_id}'."
            )
        return self._read_entry(product_id, version_number)

    def restore(self, entry: VersionEntry) -> FormConfiguration:
        """Copy of the entry's snapshot. Does not commit anything."""
        return entry.snapshot.copy()

    def check_integrity(self, product_id: str) -> list[str]:
        numbers: list[int] = []
        for number in self._version_numbers(product_id):
            entry = self._read_entry(product_id, number)
            numbers.append(entry.version_number)
        return self._anomalies(sorted(numbers, reverse=True))

    def _anomalies(self, numbers_newest_first: list[int]) -> list[str]:
        anomalies: list[str] = []
        ascending = sorted(numbers_newest_first)
        seen: set[int] = set()
        for number in ascending:
            if number in seen:
                anomalies.append(f"duplicate version number {number}")
            seen.add(number)
        unique = sorted(seen)
        if unique and unique[0] != 1:
            anomalies.append(f"history starts at version {unique[0]}")
        for previous, current in zip(unique, unique[1:]):
            if current != previous + 1:
                anomalies.append(f"gap between versions {previous} and {current}")
        return anomalies

    def _versions_dir(self, product_id: str) -> Path:
        return self.root / validate_product_id(product_id) / "versions"

    def _version_numbers(self, product_id: str) -> list[int]:
        versions_dir = self._versions_dir(product_id)
        if not versions_dir.exists():
            return []
        numbers: list[int] = []
        for entry in versions_dir.iterdir():
            if not entry.is_file():
                continue
            match = VERSION_FILE_PATTERN.match(entry.name)
            if match:
                numbers.append(int(match.group(1)))
        return sorted(numbers)

    def _read_entry(self, product_id: str, version_number: int) -> VersionEntry:
        path = self._versions_dir(product_id) / _version_filename(version_number)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise VersionNotFoundError(
                f"Version {version_number} not found for product '{product_id}'."
            ) from exc
        except (OSError, ValueError) as exc:
            raise VersionLedgerError(f"Failed to read version {version_number}: {exc}") from exc
        if not isinstance(payload, dict):
            raise VersionLedgerError(f"Version {version_number} payload has invalid format.")
        try:
            return VersionEntry.from_dict(payload)
        except (FormConfigError, KeyError, TypeError, ValueError) as exc:
            raise VersionLedgerError(f"Version {version_number} payload has invalid format: {exc}") from exc

    def _now_iso(self) -> str:
        return (
            datetime.now(timezone.utc)
            .replace(microsecond=0)
            .isoformat()
            .replace("+00:00", "Z")
        )


def _version_filename(version_number: int) -> str:
    return f"v{version_number:06d}.json"


def _clean_optional_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
