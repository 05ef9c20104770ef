from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from formconfig.config_store import InvalidProductIdError  # noqa: E402
from formconfig.schema_model import FormConfiguration  # noqa: E402
from formconfig.version_ledger import (  # noqa: E402
    VersionLedger,
    VersionLedgerError,
    VersionNotFoundError,
)


def _config(title: str) -> FormConfiguration:
    return FormConfiguration.from_dict({"sections": [{"id": "s1", "sectionTitle": title, "fields": []}]})


def test_sequential_commits_are_numbered_from_one(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)

    assert ledger.next_version_number("retail-loan") == 1
    for index in range(3):
        ledger.commit("retail-loan", _config(f"v{index + 1}"), "ops", notes=f"change {index + 1}")

    history = ledger.history("retail-loan")
    assert [entry.version_number for entry in history] == [3, 2, 1]
    assert history[0].snapshot.sections[0].section_title == "v3"
    assert history[-1].change_notes == "change 1"
    assert ledger.next_version_number("retail-loan") == 4
    assert (tmp_path / "retail-loan" / "versions" / "v000001.json").exists()


def test_products_have_independent_numbering(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)
    ledger.commit("product-a", _config("a"), "ops")
    ledger.commit("product-a", _config("a2"), "ops")

    entry = ledger.commit("product-b", _config("b"), "ops")

    assert entry.version_number == 1


def test_commit_never_overwrites_an_existing_version(tmp_path: Path, caplog):
    ledger = VersionLedger(root=tmp_path)
    ledger.commit("retail-loan", _config("first"), "ops")

    with caplog.at_level(logging.WARNING):
        with pytest.raises(VersionLedgerError, match="already exists"):
            ledger.commit("retail-loan", _config("second"), "other", version_number=1)

    assert ledger.get("retail-loan", 1).snapshot.sections[0].section_title == "first"
    assert "concurrent save suspected" in caplog.text


def test_blank_author_and_notes_are_normalised(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)

    entry = ledger.commit("retail-loan", _config("x"), "  ", notes="   ")

    assert entry.changed_by == "unknown"
    assert entry.change_notes is None


def test_restore_returns_a_copy_without_committing(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)
    entry = ledger.commit("retail-loan", _config("original"), "ops")

    restored = ledger.restore(entry)
    restored.sections[0].section_title = "edited"

    assert entry.snapshot.sections[0].section_title == "original"
    assert len(ledger.history("retail-loan")) == 1


def test_missing_version_raises_not_found(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)

    with pytest.raises(VersionNotFoundError):
        ledger.get("retail-loan", 7)


def test_gaps_are_reported_not_repaired(tmp_path: Path, caplog):
    ledger = VersionLedger(root=tmp_path)
    ledger.commit("retail-loan", _config("one"), "ops")
    ledger.commit("retail-loan", _config("three"), "ops", version_number=3)

    with caplog.at_level(logging.WARNING):
        history = ledger.history("retail-loan")

    assert [entry.version_number for entry in history] == [3, 1]
    assert ledger.check_integrity("retail-loan") == ["gap between versions 1 and 3"]
    assert "gap between versions 1 and 3" in caplog.text


def test_duplicate_version_numbers_inside_files_are_reported(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)
    ledger.commit("retail-loan", _config("one"), "ops")
    second = ledger.commit("retail-loan", _config("two"), "ops")
    path = tmp_path / "retail-loan" / "versions" / "v000002.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["versionNumber"] = 1
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert second.version_number == 2
    assert ledger.check_integrity("retail-loan") == ["duplicate version number 1"]


def test_product_ids_cannot_escape_the_root(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)

    with pytest.raises(InvalidProductIdError):
        ledger.commit("../outside", _config("x"), "ops")


def test_undecodable_version_file_raises_ledger_error(tmp_path: Path):
    ledger = VersionLedger(root=tmp_path)
    ledger.commit("retail-loan", _config("v1"), "ops")
    (tmp_path / "retail-loan" / "versions" / "v000001.json").write_bytes(b"\xff\xfe{}")

    with pytest.raises(VersionLedgerError, match="Failed to read version 1"):
        ledger.get("retail-loan", 1)
