from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def test_form_config_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "formconfig" / "main.py").read_text(encoding="utf-8")

    assert '@app.get("/api/products/{product_id}/form-config")' in source
    assert '@app.put("/api/products/{product_id}/form-config")' in source
    assert '@app.post("/api/products/{product_id}/form-config/import")' in source
    assert '@app.post("/api/products/{product_id}/form-config/import-file")' in source
    assert '@app.get("/api/products/{product_id}/form-config/export")' in source
    assert '@app.post("/api/products/{product_id}/form-config/snippets")' in source
    assert '@app.post("/api/products/{product_id}/form-config/reorder")' in source
    assert '@app.post("/api/products/{product_id}/form-config/edits")' in source


def test_stage_and_rule_context_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "formconfig" / "main.py").read_text(encoding="utf-8")

    assert '@app.get("/api/stages")' in source
    assert '@app.post("/api/products/{product_id}/form-config/resolve")' in source
    assert '@app.post("/api/products/{product_id}/form-config/validate")' in source
    assert '@app.post("/api/products/{product_id}/rule-context")' in source
    assert '@app.post("/api/products/{product_id}/risk-assessment")' in source


def test_version_and_migration_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "formconfig" / "main.py").read_text(encoding="utf-8")

    assert '@app.get("/api/products/{product_id}/versions")' in source
    assert '@app.get("/api/products/{product_id}/versions/{version_number}")' in source
    assert '@app.post("/api/products/{product_id}/versions/{version_number}/restore")' in source
    assert '@app.post("/api/migrations/required-stages")' in source
    assert '@app.post("/api/migrations/validation-fields")' in source


def test_migration_script_builds_its_service_without_the_app():
    source = (REPO_ROOT / "scripts" / "migrate_form_configs.py").read_text(encoding="utf-8")

    assert "from formconfig.settings import DATA_DIR, build_service" in source
    assert "formconfig.main" not in source
