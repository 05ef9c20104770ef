from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from formconfig.merge_engine import check_snippet
from formconfig.schema_model import FormConfigError, FormField
from formconfig.settings import DATA_DIR, build_service


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run batch migrations over every stored product form configuration.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DATA_DIR,
        help="Form configuration data directory (defaults to FORM_CONFIG_DATA_DIR).",
    )
    parser.add_argument("--author", default="migration-script", help="Recorded as the version author.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stages = subparsers.add_parser("required-stages", help="Set requiredAtStage on every section field.")
    stages.add_argument("stages", nargs="+", help="Stage names, e.g. draft submitted.")

    fields = subparsers.add_parser("validation-fields", help="Ensure validation fields exist, listed first.")
    fields.add_argument("fields_file", type=Path, help="JSON file holding an array of field objects.")
    fields.add_argument("--product", action="append", dest="products", help="Limit to this product id.")

    subparsers.add_parser("check-integrity", help="Report version numbering anomalies per product.")
    return parser


def _load_fields(path: Path) -> list[FormField]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise SystemExit(f"Expected a JSON array of fields in {path}")
    return [FormField.from_dict(check_snippet("validation_field", item)) for item in payload]


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = _parser().parse_args()
    service = build_service(args.data_dir)

    try:
        if args.command == "required-stages":
            result = service.migrate_required_stages(args.stages, author=args.author)
        elif args.command == "validation-fields":
            result = service.migrate_validation_fields(
                _load_fields(args.fields_file),
                product_ids=args.products,
                author=args.author,
            )
        else:
            report = {
                product_id: service.ledger.check_integrity(product_id)
                for product_id in service.list_products()
            }
            print(json.dumps(report, indent=2))
            return 1 if any(report.values()) else 0
    except FormConfigError as exc:
        print(f"Migration rejected: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.count("error") == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
