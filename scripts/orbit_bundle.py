from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Sequence

from orbit_assessment.infrastructure.config import DatabaseConfig
from orbit_assessment.infrastructure.db import make_engine_and_session
from orbit_assessment.infrastructure.exceptions import OrbitAssessmentError
from orbit_assessment.utils.backup import BundleService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export, verify and merge ORBIT assessment bundles")

    parser.add_argument(
        "--backend", choices=["sqlite", "mysql"], default=os.environ.get("DB_BACKEND", "sqlite")
    )
    parser.add_argument("--sqlite-path", default=os.environ.get("DB_SQLITE_PATH", "./orbit.db"))
    parser.add_argument("--mysql-host", default=os.environ.get("DB_MYSQL_HOST", "localhost"))
    parser.add_argument("--mysql-port", type=int, default=int(os.environ.get("DB_MYSQL_PORT") or 3306))
    parser.add_argument("--mysql-user", default=os.environ.get("DB_MYSQL_USER", "root"))
    parser.add_argument("--mysql-password", default=os.environ.get("DB_MYSQL_PASSWORD", ""))
    parser.add_argument(
        "--mysql-database", "--mysql-db", dest="mysql_database",
        default=os.environ.get("DB_MYSQL_DATABASE", "orbit"),
    )

    sub = parser.add_subparsers(dest="command", required=True)

    exp = sub.add_parser("export", help="Write current assessments and history to a bundle")
    exp.add_argument("--out-dir", default=None)
    exp.add_argument("--filename", default=None)
    exp.add_argument("--scope", choices=["full", "domain", "area"], default="full")
    exp.add_argument("--scope-id", default=None)
    exp.add_argument("--no-history", action="store_true")

    imp = sub.add_parser("import", help="Merge a bundle into the database")
    imp.add_argument("path")
    imp.add_argument("--dry-run", action="store_true")
    imp.add_argument("--workers", type=int, default=None)

    ver = sub.add_parser("verify", help="Check a bundle file without importing it")
    ver.add_argument("path")
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "verify":
        report = BundleService().verify_bundle(args.path)
        for error in report["errors"]:
            print(f"ERROR: {error}", file=sys.stderr)
        for warning in report["warnings"]:
            print(f"WARNING: {warning}")
        for name, count in report["statistics"].items():
            print(f" - {name}: {count}")
        return 0 if report["valid"] else 1

    cfg = DatabaseConfig(
        backend=args.backend,
        sqlite_path=args.sqlite_path,
        mysql_host=args.mysql_host,
        mysql_port=args.mysql_port,
        mysql_user=args.mysql_user,
        mysql_password=args.mysql_password,
        mysql_database=args.mysql_database,
    )
    engine, SessionLocal = make_engine_and_session(cfg.get_connection_url())
    service = BundleService(SessionLocal)

    try:
        if args.command == "export":
            path = service.export_to_file(
                args.out_dir,
                filename=args.filename,
                scope=args.scope,
                scope_id=args.scope_id,
                include_history=not args.no_history,
            )
            print(f"Bundle written to {path}")
            return 0

        result = service.import_from_file(
            args.path,
            dry_run=args.dry_run,
            progress=lambda pct, msg: print(f"[{pct:3d}%] {msg}"),
            max_workers=args.workers,
        )
    except OrbitAssessmentError as e:
        print(f"ERROR: {e.user_message}: {e.message}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()

    for item in result.details:
        print(f"{item.area_id}: {item.action} ({item.reason})")
    print(
        f"{'Dry run: ' if args.dry_run else ''}{result.imported_as_current} current, "
        f"{result.imported_as_history} history, {result.skipped} skipped, "
        f"{len(result.errors)} errors"
    )
    print(f"History entries: {result.history_imported} added, {result.history_skipped} skipped")
    return 0 if result.success else 1


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
