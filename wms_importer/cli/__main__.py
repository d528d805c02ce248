from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import Any

from ..config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from ..db.batch_upsert import BatchUpsertError, PostgresStore, dry_run_write
from ..db.connection import db_connection, load_env_file
from ..db.notify import PgNotifyPublisher, listen
from ..excel.export import export_rows
from ..excel.reader import ParseError, frame_to_rows, read_sheet, read_workbook
from ..logging.error_log import ErrorLogBuffer
from ..logging.init import log_summary, setup_logging
from ..mapping.field_mapper import build_header_map
from ..models.config_models import ImportConfig, TableProfile
from ..models.error_record import ErrorRecord
from ..models.import_result import ImportResult, ImportStatus
from ..services.batcher import CancelToken
from ..services.orchestrator import ImportSession
from ..services.progress import ProgressTracker
from ..services.schema_contract import SchemaContract
from ..services.staging import StagingMap
from ..services.summary import render_summary_line

"""CLI entrypoint: ``wms-import`` / ``python -m wms_importer.cli``.

Sub-commands:
- import FILE --profile P   parse one sheet and upsert it (SUMMARY line at the end)
- inspect FILE              sheet names, headers, resolved mapping, first rows
- export --profile P OUT    dump a table to .xlsx / .csv
- watch                     print change notifications published by imports

Exit codes: 0 success, 2 partial (row errors / halted / cancelled import),
1 fatal (config, parse, connection).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

INSPECT_SAMPLE_ROWS = 3


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="wms-import", description="Spreadsheet -> PostgreSQL import reconciler")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML path")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import one sheet into the profile's table")
    imp.add_argument("file", type=Path)
    imp.add_argument("--profile", required=True)
    imp.add_argument("--sheet", default=None, help="Sheet name (default: profile sheet or first sheet)")
    imp.add_argument("--header-row", type=int, default=0, help="0-based index of the header row")
    imp.add_argument("--batch-size", type=int, default=None)
    imp.add_argument("--staging", type=Path, default=None, help="Persist the staging map at this path")
    imp.add_argument("--dry-run", action="store_true", help="Coerce and batch without touching the database")
    imp.add_argument(
        "--validate-schema",
        action="store_true",
        help="Drop fields that are not columns of the live table before writing",
    )

    ins = sub.add_parser("inspect", help="Print sheet headers, mapping and first rows")
    ins.add_argument("file", type=Path)
    ins.add_argument("--profile", default=None)
    ins.add_argument("--header-row", type=int, default=0)

    exp = sub.add_parser("export", help="Export a table to .xlsx or .csv")
    exp.add_argument("output", type=Path)
    exp.add_argument("--profile", required=True)

    watch = sub.add_parser("watch", help="Print change notifications")
    watch.add_argument("--timeout", type=float, default=30.0, help="Stop after this many idle seconds")
    watch.add_argument("--max-events", type=int, default=None)
    return p.parse_args(argv)


def _exit_code(result: ImportResult) -> int:
    if result.status == ImportStatus.SUCCESS:
        return EXIT_SUCCESS_ALL
    return EXIT_PARTIAL_FAILURE


def _load_staging(path: Path | None, profile: TableProfile) -> StagingMap | None:
    if path is None or not profile.conflict_key:
        return None
    return StagingMap.load(path, profile.conflict_key)


def _run_session(
    profile: TableProfile,
    rows: list[dict[str, Any]],
    write: Any,
    session_options: dict[str, Any],
) -> ImportResult:
    token = CancelToken()
    previous = signal.getsignal(signal.SIGINT)

    def _on_sigint(signum: int, frame: Any) -> None:
        # 送信中のバッチは完了させ、次のバッチの前で停止
        token.cancel()

    signal.signal(signal.SIGINT, _on_sigint)
    try:
        with ProgressTracker(None, description=profile.name) as progress:
            session = ImportSession(
                profile,
                write,
                cancel_token=token,
                on_batch=progress.finish_batch,
                **session_options,
            )
            return session.run(rows)
    finally:
        signal.signal(signal.SIGINT, previous)


def _cmd_import(cfg: ImportConfig, args: argparse.Namespace, logger: Any) -> int:
    try:
        profile = cfg.get_profile(args.profile)
    except KeyError as e:
        logger.error("config: %s", e.args[0])
        return EXIT_FATAL

    error_log = ErrorLogBuffer(cfg.error_log_dir)
    sheet = args.sheet or profile.sheet
    try:
        sheet, rows = read_sheet(args.file, sheet, header_row=args.header_row)
    except ParseError as e:
        logger.error("parse: %s", e)
        error_log.append(
            ErrorRecord.create(
                file=args.file.name,
                sheet=sheet or "",
                row=-1,
                field="general",
                error_type="PARSE_ERROR",
                message=str(e),
            )
        )
        error_log.flush()
        return EXIT_FATAL

    staging_path = args.staging or (Path(cfg.staging_path) if cfg.staging_path else None)
    try:
        staging = _load_staging(staging_path, profile)
    except ValueError as e:
        logger.error("staging: %s", e)
        return EXIT_FATAL

    session_options: dict[str, Any] = {
        "batch_size": args.batch_size or cfg.batch_size,
        "staging": staging,
        "error_log": error_log,
        "file_name": args.file.name,
        "sheet_name": sheet or "",
    }
    logger.info("file=%s profile=%s rows=%d", args.file, profile.name, len(rows))

    if args.dry_run:
        logger.info("dry-run: nothing is written to the database")
        result = _run_session(profile, rows, dry_run_write, session_options)
    else:
        try:
            with db_connection(cfg.database) as conn:
                store = PostgresStore(conn)
                if args.validate_schema:
                    session_options["contract"] = SchemaContract(profile.table, store.table_columns(profile.table))
                session_options["lookup_resolver"] = store.resolve_lookup
                session_options["notifier"] = PgNotifyPublisher(conn, cfg.notify_channel)
                result = _run_session(profile, rows, store, session_options)
        except BatchUpsertError as e:
            logger.error("database: %s", e)
            return EXIT_FATAL
        except Exception as e:
            logger.error("database error: %s", e)
            return EXIT_FATAL

    if staging_path is not None and staging is not None and not args.dry_run:
        try:
            staging.save(staging_path)
            logger.debug("staging map saved to %s (%d keys)", staging_path, len(staging))
        except (OSError, TypeError) as e:
            # 書き込みはコミット済み: SUMMARY は出力する
            logger.error("staging: failed to save %s: %s", staging_path, e)

    if result.dropped_columns:
        logger.warning("columns dropped by schema-drift retry: %s", result.dropped_columns)
    if result.error:
        logger.error("import halted: %s", result.error)

    # log_summary が "SUMMARY " ラベルを付けるため先頭を除く
    log_summary(render_summary_line(result)[len("SUMMARY "):])
    return _exit_code(result)


def _cmd_inspect(cfg: ImportConfig | None, args: argparse.Namespace) -> int:
    try:
        sheets = read_workbook(args.file)
    except ParseError as e:
        print(f"inspect: {e}")
        return EXIT_FATAL
    profile = None
    if cfg is not None and args.profile:
        try:
            profile = cfg.get_profile(args.profile)
        except KeyError as e:
            print(f"inspect: {e.args[0]}")
            return EXIT_FATAL
    print(f"FILE: {args.file.name}")
    for name, df in sheets.items():
        try:
            headers, rows = frame_to_rows(df, name, header_row=args.header_row)
        except ParseError as e:
            print(f"  SHEET: {name} error={e}")
            continue
        print(f"  SHEET: {name} rows={len(rows)} headers={headers}")
        if profile is not None:
            mapping = build_header_map(profile.fields, headers)
            print(f"    mapping={mapping}")
        safe_rows = [
            {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in r.items()}
            for r in rows[:INSPECT_SAMPLE_ROWS]
        ]
        print("    sample_rows=", safe_rows)
    return EXIT_SUCCESS_ALL


def _cmd_export(cfg: ImportConfig, args: argparse.Namespace, logger: Any) -> int:
    try:
        profile = cfg.get_profile(args.profile)
    except KeyError as e:
        logger.error("config: %s", e.args[0])
        return EXIT_FATAL
    try:
        with db_connection(cfg.database) as conn:
            rows = PostgresStore(conn).fetch_rows(profile.table)
    except Exception as e:
        logger.error("export: %s", e)
        return EXIT_FATAL
    n = export_rows(rows, args.output, sheet_name=profile.name)
    logger.info("exported %d rows of %s to %s", n, profile.table, args.output)
    return EXIT_SUCCESS_ALL


def _cmd_watch(cfg: ImportConfig, args: argparse.Namespace, logger: Any) -> int:
    try:
        with db_connection(cfg.database, autocommit=True) as conn:
            logger.info("listening on %s (idle timeout %.0fs)", cfg.notify_channel, args.timeout)
            for event in listen(conn, cfg.notify_channel, timeout=args.timeout, max_events=args.max_events):
                logger.info("change table=%s action=%s count=%d", event.table, event.action, event.count)
    except Exception as e:
        logger.error("watch: %s", e)
        return EXIT_FATAL
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    # 空リスト [] を渡したテストで sys.argv が混入しないよう None のときのみ読む
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)

    # .env を最優先で読み込む (DB 接続パラメータ優先順位保証)
    load_env_file(Path(".env"), override=True)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        if args.command != "inspect":
            logger.error("config: %s", e)
            return EXIT_FATAL
        # inspect は設定なしでも動作する
        logger.debug("inspect without config: %s", e)
        cfg = None

    if args.command == "inspect":
        return _cmd_inspect(cfg, args)
    if args.command == "import":
        return _cmd_import(cfg, args, logger)
    if args.command == "export":
        return _cmd_export(cfg, args, logger)
    return _cmd_watch(cfg, args, logger)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
