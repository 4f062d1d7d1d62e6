from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from ..config.loader import ConfigError, PipelineConfig, default_config, load_config
from ..db.connection import ConnectionPool
from ..db.mapping_cache import PostgresMappingCache
from ..db.product_store import PostgresProductStore
from ..errors import ImportPipelineError
from ..ingest.reader import IngestError
from ..logging.init import log_summary, setup_logging
from ..models.processing_result import ExecutionState, ImportResult
from ..services.mapping_cache import InMemoryMappingCache, MappingCacheStore
from ..services.mapping_engine import MappingConflict
from ..services.pipeline import ImportPipeline
from ..services.progress import ProgressSubscription, ProgressTracker
from ..services.semantic import build_semantic_service
from ..services.stores import InMemoryProductStore, ProductStore
from ..services.summary import render_summary_line

"""CLI entrypoint.

    python -m bulk_import.cli run FILE [--config PATH] [--auto-fix] [--retry]
                                      [--report PATH] [--report-format csv|jsonl]
                                      [--dry-run] [--inspect-data] [--debug]

Flow: upload -> analyze -> map -> validate (-> auto-fix) -> execute (-> retry) -> SUMMARY

Exit codes: 0 success, 2 partial failure / blocked by validation or mapping, 1 fatal.
DISABLE_DB_CONNECT=1 (or --dry-run) runs against in-memory stores (mock mode).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

DEFAULT_CONFIG_PATH = Path("config/import.yml")


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env; its values take precedence over the process environment."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="bulk_import", description="Bulk product importer")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Import a CSV / JSON / XLSX file")
    run.add_argument("file", type=Path)
    run.add_argument("--config", type=Path, default=None, help="YAML config (default: config/import.yml)")
    run.add_argument("--auto-fix", action="store_true", help="Apply every available auto-fix before import")
    run.add_argument("--retry", action="store_true", help="Retry failed writes until permanently failed")
    run.add_argument("--report", type=Path, default=None, help="Write the error report to this path")
    run.add_argument("--report-format", choices=("csv", "jsonl"), default="csv")
    run.add_argument("--mapping-cache", type=Path, default=None,
                     help="JSON file backing the mapping cache in mock mode")
    run.add_argument("--dry-run", action="store_true", help="Stop after validation; nothing is written")
    run.add_argument("--inspect-data", action="store_true", help="Print fields & first rows then exit")
    return p.parse_args(argv)


def _load(config_path: Path | None) -> PipelineConfig:
    if config_path is not None:
        return load_config(config_path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return default_config()


def _printable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _inspect_data(pipeline: ImportPipeline, path: Path) -> int:
    preview = pipeline.preview(path)
    print(f"FILE: {path.name} format={preview.metadata.format.value} "
          f"size={preview.metadata.size} estimated_records={preview.estimated_records}")
    print(f"  fields={preview.fields} header={preview.has_header}")
    for row in preview.rows:
        print("    row=", {k: _printable(v) for k, v in row.items()})
    return EXIT_SUCCESS_ALL


def _collaborators(cfg: PipelineConfig, args: argparse.Namespace, logger: logging.Logger
                   ) -> tuple[MappingCacheStore, ProductStore, ConnectionPool | None]:
    # DB 接続制御: テスト等で完全に無効化したい場合 DISABLE_DB_CONNECT=1
    if os.getenv("DISABLE_DB_CONNECT") == "1" or args.dry_run:
        logger.debug("mock mode: in-memory product store and mapping cache")
        return InMemoryMappingCache(args.mapping_cache), InMemoryProductStore(), None
    try:
        pool = ConnectionPool.from_config(cfg.database, maxconn=cfg.execution.max_workers + 1)
        pool.ping()
    except psycopg2.Error as e:
        logger.info(f"DB connection failed -> fallback to mock mode: {e}")
        return InMemoryMappingCache(args.mapping_cache), InMemoryProductStore(), None
    cache = PostgresMappingCache(pool, cfg.database.cache_table)
    cache.ensure_table()
    return cache, PostgresProductStore(pool, cfg.database.products_table), pool


def _follow(subscription: ProgressSubscription, total: int) -> threading.Thread:
    def run() -> None:
        with ProgressTracker(total) as tracker:
            for snapshot in subscription:
                tracker.update(snapshot)
        subscription.close()

    thread = threading.Thread(target=run, name="progress", daemon=True)
    thread.start()
    return thread


def _write_report(pipeline: ImportPipeline, session_id: str, args: argparse.Namespace,
                  logger: logging.Logger) -> None:
    if args.report is None:
        return
    path = pipeline.write_error_report(session_id, args.report_format, args.report)
    logger.info(f"error report written: {path}")


def _exit_code(result: ImportResult) -> int:
    if result.state is not ExecutionState.COMPLETED or result.failed > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def _run(pipeline: ImportPipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    session = pipeline.upload(args.file)
    sid = session.id
    try:
        pipeline.analyze(sid)
        mapping = pipeline.map_fields(sid)
        for m in mapping.mappings:
            logger.info(f"map {m.source_field} -> {m.target_field} ({m.confidence:g}, {m.strategy.value})")
        if mapping.unmapped:
            logger.info(f"unmapped: {', '.join(mapping.unmapped_names)}")
        for warning in pipeline.mapping_validation(sid).warnings:
            logger.warning(warning)

        report = pipeline.validate(sid)
        if args.auto_fix and report.errors:
            fixed = pipeline.auto_fix(sid)
            logger.info(f"auto-fix applied {fixed.fixed_count} fix(es), "
                        f"{len(fixed.remaining_errors)} issue(s) remain")
        status = pipeline.recovery_status(sid)
        if status.blocking_errors:
            logger.error(f"{status.blocking_errors} blocking validation error(s); import not started")
            _write_report(pipeline, sid, args, logger)
            return EXIT_PARTIAL_FAILURE
        if args.dry_run:
            logger.info(f"dry-run: {report.total_records} record(s) ready, nothing written")
            _write_report(pipeline, sid, args, logger)
            return EXIT_SUCCESS_ALL

        controller = pipeline.prepare_execution(sid)
        follower = _follow(pipeline.subscribe(sid), len(controller.records))
        result = pipeline.execute(sid)
        while args.retry and result.state is ExecutionState.COMPLETED \
                and result.failed > result.permanently_failed:
            result = pipeline.retry(sid)
        follower.join(timeout=5)

        log_summary(render_summary_line(result)[len("SUMMARY "):])
        if result.errors:
            _write_report(pipeline, sid, args, logger)
        return _exit_code(result)
    except MappingConflict as e:
        logger.error(f"mapping: {e}")
        return EXIT_PARTIAL_FAILURE
    finally:
        pipeline.cleanup(sid)


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみシステム引数を読む ([] はそのまま)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        for h in logger.handlers:
            h.setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
        logger.debug("debug mode enabled")

    try:
        cfg = _load(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if not args.file.exists():
        logger.error(f"file not found: {args.file}")
        return EXIT_FATAL

    pool: ConnectionPool | None = None
    try:
        if args.inspect_data:
            pipeline = ImportPipeline(InMemoryMappingCache(), InMemoryProductStore(), cfg)
            return _inspect_data(pipeline, args.file)

        cache, store, pool = _collaborators(cfg, args, logger)
        semantic = build_semantic_service(cfg.semantic_service, cfg.mapping.semantic_timeout)
        pipeline = ImportPipeline(cache, store, cfg, semantic=semantic)
        logger.info(f"mode={'live' if pool is not None else 'mock'} file={args.file}")
        return _run(pipeline, args, logger)
    except IngestError as e:
        logger.error(f"ingest: {e}")
        return EXIT_FATAL
    except ImportPipelineError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL
    finally:
        if pool is not None:
            pool.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
