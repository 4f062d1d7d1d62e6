from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..config.loader import PipelineConfig, default_config
from ..errors import InvalidSessionState, SessionNotFound
from ..ingest.ingestor import FileIngestor, FilePreview, IngestResult
from ..logging.error_report import ErrorReportWriter, render_csv, render_jsonl
from ..models.mapping import FieldMapping, MappingResult, MappingValidationResult
from ..models.processing_result import ExecutionState, ImportProgress, ImportResult
from ..models.recovery import FixRequest, FixResult, RecoveryStatusReport
from ..models.session import SessionStatus, UploadSession
from ..models.source_field import SourceField
from ..models.validation import ValidationError, ValidationReport
from .analyzer import SchemaAnalyzer
from .execution import ExecutionError, ImportExecutionController
from .mapping_cache import MappingCacheStore
from .mapping_engine import FieldMappingEngine
from .progress import ProgressSubscription
from .recovery import RecoveryCoordinator
from .semantic import SemanticInferenceService
from .stores import ProductStore
from .syndication import ChannelResult, ChannelSink, SyndicationFanout
from .validation import ValidationEngine, apply_mappings

"""Import pipeline facade.

Wires the components into the session lifecycle:

    upload -> analyze -> map (+ overrides) -> validate -> recover -> execute -> cleanup

Every artifact of a session (upload metadata, source fields, mappings, validation
errors, progress, result) is kept in a SessionStore keyed by session id and expires
after `sessions.ttl_seconds` without activity. Sessions are independent; each has
its own lock for state transitions.
"""

__all__ = [
    "SessionEntry",
    "SessionStore",
    "ImportPipeline",
]

logger = logging.getLogger(__name__)

S = SessionStatus
_EDITABLE = (S.INITIALIZED, S.ANALYZED, S.MAPPED, S.VALIDATED)


@dataclass
class SessionEntry:
    """Everything the pipeline holds for one upload."""
    session: UploadSession
    ingest: IngestResult
    fields: list[SourceField] = field(default_factory=list)
    mapping: MappingResult | None = None
    mapping_validation: MappingValidationResult | None = None
    validation: ValidationReport | None = None
    controller: ImportExecutionController | None = None
    last_seen: datetime = field(default_factory=lambda: datetime.now(UTC))
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def advance(self, status: SessionStatus, error: str | None = None) -> None:
        self.session = self.session.transition(status, error)


class SessionStore:
    """Session registry with inactivity TTL.

    Expired entries are dropped on access or purge and handed to `on_expire`
    (default: delete the temporary artifact).
    """

    def __init__(self, ttl_seconds: float = 3600.0,
                 clock: Callable[[], datetime] | None = None,
                 on_expire: Callable[[SessionEntry], None] | None = None) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self.on_expire = on_expire or (lambda entry: entry.ingest.cleanup())
        self._lock = threading.Lock()
        self._entries: dict[str, SessionEntry] = {}

    def add(self, entry: SessionEntry) -> None:
        entry.last_seen = self._clock()
        with self._lock:
            self._entries[entry.session.id] = entry

    def get(self, session_id: str) -> SessionEntry:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None and self._expired(entry, now):
                del self._entries[session_id]
                expired = entry
                entry = None
            else:
                expired = None
        if expired is not None:
            self.on_expire(expired)
            logger.info("Session %s expired", session_id)
        if entry is None:
            raise SessionNotFound(f"unknown or expired session: {session_id}")
        entry.last_seen = now
        return entry

    def remove(self, session_id: str) -> SessionEntry | None:
        with self._lock:
            return self._entries.pop(session_id, None)

    def purge_expired(self) -> list[SessionEntry]:
        now = self._clock()
        with self._lock:
            expired = [e for e in self._entries.values() if self._expired(e, now)]
            for entry in expired:
                del self._entries[entry.session.id]
        for entry in expired:
            self.on_expire(entry)
        return expired

    def _expired(self, entry: SessionEntry, now: datetime) -> bool:
        # 実行中のセッションは期限切れにしない
        if entry.session.status is S.EXECUTING:
            return False
        return (now - entry.last_seen).total_seconds() > self.ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries


def _require(entry: SessionEntry, operation: str, *allowed: SessionStatus) -> None:
    status = entry.session.status
    if status not in allowed:
        raise InvalidSessionState(
            f"{operation} is not allowed for session {entry.session.id} in status {status.value}"
        )


class ImportPipeline:
    def __init__(
        self,
        cache: MappingCacheStore,
        product_store: ProductStore,
        config: PipelineConfig | None = None,
        semantic: SemanticInferenceService | None = None,
        sessions: SessionStore | None = None,
        report_writer: ErrorReportWriter | None = None,
        syndication: SyndicationFanout | None = None,
    ) -> None:
        self.config = config or default_config()
        self.product_store = product_store
        self.ingestor = FileIngestor(self.config.ingest)
        self.analyzer = SchemaAnalyzer(self.config.analysis)
        self.mapper = FieldMappingEngine(cache, semantic, self.config.mapping)
        self.validator = ValidationEngine()
        self.recovery = RecoveryCoordinator(self.validator)
        # SessionStore は空だと falsy になるので `or` は使わない
        self.sessions = (sessions if sessions is not None
                         else SessionStore(self.config.sessions.ttl_seconds))
        self.sessions.on_expire = self._discard
        self.report_writer = report_writer if report_writer is not None else ErrorReportWriter()
        self.syndication = syndication if syndication is not None else SyndicationFanout()

    # ---- upload / preview --------------------------------------------------

    def preview(self, source: bytes | Path, filename: str | None = None,
                mime_type: str | None = None) -> FilePreview:
        """Fast preview; creates no session."""
        return self.ingestor.preview(source, filename, mime_type)

    def upload(self, source: bytes | Path, filename: str | None = None,
               mime_type: str | None = None) -> UploadSession:
        """Parse an upload and open a session for it. IngestError propagates (no session)."""
        ingest = self.ingestor.ingest(source, filename, mime_type)
        session = UploadSession(id=uuid.uuid4().hex, file=ingest.metadata)
        self.sessions.add(SessionEntry(session=session, ingest=ingest))
        logger.info("Session %s created for %s (%d rows)", session.id, session.file.name,
                    ingest.row_count)
        return session

    # ---- analysis / mapping ------------------------------------------------

    def analyze(self, session_id: str) -> list[SourceField]:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "analyze", *_EDITABLE)
            entry.fields = self.analyzer.analyze(entry.ingest.iter_rows(), entry.ingest.fields)
            entry.mapping = entry.mapping_validation = entry.validation = None
            entry.advance(S.ANALYZED)
            return list(entry.fields)

    def map_fields(self, session_id: str) -> MappingResult:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "map", S.ANALYZED, S.MAPPED, S.VALIDATED)
            entry.mapping = self.mapper.generate_mappings(entry.fields)
            entry.mapping_validation = self.mapper.validate_mappings(entry.mapping.mappings)
            entry.validation = None
            entry.advance(S.MAPPED)
            return entry.mapping

    def suggestions(self, session_id: str, source_field: str) -> list[FieldMapping]:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "suggestions", S.ANALYZED, S.MAPPED, S.VALIDATED)
            for f in entry.fields:
                if f.name == source_field:
                    return self.mapper.suggest(f)
        raise InvalidSessionState(f"unknown source field {source_field!r} in session {session_id}")

    def override_mapping(self, session_id: str, source_field: str,
                         target_field: str | None) -> MappingResult:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "override", S.MAPPED, S.VALIDATED)
            assert entry.mapping is not None
            entry.mapping = self.mapper.override(entry.mapping, entry.fields, source_field, target_field)
            entry.mapping_validation = self.mapper.validate_mappings(entry.mapping.mappings)
            # マッピング変更後は再検証が必要
            entry.validation = None
            self.recovery.close(session_id)
            entry.advance(S.MAPPED)
            return entry.mapping

    def mapping_validation(self, session_id: str) -> MappingValidationResult:
        entry = self.sessions.get(session_id)
        with entry.lock:
            if entry.mapping_validation is None:
                raise InvalidSessionState(f"session {session_id} has no mappings yet")
            return entry.mapping_validation

    # ---- validation / recovery ---------------------------------------------

    def validate(self, session_id: str) -> ValidationReport:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "validate", S.MAPPED, S.VALIDATED)
            assert entry.mapping is not None
            records = apply_mappings(entry.ingest.iter_rows(), entry.mapping.mappings)
            entry.validation = self.validator.validate(records)
            self.recovery.open(session_id, records, entry.validation.errors)
            entry.advance(S.VALIDATED)
            return entry.validation

    def _recovering(self, session_id: str) -> SessionEntry:
        entry = self.sessions.get(session_id)
        _require(entry, "recovery", S.VALIDATED)
        return entry

    def fix_single(self, session_id: str, record_index: int, field_name: str, new_value: Any) -> FixResult:
        self._recovering(session_id)
        return self.recovery.fix_single(session_id, record_index, field_name, new_value)

    def fix_bulk(self, session_id: str, fixes: Sequence[FixRequest]) -> FixResult:
        self._recovering(session_id)
        return self.recovery.fix_bulk(session_id, fixes)

    def auto_fix(self, session_id: str) -> FixResult:
        self._recovering(session_id)
        return self.recovery.auto_fix(session_id)

    def undo_last_fix(self, session_id: str) -> FixResult:
        self._recovering(session_id)
        return self.recovery.undo_last(session_id)

    def recovery_status(self, session_id: str) -> RecoveryStatusReport:
        self._recovering(session_id)
        return self.recovery.status(session_id)

    def errors(self, session_id: str) -> list[ValidationError]:
        """Current errors: open validation errors, or write failures once executed."""
        entry = self.sessions.get(session_id)
        if entry.controller is not None and entry.controller.result is not None:
            return list(entry.controller.result.errors)
        if entry.session.status is S.VALIDATED:
            return self.recovery.errors(session_id)
        return list(entry.validation.errors) if entry.validation is not None else []

    def export_errors(self, session_id: str, fmt: str = "csv") -> str:
        errors = self.errors(session_id)
        if fmt == "csv":
            return render_csv(errors)
        if fmt == "jsonl":
            return render_jsonl(errors)
        raise ValueError(f"unsupported export format: {fmt}")

    def write_error_report(self, session_id: str, fmt: str = "csv", path: Path | None = None) -> Path:
        return self.report_writer.write(session_id, self.errors(session_id), fmt, path)

    # ---- execution ---------------------------------------------------------

    def prepare_execution(self, session_id: str, metrics_callback: Callable[..., None] | None = None
                          ) -> ImportExecutionController:
        """Create the controller so observers can subscribe before `execute`.

        Raises:
            MappingConflict: mapping blocks execution (required field unmapped, duplicates)
            InvalidSessionState: blocking validation errors remain
        """
        entry = self.sessions.get(session_id)
        with entry.lock:
            if entry.controller is not None and entry.session.status is S.VALIDATED:
                return entry.controller
            _require(entry, "execute", S.VALIDATED)
            assert entry.mapping is not None
            self.mapper.require_executable(entry.mapping.mappings)
            status = self.recovery.status(session_id)
            if status.blocking_errors:
                raise InvalidSessionState(
                    f"session {session_id} has {status.blocking_errors} blocking error(s)"
                )
            entry.controller = ImportExecutionController(
                session_id,
                self.recovery.records(session_id),
                self.product_store,
                self.config.execution,
                metrics_callback=metrics_callback,
            )
            return entry.controller

    def execute(self, session_id: str) -> ImportResult:
        controller = self.prepare_execution(session_id)
        entry = self.sessions.get(session_id)
        with entry.lock:
            if controller.state is ExecutionState.CANCELLED:
                # prepare 後・実行前に cancel された
                entry.advance(S.CANCELLED)
                self.recovery.close(session_id)
                assert controller.result is not None
                return controller.result
            entry.advance(S.EXECUTING)
        try:
            result = controller.start()
        except ExecutionError as e:
            with entry.lock:
                entry.advance(S.FAILED, str(e))
            raise
        with entry.lock:
            entry.advance(S.CANCELLED if result.state is ExecutionState.CANCELLED else S.COMPLETED)
        self.recovery.close(session_id)
        return result

    def retry(self, session_id: str) -> ImportResult:
        entry = self.sessions.get(session_id)
        with entry.lock:
            _require(entry, "retry", S.COMPLETED)
            controller = entry.controller
            assert controller is not None
            entry.advance(S.EXECUTING)
        try:
            result = controller.retry()
        except ExecutionError as e:
            with entry.lock:
                entry.advance(S.FAILED, str(e))
            raise
        with entry.lock:
            entry.advance(S.CANCELLED if result.state is ExecutionState.CANCELLED else S.COMPLETED)
        return result

    def cancel(self, session_id: str) -> None:
        entry = self.sessions.get(session_id)
        if entry.controller is None:
            raise InvalidSessionState(f"session {session_id} has no import to cancel")
        entry.controller.cancel()

    def _controller(self, session_id: str) -> ImportExecutionController:
        entry = self.sessions.get(session_id)
        if entry.controller is None:
            raise InvalidSessionState(f"session {session_id} has not been prepared for execution")
        return entry.controller

    def progress(self, session_id: str) -> ImportProgress:
        return self._controller(session_id).progress()

    def subscribe(self, session_id: str) -> ProgressSubscription:
        return self._controller(session_id).channel.subscribe()

    def result(self, session_id: str) -> ImportResult | None:
        entry = self.sessions.get(session_id)
        return entry.controller.result if entry.controller is not None else None

    def syndicate(self, session_id: str, sinks: Sequence[ChannelSink]) -> list[ChannelResult]:
        result = self.result(session_id)
        if result is None:
            raise InvalidSessionState(f"session {session_id} has no import result")
        return self.syndication.publish(result.product_ids, sinks)

    # ---- reads / cleanup ---------------------------------------------------

    def session(self, session_id: str) -> UploadSession:
        return self.sessions.get(session_id).session

    def fields(self, session_id: str) -> list[SourceField]:
        return list(self.sessions.get(session_id).fields)

    def mapping(self, session_id: str) -> MappingResult | None:
        return self.sessions.get(session_id).mapping

    def cleanup(self, session_id: str) -> None:
        """Drop the session and delete any temporary artifact. Unknown ids are ignored."""
        entry = self.sessions.remove(session_id)
        self.recovery.close(session_id)
        if entry is not None:
            entry.ingest.cleanup()
            logger.info("Session %s cleaned up", session_id)

    def purge_expired(self) -> int:
        expired = self.sessions.purge_expired()
        if expired:
            logger.info("Purged %d expired session(s)", len(expired))
        return len(expired)

    def _discard(self, entry: SessionEntry) -> None:
        self.recovery.close(entry.session.id)
        entry.ingest.cleanup()
