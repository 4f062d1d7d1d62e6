from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from ..errors import ImportPipelineError, SessionNotFound
from ..logging.error_report import render_csv, render_jsonl
from ..models.catalogue import PRODUCT_FIELDS, TargetField
from ..models.recovery import (
    AppliedFix,
    FixRequest,
    FixResult,
    FixSource,
    RecoverySession,
    RecoveryStatus,
    RecoveryStatusReport,
)
from ..models.validation import Severity, ValidationError
from .validation import ValidationEngine, coerce_for_field

"""Error recovery coordinator.

One RecoverySession per upload. Every mutating operation (fix_single, fix_bulk,
auto_fix, undo_last) runs under that session's lock; sessions never share a lock.

- fix_single: patch one value, drop the errors for exactly (record_index, field),
  re-validate that record only
- fix_bulk:   validate every request first, apply all on a copy, commit at the end
- auto_fix:   apply the AutoFix of every error that carries one
Re-applying a fix whose value is already in place (and has no open error) is a no-op.
Malformed requests raise RecoveryError and leave the session untouched.
"""

__all__ = [
    "RecoveryError",
    "RecoveryCoordinator",
]

logger = logging.getLogger(__name__)

_SCALARS = (str, int, float, bool, datetime, date)


class RecoveryError(ImportPipelineError):
    """Malformed fix request (unknown record, empty / unknown field, invalid value)."""


def _same(a: Any, b: Any) -> bool:
    return type(a) is type(b) and a == b


class RecoveryCoordinator:
    def __init__(self, validator: ValidationEngine | None = None,
                 catalogue: dict[str, TargetField] | None = None) -> None:
        self.validator = validator or ValidationEngine(catalogue)
        self.catalogue = catalogue or PRODUCT_FIELDS
        self._sessions: dict[str, RecoverySession] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry = threading.Lock()

    # ---- session registry --------------------------------------------------

    def open(self, session_id: str, records: Sequence[dict[str, Any]],
             errors: Sequence[ValidationError]) -> RecoverySession:
        """Create (or replace) the recovery session for an upload."""
        session = RecoverySession(
            session_id=session_id,
            records=[dict(r) for r in records],
            errors=list(errors),
        )
        session.status = self._status_of(session)
        with self._registry:
            self._sessions[session_id] = session
            self._locks.setdefault(session_id, threading.RLock())
        logger.info("Recovery session %s opened with %d error(s)", session_id, len(errors))
        return session

    def close(self, session_id: str) -> None:
        with self._registry:
            session = self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        if session is not None:
            session.status = RecoveryStatus.CLOSED

    def _lock(self, session_id: str) -> tuple[RecoverySession, threading.RLock]:
        with self._registry:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(f"no recovery session for {session_id}")
            return session, self._locks[session_id]

    # ---- validation of requests ---------------------------------------------

    def _check(self, session: RecoverySession, request: FixRequest) -> None:
        index = request.record_index
        if isinstance(index, bool) or not isinstance(index, int):
            raise RecoveryError(f"record index must be an integer, got {index!r}")
        if not 0 <= index < len(session.records):
            raise RecoveryError(
                f"record index {index} out of range (0..{len(session.records) - 1})"
            )
        if not isinstance(request.field, str) or not request.field.strip():
            raise RecoveryError("field must be a non-empty name")
        if request.field not in self.catalogue:
            raise RecoveryError(f"unknown field: {request.field}")
        if request.new_value is not None and not isinstance(request.new_value, _SCALARS):
            raise RecoveryError(
                f"invalid value for {request.field}: {type(request.new_value).__name__}"
            )

    # ---- core mutation (caller holds the session lock) ---------------------

    def _apply(self, session: RecoverySession, index: int, field: str, value: Any,
               source: FixSource, coerce: bool = True) -> bool:
        record = session.records[index]
        new_value = coerce_for_field(field, value, self.catalogue) if coerce else value
        old_value = record.get(field)
        open_errors = [e for e in session.errors if e.key == (index, field)]
        if _same(old_value, new_value) and not open_errors:
            return False

        record[field] = new_value
        fresh = self.validator.validate_record(index, record)
        fresh_keys = {(e.key, e.rule) for e in fresh}
        session.resolved.extend(e for e in open_errors if (e.key, e.rule) not in fresh_keys)
        others = [e for e in session.errors if e.record_index != index]
        session.errors = sorted(others + fresh, key=lambda e: e.record_index)
        session.history.append(AppliedFix(index, field, old_value, new_value, source))
        return True

    def _status_of(self, session: RecoverySession) -> RecoveryStatus:
        if any(e.severity is Severity.ERROR for e in session.errors):
            return RecoveryStatus.OPEN
        return RecoveryStatus.RESOLVED

    def _result(self, session: RecoverySession, fixed: int,
                record_index: int | None = None) -> FixResult:
        session.status = self._status_of(session)
        record_errors = (
            tuple(e for e in session.errors if e.record_index == record_index)
            if record_index is not None else ()
        )
        return FixResult(
            fixed_count=fixed,
            remaining_errors=tuple(session.errors),
            can_proceed=session.status is RecoveryStatus.RESOLVED,
            record_errors=record_errors,
        )

    # ---- operations --------------------------------------------------------

    def fix_single(self, session_id: str, record_index: int, field: str, new_value: Any) -> FixResult:
        session, lock = self._lock(session_id)
        request = FixRequest(record_index, field, new_value)
        with lock:
            self._check(session, request)
            applied = self._apply(session, record_index, field, new_value, FixSource.MANUAL)
            return self._result(session, int(applied), record_index)

    def fix_bulk(self, session_id: str, fixes: Sequence[FixRequest]) -> FixResult:
        """All-or-nothing: nothing is committed unless every request is well-formed."""
        session, lock = self._lock(session_id)
        with lock:
            for request in fixes:
                self._check(session, request)
            draft = copy.deepcopy(session)
            applied = sum(
                self._apply(draft, f.record_index, f.field, f.new_value, FixSource.BULK)
                for f in fixes
            )
            session.records = draft.records
            session.errors = draft.errors
            session.history = draft.history
            session.resolved = draft.resolved
            logger.info("Bulk fix on %s: %d of %d applied", session_id, applied, len(fixes))
            return self._result(session, applied)

    def auto_fix(self, session_id: str) -> FixResult:
        session, lock = self._lock(session_id)
        with lock:
            candidates = [e for e in session.errors if e.auto_fix is not None]
            applied = 0
            for error in candidates:
                still_open = any(
                    e.key == error.key and e.rule == error.rule for e in session.errors
                )
                if not still_open:
                    continue
                assert error.auto_fix is not None
                if self._apply(session, error.record_index, error.field,
                               error.auto_fix.value, FixSource.AUTO):
                    applied += 1
            logger.info("Auto-fix on %s: %d applied, %d remaining", session_id, applied,
                        len(session.errors))
            return self._result(session, applied)

    def undo_last(self, session_id: str) -> FixResult:
        session, lock = self._lock(session_id)
        with lock:
            if not session.history:
                raise RecoveryError("nothing to undo")
            last = session.history.pop()
            if self._apply(session, last.record_index, last.field, last.old_value,
                           last.source, coerce=False):
                # undo 自体の履歴は残さない
                session.history.pop()
            reopened = {(e.key, e.rule) for e in session.errors
                        if e.record_index == last.record_index}
            session.resolved = [e for e in session.resolved if (e.key, e.rule) not in reopened]
            return self._result(session, 1, last.record_index)

    # ---- reads -------------------------------------------------------------

    def status(self, session_id: str) -> RecoveryStatusReport:
        session, lock = self._lock(session_id)
        with lock:
            remaining = len(session.errors)
            resolved = len(session.resolved)
            return RecoveryStatusReport(
                session_id=session_id,
                total_errors=remaining + resolved,
                resolved_errors=resolved,
                remaining_errors=remaining,
                blocking_errors=sum(1 for e in session.errors if e.blocking),
                status=session.status,
            )

    def errors(self, session_id: str) -> list[ValidationError]:
        session, lock = self._lock(session_id)
        with lock:
            return list(session.errors)

    def records(self, session_id: str) -> list[dict[str, Any]]:
        session, lock = self._lock(session_id)
        with lock:
            return [dict(r) for r in session.records]

    def export_errors(self, session_id: str, fmt: str = "csv") -> str:
        """Current error list as CSV or JSON Lines text. Never mutates the session."""
        if fmt not in ("csv", "jsonl"):
            raise RecoveryError(f"unsupported export format: {fmt}")
        errors = self.errors(session_id)
        return render_csv(errors) if fmt == "csv" else render_jsonl(errors)
