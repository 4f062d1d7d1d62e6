from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bulk_import.config.loader import PipelineConfig, SessionConfig
from bulk_import.errors import InvalidSessionState, SessionNotFound
from bulk_import.models.processing_result import ExecutionState
from bulk_import.models.session import TRANSITIONS, FileFormat, FileMetadata, SessionStatus, UploadSession
from bulk_import.services.pipeline import ImportPipeline, SessionEntry, SessionStore


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _entry(session_id: str, status: SessionStatus = SessionStatus.INITIALIZED) -> SessionEntry:
    meta = FileMetadata("f.csv", 10, FileFormat.CSV, "text/csv")
    return SessionEntry(session=UploadSession(id=session_id, file=meta, status=status), ingest=MagicMock())


class TestSessionTransitions:
    def test_forward_path(self):
        session = _entry("s").session
        for status in (SessionStatus.ANALYZED, SessionStatus.MAPPED, SessionStatus.VALIDATED,
                       SessionStatus.EXECUTING, SessionStatus.COMPLETED, SessionStatus.EXECUTING):
            session = session.transition(status)
            assert session.status is status

    @pytest.mark.parametrize(
        ("start", "target"),
        [
            (SessionStatus.INITIALIZED, SessionStatus.EXECUTING),
            (SessionStatus.ANALYZED, SessionStatus.VALIDATED),
            (SessionStatus.EXECUTING, SessionStatus.ANALYZED),
            (SessionStatus.CANCELLED, SessionStatus.EXECUTING),
            (SessionStatus.FAILED, SessionStatus.VALIDATED),
        ],
    )
    def test_illegal_move_is_rejected(self, start, target):
        session = _entry("s", start).session
        assert target not in TRANSITIONS[start]
        with pytest.raises(InvalidSessionState):
            session.transition(target)

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(SessionStatus)
        assert all(not TRANSITIONS[s] for s in SessionStatus if s.terminal and s is not SessionStatus.COMPLETED)


class TestSessionStore:
    def test_inactive_session_expires_and_is_cleaned_up(self):
        clock = Clock()
        store = SessionStore(ttl_seconds=10, clock=clock)
        entry = _entry("a")
        store.add(entry)

        clock.advance(9)
        assert store.get("a") is entry
        # access refreshed the TTL
        clock.advance(9)
        assert store.get("a") is entry

        clock.advance(11)
        with pytest.raises(SessionNotFound):
            store.get("a")
        entry.ingest.cleanup.assert_called_once()
        assert "a" not in store

    def test_executing_session_never_expires(self):
        clock = Clock()
        store = SessionStore(ttl_seconds=10, clock=clock)
        store.add(_entry("run", SessionStatus.EXECUTING))
        clock.advance(1000)
        assert store.purge_expired() == []
        assert store.get("run").session.status is SessionStatus.EXECUTING

    def test_purge_expired(self):
        clock = Clock()
        store = SessionStore(ttl_seconds=10, clock=clock)
        store.add(_entry("old"))
        clock.advance(20)
        store.add(_entry("new"))
        expired = store.purge_expired()
        assert [e.session.id for e in expired] == ["old"]
        assert len(store) == 1

    def test_on_expire_callback(self):
        clock = Clock()
        expired = []
        store = SessionStore(ttl_seconds=10, clock=clock, on_expire=expired.append)
        first, second = _entry("a"), _entry("b")
        store.add(first)
        store.add(second)
        clock.advance(11)
        with pytest.raises(SessionNotFound):
            store.get("a")
        store.purge_expired()
        assert expired == [first, second]
        # a custom callback replaces the default artifact cleanup
        first.ingest.cleanup.assert_not_called()

    def test_unknown_session(self):
        with pytest.raises(SessionNotFound):
            SessionStore().get("missing")
        assert SessionStore().remove("missing") is None


@pytest.fixture()
def pipeline(cache, store) -> ImportPipeline:
    return ImportPipeline(cache, store)


def test_operations_require_lifecycle_order(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    assert pipeline.session(sid).status is SessionStatus.INITIALIZED

    with pytest.raises(InvalidSessionState):
        pipeline.map_fields(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.validate(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.fix_single(sid, 0, "price", "1")
    with pytest.raises(InvalidSessionState):
        pipeline.mapping_validation(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.progress(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.cancel(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.syndicate(sid, [])

    fields = pipeline.analyze(sid)
    assert [f.name for f in fields] == ["product_name", "cost", "item_code"]
    assert pipeline.session(sid).status is SessionStatus.ANALYZED
    pipeline.map_fields(sid)
    assert pipeline.session(sid).status is SessionStatus.MAPPED
    with pytest.raises(InvalidSessionState):
        pipeline.recovery_status(sid)


def test_unknown_session_id(pipeline):
    with pytest.raises(SessionNotFound):
        pipeline.analyze("does-not-exist")


def test_override_requires_revalidation(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)
    assert pipeline.recovery_status(sid).blocking_errors == 0

    mapping = pipeline.override_mapping(sid, "cost", "compareAtPrice")
    assert mapping.target_for("cost") == "compareAtPrice"
    assert pipeline.session(sid).status is SessionStatus.MAPPED
    with pytest.raises(InvalidSessionState):
        pipeline.prepare_execution(sid)

    pipeline.validate(sid)
    assert pipeline.session(sid).status is SessionStatus.VALIDATED


def test_suggestions(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    assert pipeline.suggestions(sid, "cost")[0].target_field == "price"
    with pytest.raises(InvalidSessionState):
        pipeline.suggestions(sid, "nope")


def test_prepare_execution_is_reused(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)
    first = pipeline.prepare_execution(sid)
    assert pipeline.prepare_execution(sid) is first
    assert pipeline.progress(sid).total_records == 3


def test_cleanup_removes_session(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.cleanup(sid)
    with pytest.raises(SessionNotFound):
        pipeline.session(sid)
    # unknown ids are ignored
    pipeline.cleanup(sid)


def test_sessions_expire_through_pipeline(cache, store, products_csv):
    clock = Clock()
    sessions = SessionStore(60, clock=clock)
    pipeline = ImportPipeline(
        cache, store, PipelineConfig(sessions=SessionConfig(ttl_seconds=60)), sessions=sessions,
    )
    # an empty store is still the one used
    assert pipeline.sessions is sessions
    keep = pipeline.upload(products_csv, "a.csv").id
    drop = pipeline.upload(products_csv, "b.csv").id
    clock.advance(50)
    pipeline.session(keep)
    clock.advance(20)
    assert pipeline.purge_expired() == 1
    assert pipeline.session(keep).id == keep
    with pytest.raises(SessionNotFound):
        pipeline.session(drop)


def test_write_error_report(pipeline, tmp_path: Path):
    data = b"product_name,price,sku\nWidget,invalid_price,SKU001\n"
    sid = pipeline.upload(data, "p.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)

    path = pipeline.write_error_report(sid, "csv", tmp_path / "errors.csv")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("0,price,invalid_price,error,")
    assert pipeline.export_errors(sid, "jsonl").count("\n") == 1
    with pytest.raises(ValueError):
        pipeline.export_errors(sid, "xml")


def test_expired_session_releases_recovery_state(cache, store, products_csv):
    clock = Clock()
    pipeline = ImportPipeline(cache, store, sessions=SessionStore(60, clock=clock))
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)
    assert sid in pipeline.recovery._sessions

    clock.advance(61)
    with pytest.raises(SessionNotFound):
        pipeline.session(sid)
    assert sid not in pipeline.recovery._sessions


def test_purge_releases_recovery_state(cache, store, products_csv):
    clock = Clock()
    pipeline = ImportPipeline(cache, store, sessions=SessionStore(60, clock=clock))
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)

    clock.advance(61)
    assert pipeline.purge_expired() == 1
    assert sid not in pipeline.recovery._sessions


def test_cancel_between_prepare_and_execute(pipeline, store, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)
    pipeline.prepare_execution(sid)
    pipeline.cancel(sid)

    result = pipeline.execute(sid)
    assert result.state is ExecutionState.CANCELLED
    assert result.created == 0
    assert pipeline.session(sid).status is SessionStatus.CANCELLED
    assert pipeline.result(sid) is result
    assert len(store) == 0
    with pytest.raises(InvalidSessionState):
        pipeline.execute(sid)


def test_retry_requires_completed_import(pipeline, products_csv):
    sid = pipeline.upload(products_csv, "products.csv").id
    pipeline.analyze(sid)
    pipeline.map_fields(sid)
    pipeline.validate(sid)
    with pytest.raises(InvalidSessionState):
        pipeline.retry(sid)
    assert pipeline.session(sid).status is SessionStatus.VALIDATED

    result = pipeline.execute(sid)
    assert result.failed == 0
    # nothing failed, so retry hands back the same result
    assert pipeline.retry(sid) is result
    assert pipeline.session(sid).status is SessionStatus.COMPLETED
