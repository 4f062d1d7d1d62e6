from __future__ import annotations

import threading
from unittest.mock import Mock, patch

from bulk_import.models.processing_result import ExecutionState, ImportProgress
from bulk_import.services.progress import ProgressChannel, ProgressTracker, is_tty_enabled


def _snap(processed: int, state: ExecutionState = ExecutionState.RUNNING, seq: int = 0,
          ok: int | None = None, failed: int = 0) -> ImportProgress:
    return ImportProgress(
        session_id="s",
        state=state,
        total_records=10,
        processed_records=processed,
        successful_records=processed - failed if ok is None else ok,
        failed_records=failed,
        sequence=seq,
    )


def test_is_tty_enabled_returns_stdout_isatty():
    """Test that is_tty_enabled returns sys.stdout.isatty()."""
    with patch('sys.stdout.isatty', return_value=True):
        assert is_tty_enabled() is True

    with patch('sys.stdout.isatty', return_value=False):
        assert is_tty_enabled() is False


class TestProgressChannel:
    """Test cases for ProgressChannel and its subscriptions."""

    def test_subscribe_delivers_current_first(self):
        """A new subscriber sees the current snapshot before anything else."""
        channel = ProgressChannel(_snap(0, ExecutionState.READY))
        sub = channel.subscribe()
        channel.publish(_snap(3, seq=1))

        items = sub.drain()
        assert [s.processed_records for s in items] == [0, 3]
        assert channel.current().processed_records == 3

    def test_slow_subscriber_drops_oldest(self):
        """A full queue drops the oldest snapshots; the publisher never blocks."""
        channel = ProgressChannel(_snap(0), maxsize=3)
        sub = channel.subscribe()
        for i in range(1, 8):
            channel.publish(_snap(i, seq=i))

        items = sub.drain()
        assert [s.sequence for s in items] == [5, 6, 7]
        # pull fallback is always up to date
        assert channel.current().sequence == 7

    def test_iteration_stops_on_terminal_state(self):
        """Iterating a subscription ends after a completed / cancelled / failed snapshot."""
        channel = ProgressChannel(_snap(0))
        sub = channel.subscribe()

        def produce():
            for i in range(1, 4):
                channel.publish(_snap(i, seq=i))
            channel.publish(_snap(10, ExecutionState.COMPLETED, seq=4))

        t = threading.Thread(target=produce)
        t.start()
        seen = list(sub)
        t.join()

        assert seen[-1].state is ExecutionState.COMPLETED
        assert [s.sequence for s in seen] == [0, 1, 2, 3, 4]

    def test_get_with_timeout_and_unsubscribe(self):
        """get() returns None on timeout; closed subscriptions stop receiving."""
        channel = ProgressChannel(_snap(0))
        sub = channel.subscribe()
        assert sub.get(timeout=0.01).processed_records == 0
        assert sub.get(timeout=0.01) is None

        sub.close()
        channel.publish(_snap(5, seq=1))
        assert sub.drain() == []

    def test_percent(self):
        """Percent is 100 for an empty import."""
        assert _snap(5).percent == 50.0
        empty = ImportProgress("s", ExecutionState.COMPLETED, 0)
        assert empty.percent == 100.0


class TestProgressTracker:
    """Test cases for ProgressTracker class."""

    def test_init_with_tty_enabled(self):
        """Test ProgressTracker initialization when TTY is enabled."""
        with patch('bulk_import.services.progress.is_tty_enabled', return_value=True), \
             patch('bulk_import.services.progress.tqdm') as mock_tqdm:

            tracker = ProgressTracker(250, description="Importing")

            assert tracker.total_records == 250
            assert tracker.enabled is True
            mock_tqdm.assert_called_once_with(
                total=250,
                desc="Importing",
                unit="rec",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )

    def test_init_with_tty_disabled(self):
        """Test ProgressTracker initialization when TTY is disabled."""
        with patch('bulk_import.services.progress.is_tty_enabled', return_value=False):
            tracker = ProgressTracker(250)

            assert tracker.enabled is False
            assert tracker.pbar is None
            # updates are no-ops
            tracker.update(_snap(5))
            tracker.close()

    def test_update_advances_by_delta(self):
        """Snapshots move the bar by the number of newly processed records."""
        mock_pbar = Mock()

        with patch('bulk_import.services.progress.is_tty_enabled', return_value=True), \
             patch('bulk_import.services.progress.tqdm', return_value=mock_pbar):

            tracker = ProgressTracker(10)
            tracker.update(_snap(4, failed=1))
            tracker.update(_snap(4, failed=1))
            tracker.update(_snap(9, failed=2))

            assert [c.args[0] for c in mock_pbar.update.call_args_list] == [4, 5]
            mock_pbar.set_postfix.assert_called_with(ok=7, failed=2)

    def test_context_manager_closes_bar(self):
        """Test ProgressTracker as context manager."""
        mock_pbar = Mock()

        with patch('bulk_import.services.progress.is_tty_enabled', return_value=True), \
             patch('bulk_import.services.progress.tqdm', return_value=mock_pbar):

            with ProgressTracker(10) as tracker:
                assert tracker.pbar is mock_pbar

            mock_pbar.close.assert_called_once()
            assert tracker.pbar is None
