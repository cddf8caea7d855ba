"""
Unit tests for id allocation, the write barrier and the liveness probe.

Tests cover:
- UUID format and collision retry
- Barrier reentrancy and reader/writer exclusion
- Process liveness checks
"""

import os
import threading
import time
import uuid

from dataman.identity import WriteBarrier, generate_unique_id, new_id, process_is_alive


class TestIds:
    """Tests for UUID allocation."""

    def test_new_id_is_canonical_uuid(self):
        value = new_id()

        assert str(uuid.UUID(value)) == value
        assert value == value.lower()

    def test_new_ids_differ(self):
        assert len({new_id() for _ in range(100)}) == 100

    def test_retries_on_collision(self):
        """A taken candidate is skipped."""
        candidates = iter(["taken", "taken", "free"])

        result = generate_unique_id(lambda c: c == "taken", factory=lambda: next(candidates))

        assert result == "free"


class TestWriteBarrier:
    """Tests for WriteBarrier."""

    def test_write_is_reentrant(self):
        barrier = WriteBarrier()

        with barrier.write():
            with barrier.write():
                assert barrier.write_held
            assert barrier.write_held
        assert not barrier.write_held

    def test_writer_may_read(self):
        """The owning thread can take the read side while writing."""
        barrier = WriteBarrier()

        with barrier.write():
            with barrier.read():
                assert barrier.write_held

    def test_readers_share(self):
        barrier = WriteBarrier()
        inside = threading.Barrier(2, timeout=5)
        errors = []

        def reader():
            with barrier.read():
                try:
                    inside.wait()
                except threading.BrokenBarrierError as e:
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []

    def test_writer_excludes_readers(self):
        """A reader waits until the writer leaves."""
        barrier = WriteBarrier()
        events = []

        def reader():
            with barrier.read():
                events.append("read")

        with barrier.write():
            thread = threading.Thread(target=reader)
            thread.start()
            time.sleep(0.1)
            events.append("write-done")
        thread.join(timeout=5)

        assert events == ["write-done", "read"]

    def test_writers_serialize(self):
        barrier = WriteBarrier()
        active = []
        overlap = []

        def writer():
            for _ in range(20):
                with barrier.write():
                    active.append(1)
                    if len(active) > 1:
                        overlap.append(True)
                    time.sleep(0.001)
                    active.pop()

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert overlap == []


class TestProcessLiveness:
    """Tests for process_is_alive."""

    def test_own_process_is_alive(self):
        assert process_is_alive(os.getpid()) is True

    def test_non_positive_pid_is_dead(self):
        assert process_is_alive(0) is False
        assert process_is_alive(-1) is False

    def test_missing_process_is_dead(self, monkeypatch):
        def fake_kill(pid, sig):
            raise ProcessLookupError

        monkeypatch.setattr(os, "kill", fake_kill)

        assert process_is_alive(123456) is False

    def test_foreign_process_is_alive(self, monkeypatch):
        """PermissionError means the process exists under another user."""

        def fake_kill(pid, sig):
            raise PermissionError

        monkeypatch.setattr(os, "kill", fake_kill)

        assert process_is_alive(1) is True
