"""
Advisory Lock Tests
===================
"""

import os
import threading

import pytest

from mediamigrate import locking
from mediamigrate.errors import BusyError
from mediamigrate.locking import MigrationLock, is_locked_by_other, read_lock_owner

from conftest import DEAD_PID


class TestMigrationLock:

    def test_acquire_writes_pid_and_release_removes(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        lock = MigrationLock(lock_file)

        lock.acquire()
        assert read_lock_owner(lock_file) == os.getpid()
        assert lock.held

        lock.release()
        assert not lock_file.exists()
        assert not lock.held

    def test_reentrant_within_process(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"

        with MigrationLock(lock_file, "outer"):
            with MigrationLock(lock_file, "inner"):
                assert lock_file.exists()
            assert lock_file.exists()

        assert not lock_file.exists()

    def test_live_foreign_owner_is_busy(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        lock_file.write_text(str(os.getppid()))

        assert is_locked_by_other(lock_file)
        with pytest.raises(BusyError):
            MigrationLock(lock_file).acquire()
        assert read_lock_owner(lock_file) == os.getppid()

    def test_stale_lock_is_reclaimed(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        lock_file.write_text(str(DEAD_PID))

        assert not is_locked_by_other(lock_file)
        with MigrationLock(lock_file):
            assert read_lock_owner(lock_file) == os.getpid()

    def test_unreadable_lock_is_reclaimed(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        lock_file.write_text("not-a-pid")

        with MigrationLock(lock_file):
            assert read_lock_owner(lock_file) == os.getpid()

    def test_release_on_exception(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        with pytest.raises(RuntimeError):
            with MigrationLock(lock_file):
                raise RuntimeError("boom")
        assert not lock_file.exists()

    def test_reclaim_does_not_remove_a_fresh_lock(self, tmp_path, monkeypatch):
        lock_file = tmp_path / ".migration.lock"
        lock_file.write_text(str(os.getppid()))
        real_read = locking.read_lock_owner
        reads = []

        def outdated_read(path):
            # The first read still sees a stale owner that has since been replaced
            reads.append(path)
            return DEAD_PID if len(reads) == 1 else real_read(path)

        monkeypatch.setattr(locking, "read_lock_owner", outdated_read)

        with pytest.raises(BusyError):
            MigrationLock(lock_file).acquire()

        assert real_read(lock_file) == os.getppid()
        assert list(tmp_path.iterdir()) == [lock_file]

    def test_other_thread_of_same_process_is_busy(self, tmp_path):
        lock_file = tmp_path / ".migration.lock"
        errors = []

        def contend():
            try:
                MigrationLock(lock_file, "other-thread").acquire()
            except BusyError as e:
                errors.append(e)

        with MigrationLock(lock_file):
            worker = threading.Thread(target=contend)
            worker.start()
            worker.join()
            assert read_lock_owner(lock_file) == os.getpid()

        assert len(errors) == 1
        assert not lock_file.exists()
