"""
Advisory Migration Lock
=======================

At most one migration, rollback, restore or cleanup may run against a store
at a time. The lock is a file holding the owner's PID, hard-linked into
place so it is created atomically and never seen empty. A second process
fails fast with ``BusyError``; a lock whose PID is no longer alive is
treated as stale and reclaimed.

The lock is re-entrant for the thread holding it so the orchestrator can
hold it while calling components that lock on their own. Other threads of
the same process get ``BusyError`` like any other contender.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .errors import BusyError, StorageIOError

logger = logging.getLogger(__name__)

# lock path -> (owning thread, depth) held by this process
_held: Dict[str, Tuple[int, int]] = {}
_held_guard = threading.Lock()


def read_lock_owner(lock_file: Union[str, Path]) -> Optional[int]:
    """PID stored in a lock file, or None if absent/unreadable."""
    try:
        return int(Path(lock_file).read_text().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def is_locked_by_other(lock_file: Union[str, Path]) -> bool:
    """True when a live process other than this one holds the lock."""
    pid = read_lock_owner(lock_file)
    if pid is None or pid == os.getpid():
        return False
    return _pid_alive(pid)


class MigrationLock:
    """Context manager around the advisory lock file."""

    def __init__(self, lock_file: Union[str, Path], operation: str = "migration"):
        self.lock_file = Path(lock_file)
        self.operation = operation
        self._key = str(self.lock_file.resolve())

    def acquire(self) -> None:
        me = threading.get_ident()
        with _held_guard:
            owner, depth = _held.get(self._key, (None, 0))
            if depth:
                if owner != me:
                    raise BusyError(
                        f"Migration lock is held by another thread of this process: {self.lock_file}",
                        stage=self.operation,
                    )
                _held[self._key] = (owner, depth + 1)
                return
            self._create()
            _held[self._key] = (me, 1)
        logger.debug(f"Acquired migration lock: {self.lock_file}")

    def release(self) -> None:
        with _held_guard:
            owner, depth = _held.get(self._key, (None, 0))
            if depth > 1:
                _held[self._key] = (owner, depth - 1)
                return
            _held.pop(self._key, None)
            try:
                self.lock_file.unlink()
                logger.debug(f"Released migration lock: {self.lock_file}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove migration lock file: {e}")

    def _create(self) -> None:
        # The PID is written to a private file first and then hard-linked into
        # place, so the lock file is never observed empty.
        pending = self.lock_file.with_name(
            f"{self.lock_file.name}.{os.getpid()}.{threading.get_ident()}"
        )
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            pending.write_text(str(os.getpid()))
        except OSError as e:
            raise StorageIOError(f"Cannot create lock file: {e}", stage=self.operation) from e

        try:
            for _ in range(2):
                try:
                    os.link(pending, self.lock_file)
                    return
                except FileExistsError:
                    owner = read_lock_owner(self.lock_file)
                    if owner is not None and owner != os.getpid() and _pid_alive(owner):
                        raise BusyError(
                            f"Another migration is in progress (pid {owner}, lock file: {self.lock_file}). "
                            "Retry once it has finished.",
                            stage=self.operation,
                        )
                    self._reclaim(owner)
                except OSError as e:
                    raise StorageIOError(f"Cannot create lock file: {e}", stage=self.operation) from e
        finally:
            pending.unlink(missing_ok=True)

        raise BusyError(f"Could not acquire lock file: {self.lock_file}", stage=self.operation)

    def _reclaim(self, stale_owner: Optional[int]) -> None:
        """
        Remove a stale lock file.

        The file is renamed aside before it is inspected again, so a lock
        freshly taken by another process in the meantime is put back rather
        than deleted.
        """
        aside = self.lock_file.with_name(f"{self.lock_file.name}.stale.{os.getpid()}")
        try:
            os.replace(self.lock_file, aside)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError(f"Cannot reclaim stale lock file: {e}", stage=self.operation) from e

        owner = read_lock_owner(aside)
        if owner != stale_owner:
            try:
                os.link(aside, self.lock_file)
            except FileExistsError:
                pass
            finally:
                aside.unlink(missing_ok=True)
            raise BusyError(
                f"Migration lock was taken by pid {owner} while reclaiming it: {self.lock_file}",
                stage=self.operation,
            )

        logger.warning(f"Removed stale migration lock (pid {stale_owner}): {self.lock_file}")
        aside.unlink(missing_ok=True)

    @property
    def held(self) -> bool:
        return _held.get(self._key, (None, 0))[1] > 0

    def __enter__(self) -> "MigrationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
