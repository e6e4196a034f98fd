import os
import threading
from contextlib import contextmanager
from pathlib import Path

from .errors import DeploymentInProgressError
from .logger import get_logger

logger = get_logger("locks")


class EnvironmentLocks:
    """One in-progress run per environment; a second acquire is rejected, not queued"""

    def __init__(self):
        self._held = set()
        self._lock = threading.Lock()

    def acquire(self, environment):
        with self._lock:
            if environment in self._held:
                raise DeploymentInProgressError(
                    f"deployment already in progress for {environment}", environment=environment
                )
            self._held.add(environment)
        logger.debug(f"Lock acquired for {environment}")

    def release(self, environment):
        with self._lock:
            self._held.discard(environment)
        logger.debug(f"Lock released for {environment}")

    def is_locked(self, environment):
        with self._lock:
            return environment in self._held

    def clear_stale(self, environment):
        """In-process locks die with their process, so none can be stale"""
        return False

    @contextmanager
    def hold(self, environment):
        self.acquire(environment)
        try:
            yield
        finally:
            self.release(environment)


class FileEnvironmentLocks(EnvironmentLocks):
    """Lock files in the state directory so separate CLI processes exclude each other"""

    def __init__(self, state_dir):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, environment):
        return self.state_dir / f"{environment}.lock"

    def acquire(self, environment):
        super().acquire(environment)
        try:
            fd = os.open(self._path(environment), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            super().release(environment)
            raise DeploymentInProgressError(
                f"deployment already in progress for {environment} (lock file {self._path(environment)})",
                environment=environment,
            )
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

    def release(self, environment):
        self._path(environment).unlink(missing_ok=True)
        super().release(environment)

    def is_locked(self, environment):
        return super().is_locked(environment) or self._path(environment).exists()

    def owner(self, environment):
        try:
            return int(self._path(environment).read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def clear_stale(self, environment):
        """Remove a lock file left by a process that is no longer running. True when one was removed."""
        path = self._path(environment)
        if super().is_locked(environment) or not path.exists():
            return False
        pid = self.owner(environment)
        if pid is not None and _pid_alive(pid):
            return False
        path.unlink(missing_ok=True)
        logger.warning(f"Removed stale lock for {environment} (owner pid {pid} is gone)")
        return True


def _pid_alive(pid):
    if os.name == "nt":
        # os.kill would terminate the process here; leave the lock to the operator
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
