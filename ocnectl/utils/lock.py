"""Advisory lock shared by every ocnectl process on this host."""
import errno
import logging
import os
import time
from pathlib import Path
from typing import Optional

from .. import constants
from ..config import user_config_dir
from ..errors import LockError

logger = logging.getLogger("ocnectl.utils.lock")


class PidLock:
    """A lock file holding the pid of its owner.

    The file is created exclusively, so only one process can hold it at a time.
    """

    def __init__(self, path: Optional[Path] = None, poll_interval: float = 0.01):
        self.path = Path(path) if path else user_config_dir() / constants.USER_LOCK_FILE
        self.poll_interval = poll_interval
        self.held = False

    def try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except OSError as e:
            if e.errno == errno.EEXIST:
                return False
            raise LockError(f"Could not create lock file {self.path}: {e}") from e
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.held = True
        return True

    def wait_for(self, timeout: float = constants.LOCK_TIMEOUT) -> None:
        """Acquire the lock, polling until the timeout expires."""
        deadline = time.monotonic() + timeout
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise LockError(f"Timed out waiting for lock file {self.path}")
            time.sleep(self.poll_interval)
        logger.debug("Acquired lock %s", self.path)

    def drop(self) -> None:
        """Release the lock if this process holds it."""
        try:
            with open(self.path) as f:
                owner = f.read().strip()
        except FileNotFoundError:
            self.held = False
            return
        if owner != str(os.getpid()):
            raise LockError(f"Lock file {self.path} is held by process {owner}")
        os.remove(self.path)
        self.held = False
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> 'PidLock':
        self.wait_for()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.drop()
