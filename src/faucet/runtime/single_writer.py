import fcntl
import logging
import os

from faucet.runtime.errors import FaucetError

log = logging.getLogger("faucet.single_writer")


class SingleWriterLock:
    """
    Enforces a single-process writer for the faucet's JSON-backed ledgers.
    Uses a non-blocking filesystem lock held for the service lifetime.
    """

    def __init__(self, path: str):
        self.path = path
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            fd = open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            raise FaucetError("lock_unavailable", f"cannot open single-writer lock {self.path}", str(e)) from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            log.error("single-writer lock already held: %s", self.path)
            raise FaucetError("lock_held", f"single-writer lock already held: {self.path}")
        fd.seek(0)
        fd.truncate()
        fd.write(f"pid={os.getpid()}\n")
        fd.flush()
        self._fd = fd

    def release(self) -> None:
        if self._fd:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                self._fd.close()
                self._fd = None
