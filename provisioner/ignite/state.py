"""Atomic artifact writes, the run lock and the last-run record."""
import json
import os
import fcntl
import time
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Union

from .errors import RunInProgress

LOCK_NAME = ".ignite.lock"
RECORD_NAME = ".ignite-state.json"


def atomic_write(path: Path, data: Union[bytes, str], mode: Optional[int] = None):
    """Write via a temp file and os.replace so readers never see a torn file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.tmp')
    flags = 'wb' if isinstance(data, bytes) else 'w'
    with open(tmp, flags) as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    if mode is not None:
        os.chmod(tmp, mode)
    os.replace(tmp, path)


class RunLock:
    """Exclusive lock over an output directory for one provisioning run.

    Non-blocking: a second run against the same directory fails fast
    instead of queueing behind the first.
    """

    def __init__(self, directory: Path):
        self.path = Path(directory) / LOCK_NAME
        self._fh = None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, 'w')
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            raise RunInProgress(
                f"Another provisioning run holds the lock on {self.path.parent}"
            )
        fh.write(str(os.getpid()))
        fh.flush()
        self._fh = fh

    def release(self):
        if self._fh is not None:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
            self._fh.close()
            self._fh = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *args):
        self.release()


@dataclass
class RunRecord:
    """Outcome of the last successful provisioning run."""
    finished_at: float = 0.0
    nodes: int = 0
    threshold: int = 0
    environment: str = ""
    encrypted: bool = False
    key_states: Dict[str, str] = field(default_factory=dict)
    registered: bool = False


class RunLedger:
    """Persists RunRecord next to the artifacts it describes."""

    def __init__(self, directory: Path):
        self.path = Path(directory) / RECORD_NAME

    def load(self) -> Optional[RunRecord]:
        if not self.path.exists():
            return None
        with open(self.path, 'r') as f:
            data = json.load(f)
        return RunRecord(**data)

    def save(self, record: RunRecord):
        if not record.finished_at:
            record.finished_at = time.time()
        atomic_write(self.path, json.dumps(asdict(record), indent=2))

    def update(self, updater):
        """Load, mutate, save. Creates an empty record if none exists."""
        record = self.load() or RunRecord()
        updater(record)
        self.save(record)
