import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_run_id(prefix: str) -> str:
    """Builds a run id such as ``run-1718000000000-3fa2b1``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass
class RunRecord:
    """Snapshot of the latest booking run, real or simulated."""

    id: str
    action: str
    started_at: str
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    pid: Optional[int] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "action": self.action,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "exitCode": self.exit_code,
            "dryRun": self.dry_run,
        }
        # Dry runs never have a process behind them.
        if self.pid is not None:
            data["pid"] = self.pid
        return data


class RunScheduler:
    """Single-flight guard around the in-flight flag and the latest run.

    Request handlers run on a thread pool, so every read-modify-write of
    ``in_flight``/``last_run`` goes through ``self._lock``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight = False
        self._last_run: Optional[RunRecord] = None

    def peek(self) -> Tuple[bool, Optional[Dict[str, Any]]]:
        with self._lock:
            last = self._last_run.to_dict() if self._last_run else None
            return self._in_flight, last

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def try_acquire(
        self, launch: Callable[[], RunRecord]
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Launches a real run unless one is already in flight.

        Returns ``(True, new_record)`` when ``launch`` was called, or
        ``(False, current_record)`` when the slot is taken; records come back
        as serialized snapshots. If ``launch`` raises, the flag stays cleared
        and the error propagates.
        """
        with self._lock:
            if self._in_flight:
                current = self._last_run.to_dict() if self._last_run else None
                return False, current
            record = launch()
            self._last_run = record
            self._in_flight = True
            return True, record.to_dict()

    def release(self, run_id: str, exit_code: int) -> Optional[RunRecord]:
        """Marks run ``run_id`` as finished and frees the slot.

        The record is only stamped while it is still the latest one; a
        superseded run just clears the flag.
        """
        with self._lock:
            stamped = None
            if self._last_run is not None and self._last_run.id == run_id:
                self._last_run.exit_code = exit_code
                self._last_run.finished_at = utc_now_iso()
                stamped = self._last_run
            self._in_flight = False
            return stamped

    def record_dry_run(self, record: RunRecord) -> None:
        with self._lock:
            self._last_run = record
