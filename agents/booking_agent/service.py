import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import httpx

from agents.booking_agent.runs import RunRecord, RunScheduler, new_run_id, utc_now_iso


AGENT_NAME = "booking_agent"
JOB_NAME = "zeit_booking"

BOOKING_ACTIONS = ("normal", "mittag")
REQUIRED_CREDENTIALS = ("ZEIT_USER", "ZEIT_PASS", "MITARBEITER_USER", "MITARBEITER_PASS")
DEFAULT_RUNNER_CMD = "node scripts/run.js"


def normalize_action(value: Optional[str]) -> Optional[str]:
    """Returns the booking type for ``value`` or None when it is not one."""
    action = str(value or "").lower()
    if action not in BOOKING_ACTIONS:
        return None
    return action


def parse_dry_run(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true"}


def missing_credentials(env: Mapping[str, str]) -> List[str]:
    return [name for name in REQUIRED_CREDENTIALS if not env.get(name)]


def credentials_error_message() -> str:
    names = list(REQUIRED_CREDENTIALS)
    return f"{', '.join(names[:-1])} and {names[-1]} must be set"


class MissingCredentialsError(RuntimeError):
    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(credentials_error_message())
        self.missing = list(missing)


class RunInProgressError(RuntimeError):
    def __init__(self, last_run: Optional[Dict[str, Any]]) -> None:
        super().__init__("A run is already in progress")
        self.last_run = last_run


@dataclass
class RunHandle:
    """Supervised runner process; ``done`` is set once its exit is recorded."""

    run_id: str
    process: subprocess.Popen
    started_monotonic: float = field(default_factory=time.monotonic)
    done: threading.Event = field(default_factory=threading.Event)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)


class BookingAgentService:
    """Launches and supervises the ZEIT automation runner."""

    def __init__(
        self,
        runner_cmd: Union[str, Sequence[str]],
        logger,
        runner_cwd: Optional[Path] = None,
        webhook_final_url: str = "",
        env: Optional[Mapping[str, str]] = None,
        scheduler: Optional[RunScheduler] = None,
    ) -> None:
        if isinstance(runner_cmd, str):
            runner_cmd = shlex.split(runner_cmd)
        if not runner_cmd:
            raise ValueError("runner command must not be empty")
        self.runner_cmd = list(runner_cmd)
        self.runner_cwd = runner_cwd
        self.webhook_final_url = webhook_final_url
        self.logger = logger
        # None means "read os.environ at trigger time".
        self._env = env
        self.scheduler = scheduler or RunScheduler()
        self._handles_lock = threading.Lock()
        self._handles: Dict[str, RunHandle] = {}

    def _current_env(self) -> Mapping[str, str]:
        return os.environ if self._env is None else self._env

    def missing_credentials(self) -> List[str]:
        return missing_credentials(self._current_env())

    def get_status(self) -> Dict[str, Any]:
        in_flight, last_run = self.scheduler.peek()
        return {"inFlight": in_flight, "lastRun": last_run}

    def get_handle(self, run_id: str) -> Optional[RunHandle]:
        with self._handles_lock:
            return self._handles.get(run_id)

    def trigger(self, action: str, dry_run: bool) -> Dict[str, Any]:
        """Starts (or simulates) a booking run and returns its record.

        Raises MissingCredentialsError for a real run without credentials and
        RunInProgressError when another real run has not exited yet.
        """
        if dry_run:
            return self._dry_run(action)

        missing = self.missing_credentials()
        if missing:
            self.logger.warning("Trigger rejected: missing credentials %s", ", ".join(missing))
            raise MissingCredentialsError(missing)

        acquired, record = self.scheduler.try_acquire(lambda: self._spawn(action))
        if not acquired:
            self.logger.warning(
                "Trigger rejected: run %s still in flight",
                (record or {}).get("id", "unknown"),
            )
            raise RunInProgressError(record)
        return record

    def _dry_run(self, action: str) -> Dict[str, Any]:
        now = utc_now_iso()
        record = RunRecord(
            id=new_run_id("dry"),
            action=action,
            started_at=now,
            finished_at=now,
            exit_code=0,
            dry_run=True,
        )
        self.scheduler.record_dry_run(record)
        self.logger.info("Dry run %s recorded (action=%s)", record.id, action)
        return record.to_dict()

    def _spawn(self, action: str) -> RunRecord:
        # Called with the scheduler lock held; must not block on the child.
        run_id = new_run_id("run")
        env = dict(self._current_env())
        env["ACTION"] = action
        process = subprocess.Popen(
            self.runner_cmd,
            env=env,
            cwd=str(self.runner_cwd) if self.runner_cwd else None,
        )
        handle = RunHandle(run_id=run_id, process=process)
        with self._handles_lock:
            self._handles = {run_id: handle}
        record = RunRecord(
            id=run_id,
            action=action,
            started_at=utc_now_iso(),
            pid=process.pid,
        )
        watcher = threading.Thread(
            target=self._watch,
            args=(handle,),
            name=f"{AGENT_NAME}-{run_id}",
            daemon=True,
        )
        watcher.start()
        self.logger.info("Run %s started (action=%s pid=%s)", run_id, action, process.pid)
        return record

    def _watch(self, handle: RunHandle) -> None:
        exit_code = handle.process.wait()
        stamped = self.scheduler.release(handle.run_id, exit_code)
        duration = time.monotonic() - handle.started_monotonic
        log_fn = self.logger.info if exit_code == 0 else self.logger.error
        log_fn("Run %s finished exit_code=%s duration=%.1fs", handle.run_id, exit_code, duration)
        try:
            if stamped is not None:
                self.send_final(stamped)
            else:
                self.logger.info("Run %s was superseded; record left untouched", handle.run_id)
        finally:
            handle.done.set()

    def send_final(self, record: RunRecord) -> None:
        """Publishes the final outcome of a real run to the configured webhook."""
        ok = record.exit_code == 0
        payload = {
            "ok": ok,
            "job": JOB_NAME,
            "run_id": record.id,
            "message": f"[{JOB_NAME}] {'OK' if ok else 'ERROR'} ({record.action})",
            "meta": record.to_dict(),
        }
        if not self.webhook_final_url:
            self.logger.debug("Final webhook skipped: URL not configured")
            return
        try:
            httpx.post(self.webhook_final_url, json=payload, timeout=15)
        except Exception:
            self.logger.exception("Failed to send final webhook for run %s", record.id)
