import logging
import os
import sys
import unittest
from unittest.mock import patch

from agents.booking_agent.service import (
    REQUIRED_CREDENTIALS,
    BookingAgentService,
    MissingCredentialsError,
    RunInProgressError,
)

CREDENTIALS = {
    "ZEIT_USER": "user",
    "ZEIT_PASS": "pass",
    "MITARBEITER_USER": "4711",
    "MITARBEITER_PASS": "1234",
}


def _python_cmd(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _env_with_credentials() -> dict[str, str]:
    return {**os.environ, **CREDENTIALS}


def _env_without_credentials() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in REQUIRED_CREDENTIALS}


class BookingAgentServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("tests.booking")
        self._handles = []

    def tearDown(self) -> None:
        for handle in self._handles:
            if handle.process.poll() is None:
                handle.process.kill()
            handle.wait(10)

    def _build_service(self, code: str, env=None, webhook_final_url: str = "") -> BookingAgentService:
        return BookingAgentService(
            runner_cmd=_python_cmd(code),
            logger=self.logger,
            webhook_final_url=webhook_final_url,
            env=env if env is not None else _env_with_credentials(),
        )

    def _trigger_real(self, service: BookingAgentService, action: str = "normal"):
        record = service.trigger(action, dry_run=False)
        handle = service.get_handle(record["id"])
        self.assertIsNotNone(handle)
        self._handles.append(handle)
        return record, handle

    def test_runner_cmd_string_is_split(self) -> None:
        service = BookingAgentService(runner_cmd="node scripts/run.js", logger=self.logger)
        self.assertEqual(service.runner_cmd, ["node", "scripts/run.js"])

    def test_empty_runner_cmd_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            BookingAgentService(runner_cmd="", logger=self.logger)

    def test_dry_run_returns_finished_record_without_spawning(self) -> None:
        service = self._build_service("raise SystemExit(9)", env=_env_without_credentials())
        with patch("agents.booking_agent.service.subprocess.Popen") as popen:
            record = service.trigger("mittag", dry_run=True)
        popen.assert_not_called()

        self.assertTrue(record["id"].startswith("dry-"))
        self.assertEqual(record["exitCode"], 0)
        self.assertTrue(record["dryRun"])
        self.assertEqual(record["startedAt"], record["finishedAt"])
        self.assertNotIn("pid", record)
        self.assertEqual(service.get_status(), {"inFlight": False, "lastRun": record})

    def test_real_run_requires_credentials(self) -> None:
        service = self._build_service("pass", env=_env_without_credentials())
        with patch("agents.booking_agent.service.subprocess.Popen") as popen:
            with self.assertRaises(MissingCredentialsError) as ctx:
                service.trigger("normal", dry_run=False)
        popen.assert_not_called()
        self.assertEqual(ctx.exception.missing, list(REQUIRED_CREDENTIALS))
        self.assertEqual(service.get_status(), {"inFlight": False, "lastRun": None})

    def test_real_run_records_exit_code(self) -> None:
        service = self._build_service("import sys; sys.exit(3)")
        record, handle = self._trigger_real(service)

        self.assertTrue(record["id"].startswith("run-"))
        self.assertIsNone(record["exitCode"])
        self.assertIsNone(record["finishedAt"])
        self.assertFalse(record["dryRun"])
        self.assertIsInstance(record["pid"], int)

        self.assertTrue(handle.wait(30))
        status = service.get_status()
        self.assertFalse(status["inFlight"])
        self.assertEqual(status["lastRun"]["id"], record["id"])
        self.assertEqual(status["lastRun"]["exitCode"], 3)
        self.assertIsNotNone(status["lastRun"]["finishedAt"])

    def test_action_is_passed_through_environment(self) -> None:
        code = "import os, sys; sys.exit(0 if os.environ.get('ACTION') == 'mittag' else 7)"
        service = self._build_service(code)
        _, handle = self._trigger_real(service, action="mittag")
        self.assertTrue(handle.wait(30))
        self.assertEqual(service.get_status()["lastRun"]["exitCode"], 0)

    def test_second_real_run_is_rejected_while_in_flight(self) -> None:
        service = self._build_service("import time; time.sleep(30)")
        record, handle = self._trigger_real(service)

        with self.assertRaises(RunInProgressError) as ctx:
            service.trigger("normal", dry_run=False)
        self.assertEqual(ctx.exception.last_run["id"], record["id"])

        handle.process.kill()
        self.assertTrue(handle.wait(30))
        self.assertFalse(service.get_status()["inFlight"])

        second, _ = self._trigger_real(service)
        self.assertNotEqual(second["id"], record["id"])

    def test_dry_run_allowed_while_real_run_in_flight(self) -> None:
        service = self._build_service("import time; time.sleep(30)")
        record, handle = self._trigger_real(service)

        dry = service.trigger("normal", dry_run=True)
        status = service.get_status()
        self.assertTrue(status["inFlight"])
        self.assertEqual(status["lastRun"]["id"], dry["id"])

        handle.process.kill()
        self.assertTrue(handle.wait(30))
        status = service.get_status()
        self.assertFalse(status["inFlight"])
        self.assertEqual(status["lastRun"]["id"], dry["id"])
        self.assertEqual(status["lastRun"]["exitCode"], 0)

    def test_spawn_failure_leaves_slot_free(self) -> None:
        service = BookingAgentService(
            runner_cmd=["/nonexistent/zeit-runner"],
            logger=self.logger,
            env=_env_with_credentials(),
        )
        with self.assertRaises(OSError):
            service.trigger("normal", dry_run=False)
        self.assertEqual(service.get_status(), {"inFlight": False, "lastRun": None})

    def test_final_webhook_is_posted_on_completion(self) -> None:
        service = self._build_service("import sys; sys.exit(1)", webhook_final_url="http://hooks.invalid/final")
        with patch("agents.booking_agent.service.httpx.post") as post:
            record, handle = self._trigger_real(service)
            self.assertTrue(handle.wait(30))

        post.assert_called_once()
        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        self.assertEqual(url, "http://hooks.invalid/final")
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["run_id"], record["id"])
        self.assertEqual(payload["meta"]["exitCode"], 1)

    def test_webhook_failure_does_not_break_release(self) -> None:
        service = self._build_service("pass", webhook_final_url="http://hooks.invalid/final")
        with patch("agents.booking_agent.service.httpx.post", side_effect=RuntimeError("down")):
            _, handle = self._trigger_real(service)
            self.assertTrue(handle.wait(30))
        status = service.get_status()
        self.assertFalse(status["inFlight"])
        self.assertEqual(status["lastRun"]["exitCode"], 0)


if __name__ == "__main__":
    unittest.main()
