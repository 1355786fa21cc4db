import unittest

from rigwarden.resilience import safe_execute, with_retry


class _Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"boom {self.calls}")
        return self.result


class SafeExecuteTests(unittest.TestCase):
    def test_returns_result(self) -> None:
        self.assertEqual(safe_execute(lambda: 42, 0, "answer"), 42)

    def test_failure_logs_error_and_returns_fallback(self) -> None:
        op = _Flaky(failures=5)
        with self.assertLogs("rigwarden.resilience", level="ERROR") as logs:
            self.assertEqual(safe_execute(op, "fallback", "device info"), "fallback")
        self.assertEqual(op.calls, 1)
        self.assertIn("device info", logs.output[0])


class WithRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []

    def test_success_after_transient_failures(self) -> None:
        op = _Flaky(failures=2)
        with self.assertLogs("rigwarden.resilience", level="WARNING") as logs:
            result = with_retry(op, None, "miner summary", attempts=3, delay=1.0, sleep=self.sleeps.append)
        self.assertEqual(result, "ok")
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual([r.levelname for r in logs.records], ["WARNING", "WARNING"])

    def test_exhaustion_returns_fallback_after_exactly_three_attempts(self) -> None:
        op = _Flaky(failures=10)
        with self.assertLogs("rigwarden.resilience", level="WARNING") as logs:
            result = with_retry(op, {"hashrate": 0}, "miner summary", attempts=3, delay=1.0,
                                sleep=self.sleeps.append)
        self.assertEqual(result, {"hashrate": 0})
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual([r.levelname for r in logs.records], ["WARNING", "WARNING", "ERROR"])

    def test_single_attempt_never_sleeps(self) -> None:
        op = _Flaky(failures=1)
        with self.assertLogs("rigwarden.resilience", level="ERROR"):
            self.assertEqual(with_retry(op, -1, attempts=1, sleep=self.sleeps.append), -1)
        self.assertEqual(self.sleeps, [])


if __name__ == "__main__":
    unittest.main()
