"""resilience モジュールのユニットテスト."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from rankfinder.config import ERROR_LOG_KEY
from rankfinder.models import ErrorCategory, OperationFailure
from rankfinder.resilience import ResilienceCoordinator, categorize_error
from rankfinder.storage import MemoryBackend


class FakeClock:
    """ms 単位の手動時計. sleep を呼ぶと時計が進む."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(clock):
    return ResilienceCoordinator(clock=clock, sleep=clock.sleep)


class TestCategorizeError:
    """categorize_error のテスト."""

    @pytest.mark.parametrize("message, expected", [
        ("Network request failed", ErrorCategory.NETWORK),
        ("Operation timeout exceeded", ErrorCategory.TIMEOUT),
        ("Failed to fetch", ErrorCategory.NETWORK),
        ("No result elements found", ErrorCategory.DOM),
        ("Unexpected token in JSON", ErrorCategory.PARSING),
        ("Operation timed out after 30s", ErrorCategory.TIMEOUT),
        ("Request blocked: captcha", ErrorCategory.BOT_DETECTION),
        ("Invalid keyword", ErrorCategory.VALIDATION),
        ("something odd happened", ErrorCategory.UNKNOWN),
    ])
    def test_rules(self, message, expected):
        assert categorize_error(Exception(message)) == expected

    def test_rule_order(self):
        """先に判定するルールが優先されること."""
        assert categorize_error(Exception("connection timeout")) == ErrorCategory.NETWORK
        assert categorize_error(Exception("invalid json")) == ErrorCategory.PARSING

    def test_context_flag(self):
        assert categorize_error(Exception("oops"), {"is_dom_error": True}) == ErrorCategory.DOM

    def test_empty_message_uses_class_name(self):
        assert categorize_error(TimeoutError()) == ErrorCategory.TIMEOUT


class TestSafeExecute:
    """safe_execute のテスト."""

    @pytest.mark.asyncio
    async def test_success_sync(self, coordinator):
        assert await coordinator.safe_execute(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_success_async(self, coordinator):
        async def op():
            return "ok"

        assert await coordinator.safe_execute(op) == "ok"

    @pytest.mark.asyncio
    async def test_failure_value(self, coordinator):
        def op():
            raise RuntimeError("Network request failed")

        result = await coordinator.safe_execute(op, {"keyword": "x"}, name="extract")

        assert isinstance(result, OperationFailure)
        assert result.success is False
        assert result.can_retry is True
        assert result.error == "Network request failed"
        assert result.error_category == ErrorCategory.NETWORK

        record = coordinator.errors[-1]
        assert record.id == result.error_id
        assert record.operation == "extract"
        assert record.context == {"keyword": "x"}

    @pytest.mark.asyncio
    async def test_timeout(self, coordinator):
        async def slow():
            await asyncio.sleep(1)

        result = await coordinator.safe_execute(slow, timeout=0.01)

        assert isinstance(result, OperationFailure)
        assert result.error_category == ErrorCategory.TIMEOUT

    @pytest.mark.asyncio
    async def test_persists_error_log(self, clock):
        backend = MemoryBackend()
        coordinator = ResilienceCoordinator(backend, clock=clock, sleep=clock.sleep)

        await coordinator.safe_execute(lambda: 1 / 0)

        stored = backend.data[ERROR_LOG_KEY]
        assert len(stored) == 1
        assert stored[0]["category"] == "unknown"

    @pytest.mark.asyncio
    async def test_backend_failure_is_not_raised(self, clock):
        backend = MemoryBackend()
        backend.set = AsyncMock(side_effect=OSError("disk full"))
        coordinator = ResilienceCoordinator(backend, clock=clock, sleep=clock.sleep)

        result = await coordinator.safe_execute(lambda: 1 / 0)

        assert isinstance(result, OperationFailure)


class TestExecuteWithRetry:
    """execute_with_retry のテスト."""

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, coordinator, clock):
        calls = []

        async def flaky():
            calls.append(clock())
            if len(calls) < 3:
                raise ConnectionError("connection reset")
            return "done"

        result = await coordinator.execute_with_retry(flaky, max_retries=3)

        assert result == "done"
        assert len(calls) == 3
        assert clock.sleeps == [2, 4]
        assert calls[1] - calls[0] >= 2000
        assert calls[2] - calls[1] >= 4000

    @pytest.mark.asyncio
    async def test_no_delay_on_first_success(self, coordinator, clock):
        assert await coordinator.execute_with_retry(lambda: "ok") == "ok"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_propagates_last_failure(self, coordinator, clock):
        attempts = []

        def always_fails():
            attempts.append(1)
            raise ValueError(f"attempt {len(attempts)}")

        with pytest.raises(ValueError, match="attempt 3"):
            await coordinator.execute_with_retry(always_fails, max_retries=3)

        assert len(attempts) == 3
        assert clock.sleeps == [2, 4]

    @pytest.mark.asyncio
    async def test_wrapped_in_safe_execute(self, coordinator):
        def always_fails():
            raise RuntimeError("Operation timeout exceeded")

        result = await coordinator.safe_execute(
            lambda: coordinator.execute_with_retry(always_fails, max_retries=2)
        )

        assert isinstance(result, OperationFailure)
        assert result.error_category == ErrorCategory.TIMEOUT


class TestErrorLog:
    """エラーログ・健全性のテスト."""

    def test_capped_at_100(self, coordinator):
        for i in range(150):
            coordinator.handle_error("op", RuntimeError(f"error {i}"))

        errors = coordinator.errors
        assert len(errors) == 100
        assert errors[0].message == "error 50"
        assert errors[-1].message == "error 149"

    def test_recent_errors_window(self, coordinator, clock):
        coordinator.handle_error("op", RuntimeError("old"))
        clock.now += 10_000
        coordinator.handle_error("op", RuntimeError("new"))
        clock.now += 1_000

        recent = coordinator.get_recent_errors(1_000)
        assert [r.message for r in recent] == ["new"]
        assert len(coordinator.get_recent_errors(11_000)) == 2

    def test_timestamps_non_decreasing(self, coordinator, clock):
        coordinator.handle_error("op", RuntimeError("a"))
        clock.now -= 5_000  # 時計が巻き戻っても
        coordinator.handle_error("op", RuntimeError("b"))

        first, second = coordinator.errors
        assert second.timestamp >= first.timestamp

    @pytest.mark.parametrize("count, status", [
        (0, "excellent"),
        (2, "excellent"),
        (3, "good"),
        (11, "fair"),
        (26, "poor"),
    ])
    def test_system_health(self, coordinator, count, status):
        for _ in range(count):
            coordinator.handle_error("op", RuntimeError("x"))

        health = coordinator.get_system_health()
        assert health["status"] == status
        assert health["errorRate"] == count / 5

    def test_health_ignores_old_errors(self, coordinator, clock):
        for _ in range(30):
            coordinator.handle_error("op", RuntimeError("x"))
        clock.now += 6 * 60 * 1000

        health = coordinator.get_system_health()
        assert health["status"] == "excellent"
        assert health["lastError"] is not None

    def test_error_report(self, coordinator, clock):
        for i in range(12):
            coordinator.handle_error("op", RuntimeError(f"Network error {i}"))
        clock.now += 2 * 60 * 60 * 1000
        coordinator.handle_error("op", RuntimeError("captcha"))

        report = coordinator.get_error_report()

        assert report["summary"]["totalErrors"] == 13
        assert report["summary"]["recentErrors"] == 1
        assert report["summary"]["errorsByCategory"] == {"network": 12, "bot_detection": 1}
        assert report["summary"]["consecutiveErrors"] == 1
        assert [e["message"] for e in report["recentErrors"]] == ["captcha"]
        assert report["systemHealth"]["status"] == "excellent"
        assert len(report["recommendations"]) == 2

    def test_report_keeps_last_ten(self, coordinator):
        for i in range(15):
            coordinator.handle_error("op", RuntimeError(f"e{i}"))

        recent = coordinator.get_error_report()["recentErrors"]
        assert [e["message"] for e in recent] == [f"e{i}" for i in range(5, 15)]

    def test_consecutive_errors(self, coordinator):
        coordinator.handle_error("op", RuntimeError("Network down"))
        coordinator.handle_error("op", RuntimeError("element missing"))
        coordinator.handle_error("op", RuntimeError("selector changed"))

        assert coordinator.get_consecutive_errors(ErrorCategory.DOM) == 2
        assert coordinator.get_consecutive_errors(ErrorCategory.NETWORK) == 0

    @pytest.mark.asyncio
    async def test_load(self, clock):
        backend = MemoryBackend()
        first = ResilienceCoordinator(backend, clock=clock, sleep=clock.sleep)
        await first.safe_execute(lambda: 1 / 0, name="divide")

        second = ResilienceCoordinator(backend, clock=clock, sleep=clock.sleep)
        await second.load()

        assert [r.operation for r in second.errors] == ["divide"]
        summary = second.get_error_report()["summary"]
        assert summary["totalErrors"] == 1
        assert summary["errorsByCategory"] == {"unknown": 1}
