"""エラー処理・リトライモジュール.

失敗しうる処理（抽出・照合・永続化）を包み、
  - 失敗をメッセージのキーワードで分類して記録する
  - 指数バックオフ付きでリトライする
  - 直近のエラー件数からシステムの健全性を算出する
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable
from typing import Any, Awaitable

from rankfinder.config import (
    ERROR_LOG_KEY,
    ERROR_LOG_MAX_SIZE,
    HEALTH_WINDOW_MS,
    MAX_RETRIES,
    REPORT_WINDOW_MS,
)
from rankfinder.models import ErrorCategory, ErrorRecord, OperationFailure
from rankfinder.storage import StorageBackend

logger = logging.getLogger(__name__)

# 判定順は固定（先に一致したルールを採用）
CATEGORY_RULES: tuple[tuple[ErrorCategory, tuple[str, ...], str], ...] = (
    (ErrorCategory.NETWORK, ("network", "fetch", "connection"), "is_network_error"),
    (ErrorCategory.DOM, ("element", "selector", "queryselector"), "is_dom_error"),
    (ErrorCategory.PARSING, ("parse", "json", "syntax"), "is_parsing_error"),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "abort"), "is_timeout_error"),
    (ErrorCategory.BOT_DETECTION, ("blocked", "captcha", "bot"), "is_bot_detection_error"),
    (ErrorCategory.VALIDATION, ("invalid", "validation"), "is_validation_error"),
)

SEVERITY = {
    ErrorCategory.BOT_DETECTION: "critical",
    ErrorCategory.NETWORK: "high",
    ErrorCategory.TIMEOUT: "medium",
    ErrorCategory.DOM: "medium",
    ErrorCategory.PARSING: "low",
    ErrorCategory.VALIDATION: "low",
    ErrorCategory.UNKNOWN: "medium",
}

Categorizer = Callable[[BaseException, dict], ErrorCategory]


def error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def categorize_error(error: BaseException, context: dict | None = None) -> ErrorCategory:
    """エラーメッセージ（小文字化）をルール順に照合して分類する."""
    message = error_message(error).lower()
    context = context or {}
    for category, terms, flag in CATEGORY_RULES:
        if any(term in message for term in terms) or context.get(flag):
            return category
    return ErrorCategory.UNKNOWN


def _epoch_ms() -> int:
    return int(time.time() * 1000)


async def _call(operation: Callable[[], Any]) -> Any:
    """同期・非同期どちらの処理も呼び出す."""
    result = operation()
    if inspect.isawaitable(result):
        result = await result
    return result


class ResilienceCoordinator:
    """失敗の分類・記録・リトライと健全性の集計."""

    def __init__(
        self,
        backend: StorageBackend | None = None,
        *,
        clock: Callable[[], int] = _epoch_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        categorizer: Categorizer = categorize_error,
        max_log_size: int = ERROR_LOG_MAX_SIZE,
    ):
        self._backend = backend
        self._clock = clock
        self._sleep = sleep
        self._categorizer = categorizer
        self._log: deque[ErrorRecord] = deque(maxlen=max_log_size)
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._persist_lock = asyncio.Lock()
        self._last_timestamp = 0

    # --- 実行ラッパー ---

    async def safe_execute(
        self,
        operation: Callable[[], Any],
        context: dict | None = None,
        *,
        name: str = "safe_execute",
        timeout: float | None = None,
    ) -> Any:
        """処理を実行し、失敗時は例外の代わりに OperationFailure を返す.

        Args:
            operation: 引数なしの同期関数またはコルーチン関数
            context: エラー記録に添える任意の情報
            name: エラー記録の operation 名
            timeout: 秒。指定時は超過を timeout として扱う

        Returns:
            処理の戻り値。失敗時は OperationFailure。
        """
        context = dict(context or {})
        try:
            if timeout:
                try:
                    return await asyncio.wait_for(_call(operation), timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"Operation timed out after {timeout}s") from None
            return await _call(operation)
        except Exception as e:
            record = self.handle_error(name, e, context)
            await self._persist()
            return OperationFailure(
                error=record.message,
                error_category=record.category,
                error_id=record.id,
            )

    async def execute_with_retry(
        self,
        operation: Callable[[], Any],
        context: dict | None = None,
        max_retries: int = MAX_RETRIES,
    ) -> Any:
        """最大 max_retries 回まで実行する.

        n 回目の失敗後、2**n 秒待って再試行する。最後の失敗はそのまま送出する。
        """
        attempts = max(1, max_retries)
        label = (context or {}).get("operation", getattr(operation, "__name__", "operation"))
        for attempt in range(1, attempts + 1):
            try:
                return await _call(operation)
            except Exception as e:
                if attempt >= attempts:
                    logger.error("リトライ上限到達: %s (%d 回), error=%s", label, attempts, e)
                    raise
                delay = 2 ** attempt
                logger.warning(
                    "試行 %d/%d 失敗: %s, error=%s、%d 秒後に再試行",
                    attempt, attempts, label, e, delay,
                )
                await self._sleep(delay)

    # --- 記録 ---

    def categorize_error(self, error: BaseException, context: dict | None = None) -> ErrorCategory:
        return self._categorizer(error, context or {})

    def handle_error(
        self, operation: str, error: BaseException, context: dict | None = None
    ) -> ErrorRecord:
        """失敗を分類して ErrorRecord を作成し、ログに追加する."""
        context = dict(context or {})
        category = self.categorize_error(error, context)
        with self._lock:
            timestamp = max(self._clock(), self._last_timestamp)
            self._last_timestamp = timestamp
            record = ErrorRecord(
                id=f"error_{timestamp}_{uuid.uuid4().hex[:9]}",
                operation=operation,
                message=error_message(error),
                timestamp=timestamp,
                category=category,
                context=context,
                severity=SEVERITY[category],
            )
            self._log.append(record)
            self._counts[category.value] += 1

        level = logging.ERROR if record.severity in ("critical", "high") else logging.WARNING
        logger.log(
            level, "[%s] %s 失敗: %s (id=%s)",
            category.value, operation, record.message, record.id,
        )
        return record

    @property
    def errors(self) -> list[ErrorRecord]:
        """エラーログ（古い順）のコピー."""
        with self._lock:
            return list(self._log)

    def get_recent_errors(self, window_ms: int) -> list[ErrorRecord]:
        """now - timestamp <= window_ms のエラーを古い順に返す."""
        now = self._clock()
        return [r for r in self.errors if now - r.timestamp <= window_ms]

    def get_consecutive_errors(self, category: ErrorCategory) -> int:
        """最新から遡って同じカテゴリが続いている件数."""
        count = 0
        for record in reversed(self.errors):
            if record.category != category:
                break
            count += 1
        return count

    # --- 集計 ---

    def get_system_health(self) -> dict:
        recent = self.get_recent_errors(HEALTH_WINDOW_MS)
        error_rate = len(recent) / 5  # 件/分

        if error_rate > 5:
            status = "poor"
        elif error_rate > 2:
            status = "fair"
        elif error_rate > 0.5:
            status = "good"
        else:
            status = "excellent"

        errors = self.errors
        return {
            "status": status,
            "errorRate": error_rate,
            "lastError": errors[-1].timestamp if errors else None,
        }

    def get_error_report(self) -> dict:
        recent = self.get_recent_errors(REPORT_WINDOW_MS)
        return {
            "summary": {
                "totalErrors": len(self.errors),
                "recentErrors": len(recent),
                "errorsByCategory": dict(self._counts),
                "consecutiveErrors": (
                    self.get_consecutive_errors(self.errors[-1].category) if self.errors else 0
                ),
            },
            "recentErrors": [r.to_dict() for r in recent[-10:]],
            "systemHealth": self.get_system_health(),
            "recommendations": self._recommendations(),
        }

    def _recommendations(self) -> list[str]:
        recommendations = []
        if self._counts[ErrorCategory.DOM.value] > 5:
            recommendations.append("High DOM errors - the results page layout may have changed")
        if self._counts[ErrorCategory.NETWORK.value] > 3:
            recommendations.append("Network issues detected - check the internet connection")
        if self._counts[ErrorCategory.BOT_DETECTION.value] > 0:
            recommendations.append("Bot detection encountered - reduce request frequency")
        return recommendations

    # --- 永続化 ---

    async def load(self) -> None:
        """バックエンドからエラーログを復元する."""
        if self._backend is None:
            return
        stored = await self._backend.get(ERROR_LOG_KEY)
        if not isinstance(stored, list):
            return
        records = [ErrorRecord.from_dict(item) for item in stored]
        with self._lock:
            self._log.clear()
            self._log.extend(records)
            self._counts = Counter(r.category.value for r in self._log)
            if records:
                self._last_timestamp = max(self._last_timestamp, records[-1].timestamp)
        logger.info("エラーログを復元: %d 件", len(records))

    async def _persist(self) -> None:
        if self._backend is None:
            return
        try:
            async with self._persist_lock:
                snapshot = [r.to_dict() for r in self.errors]
                await self._backend.set(ERROR_LOG_KEY, snapshot)
        except Exception as e:
            logger.warning("エラーログの保存に失敗: %s", e)
