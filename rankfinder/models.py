"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResultType(str, Enum):
    """検索結果の種別."""

    ORGANIC = "organic"
    OTHER = "other"


class MatchType(str, Enum):
    """キーワード照合の種別（強い順: exact > stem > fuzzy）."""

    EXACT = "exact"
    PARTIAL = "partial"  # 互換用に予約（照合では返さない）
    STEM = "stem"
    FUZZY = "fuzzy"
    NONE = "none"


class ErrorCategory(str, Enum):
    """エラー分類."""

    NETWORK = "network"
    DOM = "dom"
    PARSING = "parsing"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    BOT_DETECTION = "bot_detection"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ResultRecord:
    """検索結果の1件を表す."""

    position: int  # 検索結果内の順位（1始まり）
    title: str
    url: str
    description: str = ""
    type: ResultType = ResultType.ORGANIC

    @property
    def searchable_text(self) -> str:
        """照合対象テキスト（タイトル + 説明文）."""
        return f"{self.title} {self.description}"

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "type": self.type.value,
        }


@dataclass(frozen=True)
class MatchVerdict:
    """1回の (キーワード, 検索結果) 照合の判定."""

    found: bool
    position: int | None  # None = 圏外
    match_type: MatchType
    confidence: float  # 0.0〜1.0
    matched_words: int
    total_words: int

    @classmethod
    def not_found(cls, total_words: int = 0) -> MatchVerdict:
        return cls(
            found=False,
            position=None,
            match_type=MatchType.NONE,
            confidence=0.0,
            matched_words=0,
            total_words=total_words,
        )

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "position": self.position,
            "matchType": self.match_type.value,
            "confidence": self.confidence,
            "matchedWords": self.matched_words,
            "totalWords": self.total_words,
        }


@dataclass(frozen=True)
class ErrorRecord:
    """捕捉した失敗1件の記録."""

    id: str
    operation: str
    message: str
    timestamp: int  # ms epoch
    category: ErrorCategory
    context: dict[str, Any] = field(default_factory=dict)
    severity: str = "medium"  # critical / high / medium / low

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "message": self.message,
            "timestamp": self.timestamp,
            "category": self.category.value,
            "context": dict(self.context),
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ErrorRecord:
        return cls(
            id=data["id"],
            operation=data.get("operation", ""),
            message=data.get("message", ""),
            timestamp=int(data["timestamp"]),
            category=ErrorCategory(data.get("category", "unknown")),
            context=dict(data.get("context") or {}),
            severity=data.get("severity", "medium"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """検索履歴1件."""

    id: str
    keyword: str
    timestamp: int  # ms epoch
    search_date: str  # ISO 8601
    found: bool
    position: int | None
    match_type: MatchType
    confidence: float
    total_results: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "keyword": self.keyword,
            "timestamp": self.timestamp,
            "searchDate": self.search_date,
            "results": {
                "found": self.found,
                "position": self.position,
                "matchType": self.match_type.value,
                "confidence": self.confidence,
                "totalResults": self.total_results,
            },
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> HistoryEntry:
        results = data.get("results", {}) or {}
        return cls(
            id=data["id"],
            keyword=data.get("keyword", ""),
            timestamp=int(data["timestamp"]),
            search_date=data.get("searchDate", ""),
            found=bool(results.get("found", False)),
            position=results.get("position"),
            match_type=MatchType(results.get("matchType") or "none"),
            confidence=float(results.get("confidence") or 0.0),
            total_results=int(results.get("totalResults") or 0),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class OperationFailure:
    """safe_execute が返す失敗値."""

    error: str
    error_category: ErrorCategory
    error_id: str
    can_retry: bool = True
    success: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "errorCategory": self.error_category.value,
            "errorId": self.error_id,
            "canRetry": self.can_retry,
        }
