"""順位判定パイプライン.

処理フロー（各ステップを ResilienceCoordinator.safe_execute で包む）:
  1. Extractor で検索結果を抽出（失敗したらそこで終了）
  2. KeywordMatcher で照合
  3. HistoryStore に保存（失敗しても判定結果は返す）
  4. 結果を組み立てて返す
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable

from rankfinder.errors import ValidationError
from rankfinder.extractor import Extractor
from rankfinder.history import HistoryStore
from rankfinder.matcher import KeywordMatcher
from rankfinder.models import MatchVerdict, OperationFailure
from rankfinder.resilience import ResilienceCoordinator

logger = logging.getLogger(__name__)


class RankPipeline:
    def __init__(
        self,
        extractor: Extractor,
        matcher: KeywordMatcher,
        history: HistoryStore,
        coordinator: ResilienceCoordinator,
    ):
        self.extractor = extractor
        self.matcher = matcher
        self.history = history
        self.coordinator = coordinator

    async def evaluate(self, keyword: str, metadata: dict | None = None) -> dict:
        """キーワードの順位を判定する.

        Returns:
            成功時: {"success": True, "keyword", "found", "position", "confidence",
                     "matchType", "matchedWords", "totalWords", "totalResults"}
            失敗時: {"success": False, "error", "errorCategory", "errorId", "canRetry"}
        """
        context = {"keyword": keyword}

        results = await self.coordinator.safe_execute(
            self.extractor.extract, context, name="extract"
        )
        if isinstance(results, OperationFailure):
            logger.warning("抽出失敗: keyword=%s, error=%s", keyword, results.error)
            return results.to_dict()

        verdict = await self.coordinator.safe_execute(
            lambda: self._match(keyword, results), context, name="match"
        )
        if isinstance(verdict, OperationFailure):
            return verdict.to_dict()

        saved = await self.coordinator.safe_execute(
            lambda: self.history.save_result(keyword, results, verdict, metadata),
            context,
            name="save_history",
        )
        if isinstance(saved, OperationFailure):
            logger.warning("履歴保存失敗（判定結果は返す）: keyword=%s", keyword)

        status = f"{verdict.position}位" if verdict.found else "圏外"
        logger.info(
            "判定: keyword=%s → %s (%s, confidence=%.2f)",
            keyword, status, verdict.match_type.value, verdict.confidence,
        )
        return {
            "success": True,
            "keyword": keyword,
            **verdict.to_dict(),
            "totalResults": len(results),
        }

    async def evaluate_many(self, keywords: Iterable[str]) -> dict[str, dict]:
        """複数キーワードを並行して判定する."""
        keywords = list(keywords)
        outcomes = await asyncio.gather(*(self.evaluate(k) for k in keywords))
        return dict(zip(keywords, outcomes))

    async def scrape(self) -> dict:
        """抽出のみ実行する."""
        results = await self.coordinator.safe_execute(self.extractor.extract, name="scrape")
        if isinstance(results, OperationFailure):
            return results.to_dict()
        return {
            "success": True,
            "results": [r.to_dict() for r in results],
            "total": len(results),
        }

    def get_system_report(self) -> dict:
        health = self.coordinator.get_system_health()
        return {
            "timestamp": int(time.time() * 1000),
            "modules": {
                "extractor": {"status": "ready", "type": type(self.extractor).__name__},
                "keywordMatcher": {"status": "ready"},
                "resilience": {"status": health["status"], "health": health},
                "searchHistory": {
                    "status": "enabled" if self.history.enabled else "disabled",
                    **self.history.get_settings(),
                },
            },
        }

    def _match(self, keyword: str, results) -> MatchVerdict:
        if not isinstance(keyword, str):
            raise ValidationError(f"Invalid keyword: {keyword!r}")
        return self.matcher.match(keyword, results)
