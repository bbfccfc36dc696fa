"""メッセージインターフェース.

{"action": <name>, ...} 形式のリクエストを受け取り、dict で応答する。
処理中の例外は {"success": False, "error": <message>} に変換して返す。
"""

from __future__ import annotations

import logging
import time

from rankfinder.errors import ValidationError
from rankfinder.pipeline import RankPipeline

logger = logging.getLogger(__name__)


class MessageRouter:
    def __init__(self, pipeline: RankPipeline):
        self.pipeline = pipeline
        self._handlers = {
            "findKeywordRank": self._find_keyword_rank,
            "scrapeResults": self._scrape_results,
            "getSearchHistory": self._get_search_history,
            "getSystemReport": self._get_system_report,
            "getHistoryStats": self._get_history_stats,
            "getErrorReport": self._get_error_report,
            "clearSearchHistory": self._clear_search_history,
            "ping": self._ping,
        }

    async def handle(self, request: dict) -> dict:
        action = (request or {}).get("action")
        handler = self._handlers.get(action)
        if handler is None:
            logger.warning("未知のアクション: %s", action)
            return {"success": False, "error": f"Unknown action: {action}"}

        try:
            return await handler(request)
        except Exception as e:
            logger.error("アクション処理失敗: action=%s, error=%s", action, e)
            return {"success": False, "error": str(e) or e.__class__.__name__}

    async def _find_keyword_rank(self, request: dict) -> dict:
        keyword = request.get("keyword")
        if not isinstance(keyword, str) or not keyword.strip():
            raise ValidationError(f"Invalid keyword: {keyword!r}")
        options = request.get("options") or {}
        return await self.pipeline.evaluate(keyword, metadata=options.get("metadata"))

    async def _scrape_results(self, request: dict) -> dict:
        return await self.pipeline.scrape()

    async def _get_search_history(self, request: dict) -> dict:
        options = request.get("options") or {}
        result = self.pipeline.history.query(
            limit=options.get("limit", 20),
            keyword=options.get("keyword"),
            found_only=options.get("foundOnly", False),
            date_from=options.get("dateFrom"),
            date_to=options.get("dateTo"),
        )
        return {"success": True, **result}

    async def _get_system_report(self, request: dict) -> dict:
        return {"success": True, **self.pipeline.get_system_report()}

    async def _get_history_stats(self, request: dict) -> dict:
        return {"success": True, "stats": self.pipeline.history.get_stats()}

    async def _get_error_report(self, request: dict) -> dict:
        return {"success": True, "report": self.pipeline.coordinator.get_error_report()}

    async def _clear_search_history(self, request: dict) -> dict:
        options = request.get("options") or {}
        return await self.pipeline.history.clear(
            older_than=options.get("olderThan"),
            keyword=options.get("keyword"),
            confirm=options.get("confirmClear", False),
        )

    async def _ping(self, request: dict) -> dict:
        return {"status": "alive", "timestamp": int(time.time() * 1000)}
