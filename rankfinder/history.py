"""検索履歴モジュール.

新しい順に最大 max_size 件を保持し、超えた分は古いものから捨てる。
統計は保存時に集計せず、呼び出しのたびに履歴全体から計算する。
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from rankfinder.config import (
    HISTORY_DEFAULT_LIMIT,
    HISTORY_KEY,
    HISTORY_MAX_SIZE,
    HISTORY_MAX_SIZE_LIMIT,
    HISTORY_MIN_SIZE_LIMIT,
    HISTORY_RETENTION_DAYS,
)
from rankfinder.models import HistoryEntry, MatchVerdict, ResultRecord
from rankfinder.storage import StorageBackend

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000

CSV_HEADERS = [
    "Date",
    "Keyword",
    "Found",
    "Position",
    "Match Type",
    "Confidence",
    "Total Results",
    "URL",
]


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(value: datetime | str) -> int:
    """datetime または ISO 8601 文字列を ms epoch に変換する（naive は UTC とみなす）."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class HistoryStore:
    """照合結果の履歴（新しい順・件数上限付き）."""

    def __init__(
        self,
        backend: StorageBackend | None = None,
        *,
        max_size: int = HISTORY_MAX_SIZE,
        clock: Callable[[], int] = _epoch_ms,
    ):
        self._backend = backend
        self._clock = clock
        self._entries: deque[HistoryEntry] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._persist_lock = asyncio.Lock()
        self._last_timestamp = 0
        self.enabled = True
        self.auto_save = True

    @property
    def max_size(self) -> int:
        return self._entries.maxlen

    @property
    def entries(self) -> list[HistoryEntry]:
        """履歴（新しい順）のコピー."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # --- 書き込み ---

    async def save_result(
        self,
        keyword: str,
        results: Sequence[ResultRecord],
        verdict: MatchVerdict,
        metadata: dict | None = None,
    ) -> HistoryEntry | None:
        """照合結果を履歴の先頭に追加し、上限を超えた古い履歴を捨てる.

        履歴収集が無効なら何もしない。バックエンドの書き込み失敗はそのまま送出する
        （メモリ上の履歴には追加済み）。
        """
        if not self.enabled or not self.auto_save:
            return None

        with self._lock:
            timestamp = max(self._clock(), self._last_timestamp)
            self._last_timestamp = timestamp
            entry = HistoryEntry(
                id=f"hist_{timestamp}_{uuid.uuid4().hex[:9]}",
                keyword=keyword,
                timestamp=timestamp,
                search_date=datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).isoformat(),
                found=verdict.found,
                position=verdict.position,
                match_type=verdict.match_type,
                confidence=verdict.confidence,
                total_results=len(results),
                metadata={"searchEngine": "Google", **(metadata or {})},
            )
            self._entries.appendleft(entry)

        await self._persist()
        return entry

    async def load(self) -> None:
        """バックエンドから履歴を復元し、保持期間を過ぎた履歴を削除する."""
        if self._backend is None:
            return
        stored = await self._backend.get(HISTORY_KEY)
        if not isinstance(stored, list):
            return

        cutoff = self._clock() - HISTORY_RETENTION_DAYS * _DAY_MS
        entries = [HistoryEntry.from_dict(item) for item in stored]
        kept = [e for e in entries if e.timestamp > cutoff][: self.max_size]

        with self._lock:
            self._entries.clear()
            self._entries.extend(kept)
            if kept:
                self._last_timestamp = max(self._last_timestamp, max(e.timestamp for e in kept))
        logger.info("検索履歴を復元: %d 件", len(kept))
        if len(kept) < len(entries):
            logger.info("古い履歴を削除: %d 件", len(entries) - len(kept))
            await self._persist()

    async def clear(
        self,
        older_than: datetime | str | None = None,
        keyword: str | None = None,
        confirm: bool = False,
    ) -> dict:
        """条件に合う履歴を削除する。条件なしの全削除は confirm=True が必要."""
        with self._lock:
            current = list(self._entries)
            if older_than is not None:
                cutoff = _to_ms(older_than)
                remove = [e for e in current if e.timestamp < cutoff]
            elif keyword:
                needle = keyword.lower()
                remove = [e for e in current if needle in e.keyword.lower()]
            elif confirm:
                remove = current
            else:
                remove = []

            if not remove:
                return {
                    "success": False,
                    "message": "No entries matched removal criteria",
                    "removedCount": 0,
                }

            removed_ids = {e.id for e in remove}
            self._entries.clear()
            self._entries.extend(e for e in current if e.id not in removed_ids)
            remaining = len(self._entries)

        await self._persist()
        logger.info("履歴を削除: %d 件（残り %d 件）", len(remove), remaining)
        return {"success": True, "removedCount": len(remove), "remainingCount": remaining}

    # --- 読み出し ---

    def query(
        self,
        limit: int = HISTORY_DEFAULT_LIMIT,
        keyword: str | None = None,
        found_only: bool = False,
        date_from: datetime | str | None = None,
        date_to: datetime | str | None = None,
    ) -> dict:
        """履歴を絞り込んで返す.

        Returns:
            {
                "history": [entry dict, ...],  # 新しい順、最大 limit 件
                "total": int,                  # 全履歴件数
                "filtered": int,               # 絞り込み後（limit 適用前）の件数
            }
        """
        entries = self.entries
        total = len(entries)

        if keyword:
            needle = keyword.lower()
            entries = [e for e in entries if needle in e.keyword.lower()]
        if date_from is not None:
            start = _to_ms(date_from)
            entries = [e for e in entries if e.timestamp >= start]
        if date_to is not None:
            end = _to_ms(date_to)
            entries = [e for e in entries if e.timestamp <= end]
        if found_only:
            entries = [e for e in entries if e.found]

        return {
            "history": [e.to_dict() for e in entries[: max(0, limit)]],
            "total": total,
            "filtered": len(entries),
        }

    def get_stats(self) -> dict:
        entries = self.entries
        now = self._clock()
        stats = {
            "totalSearches": len(entries),
            "successfulSearches": 0,
            "averagePosition": 0,
            "topKeywords": {},
            "recentActivity": {"last7Days": 0, "last30Days": 0},
            "positionDistribution": {"topThree": 0, "firstPage": 0, "notFound": 0},
        }
        if not entries:
            return stats

        positions = []
        keywords: Counter[str] = Counter()
        distribution = stats["positionDistribution"]
        for entry in entries:
            if entry.found and entry.position is not None:
                positions.append(entry.position)
                if entry.position <= 3:
                    distribution["topThree"] += 1
                elif entry.position <= 10:
                    distribution["firstPage"] += 1
            else:
                distribution["notFound"] += 1

            if entry.timestamp > now - 7 * _DAY_MS:
                stats["recentActivity"]["last7Days"] += 1
            if entry.timestamp > now - 30 * _DAY_MS:
                stats["recentActivity"]["last30Days"] += 1

            keywords[entry.keyword.lower()] += 1

        stats["successfulSearches"] = len(positions)
        if positions:
            stats["averagePosition"] = round(sum(positions) / len(positions), 2)
        stats["topKeywords"] = dict(keywords.most_common(10))
        return stats

    def export(self, fmt: str = "json") -> dict:
        """履歴を JSON / CSV 文字列に書き出す."""
        history = self.query(limit=HISTORY_MAX_SIZE_LIMIT)["history"]
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        if fmt.lower() == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for entry in history:
                results = entry["results"]
                writer.writerow([
                    entry["searchDate"],
                    entry["keyword"],
                    results["found"],
                    results["position"] or "N/A",
                    results["matchType"] or "N/A",
                    results["confidence"] or "N/A",
                    results["totalResults"] or "N/A",
                    entry["metadata"].get("url", ""),
                ])
            return {
                "format": "csv",
                "data": buf.getvalue(),
                "filename": f"keyword_rank_history_{today}.csv",
            }

        data = json.dumps(
            {
                "exportDate": datetime.now(timezone.utc).isoformat(),
                "totalEntries": len(self),
                "history": history,
                "stats": self.get_stats(),
            },
            ensure_ascii=False,
            indent=2,
        )
        return {"format": "json", "data": data, "filename": f"keyword_rank_history_{today}.json"}

    # --- 設定 ---

    def update_settings(
        self,
        enabled: bool | None = None,
        auto_save: bool | None = None,
        max_history_size: int | None = None,
    ) -> None:
        if enabled is not None:
            self.enabled = enabled
        if auto_save is not None:
            self.auto_save = auto_save
        if max_history_size is not None:
            size = max(HISTORY_MIN_SIZE_LIMIT, min(HISTORY_MAX_SIZE_LIMIT, max_history_size))
            with self._lock:
                # deque(iterable, maxlen) は末尾側を残すため、先頭（新しい側）から切り出す
                self._entries = deque(list(self._entries)[:size], maxlen=size)

    def get_settings(self) -> dict:
        return {
            "enabled": self.enabled,
            "autoSave": self.auto_save,
            "maxHistorySize": self.max_size,
            "currentSize": len(self),
        }

    async def _persist(self) -> None:
        """最新の履歴を保存する。書き込みは1件ずつ順に行う."""
        if self._backend is None:
            return
        async with self._persist_lock:
            with self._lock:
                snapshot = [e.to_dict() for e in self._entries]
            await self._backend.set(HISTORY_KEY, snapshot)
