"""Google 検索順位判定 — メインエントリーポイント.

処理フロー:
  1. 永続化バックエンド・履歴・エラーログを準備
  2. 各キーワードで検索ページを取得（--html 指定時は保存済み HTML を使用）
  3. 検索結果からキーワードの順位を照合
  4. 判定結果を履歴に記録
  5. サマリを出力
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

from rankfinder.config import DEVICES, HISTORY_FILE, LOG_DIR, SUPABASE_URL
from rankfinder.history import HistoryStore
from rankfinder.matcher import KeywordMatcher
from rankfinder.models import OperationFailure
from rankfinder.pipeline import RankPipeline
from rankfinder.resilience import ResilienceCoordinator
from rankfinder.scraper import HtmlExtractor, RequestsExtractor, wait_interval
from rankfinder.storage import JsonFileBackend, StorageBackend, SupabaseBackend


def setup_logging() -> None:
    """ロギングの初期設定."""
    log_file = LOG_DIR / f"rankfinder_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Google 検索結果でのキーワード順位を判定する")
    parser.add_argument("keywords", nargs="+", help="判定するキーワード")
    parser.add_argument("--device", choices=DEVICES, default="pc")
    parser.add_argument("--html", type=Path, help="取得済みの検索結果 HTML（指定時は取得しない）")
    return parser.parse_args(argv)


def build_backend() -> StorageBackend:
    if SUPABASE_URL:
        return SupabaseBackend()
    return JsonFileBackend(HISTORY_FILE)


async def _run(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    backend = build_backend()
    coordinator = ResilienceCoordinator(backend)
    history = HistoryStore(backend)
    matcher = KeywordMatcher()

    for loader in (coordinator.load, history.load):
        loaded = await coordinator.safe_execute(loader, name="load")
        if isinstance(loaded, OperationFailure):
            logger.warning("保存済みデータの読み込みに失敗: %s", loaded.error)

    html = args.html.read_text(encoding="utf-8") if args.html else None
    error_count = 0

    for i, keyword in enumerate(args.keywords):
        if html is not None:
            extractor = HtmlExtractor(html)
        else:
            if i > 0:
                await wait_interval()
            extractor = RequestsExtractor(keyword, args.device)

        logger.info("検索中: keyword=%s, device=%s", keyword, args.device)
        outcome = await RankPipeline(extractor, matcher, history, coordinator).evaluate(
            keyword, metadata={"device": args.device}
        )
        if not outcome["success"]:
            error_count += 1
            logger.warning(
                "スキップ: keyword=%s, error=%s (%s)",
                keyword, outcome["error"], outcome["errorCategory"],
            )
            continue

        status = f"{outcome['position']}位" if outcome["found"] else "圏外"
        logger.info(
            "  %s → %s (%s, confidence=%.2f, %d 件中)",
            keyword, status, outcome["matchType"], outcome["confidence"], outcome["totalResults"],
        )

    health = coordinator.get_system_health()
    logger.info("判定: %d 件, エラー: %d 件, 状態: %s", len(args.keywords), error_count, health["status"])
    return 1 if error_count == len(args.keywords) else 0


def run(argv: list[str] | None = None) -> int:
    """メイン処理."""
    args = parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("=== 検索順位判定 開始 ===")
    start_time = time.time()

    exit_code = asyncio.run(_run(args))

    elapsed = time.time() - start_time
    logger.info("=== 検索順位判定 完了 === 所要時間: %.1f 秒", elapsed)
    return exit_code


if __name__ == "__main__":
    sys.exit(run())
