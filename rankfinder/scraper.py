"""Google 検索結果のスクレイピングモジュール.

取得戦略:
  1. 結果コンテナ（.g / .MjjYud / ...）の DOM パース（主戦略）
  2. JSON-LD (schema.org/ItemList) パース（フォールバック）

どちらも失敗した場合は ExtractionError を送出する。
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from urllib.parse import quote_plus

import requests
from bs4 import BeautifulSoup, Tag

from rankfinder.config import (
    REQUEST_INTERVAL_MAX,
    REQUEST_INTERVAL_MIN,
    REQUEST_TIMEOUT,
    SEARCH_LANGUAGE,
    SEARCH_RESULTS_PER_PAGE,
    SEARCH_URL_TEMPLATE,
    USER_AGENTS,
)
from rankfinder.errors import BotDetectionError, ExtractionError, FetchError
from rankfinder.models import ResultRecord, ResultType

logger = logging.getLogger(__name__)

# 先に要素が見つかったセレクタを採用する
RESULT_CONTAINER_SELECTORS = [
    ".g",
    ".MjjYud",
    ".tF2Cxc",
    "div[data-header-feature]",
    ".yuRUbf",
]
TITLE_SELECTORS = ["h3", "[role='heading']", ".LC20lb", ".DKV0Md"]
URL_SELECTORS = [".yuRUbf a", ".dmenKe a", ".tF2Cxc a", "a[href]"]
SNIPPET_SELECTORS = [".VwiC3b", ".s", ".IsZvec", ".lEBKkf", ".hgKElc", ".kCrYT"]

# organic 以外（広告・強調スニペット・ショッピング・ニュース・画像）の目印
NON_ORGANIC_SELECTORS = [
    "[data-text-ad]",
    ".commercial-unit-desktop-top",
    "[data-attrid]",
    ".xpdopen",
    ".pla-unit",
    ".nChh6e",
    ".eA0Zlc",
]
NON_ORGANIC_ANCESTOR_CLASSES = {"ads-ad", "kp-blk", "commercial-unit-desktop-rhs", "JJZKK", "islrc"}

# CAPTCHA / unusual traffic ページの目印
_BOT_MARKERS = (
    "unusual traffic from your computer network",
    "id=\"captcha-form\"",
    "/sorry/index",
)


def build_search_url(keyword: str) -> str:
    return SEARCH_URL_TEMPLATE.format(
        keyword=quote_plus(keyword),
        num=SEARCH_RESULTS_PER_PAGE,
        hl=SEARCH_LANGUAGE,
    )


def fetch_search_page(keyword: str, device: str = "pc") -> str:
    """Google 検索ページの HTML を取得する.

    Args:
        keyword: 検索キーワード
        device: "pc" or "sp"

    Returns:
        HTML 文字列。

    Raises:
        FetchError: 通信エラー・タイムアウト
        BotDetectionError: HTTP 429 / CAPTCHA ページ
    """
    url = build_search_url(keyword)
    headers = {
        "User-Agent": USER_AGENTS[device],
        "Accept-Language": f"{SEARCH_LANGUAGE},en-US;q=0.9,en;q=0.8",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }

    try:
        resp = requests.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.Timeout as e:
        logger.error("検索ページ取得タイムアウト: keyword=%s, device=%s", keyword, device)
        raise FetchError(f"Search page request timed out after {REQUEST_TIMEOUT}s") from e
    except requests.RequestException as e:
        logger.error("検索ページ取得失敗: keyword=%s, device=%s, error=%s", keyword, device, e)
        raise FetchError(f"Network request failed: {e}") from e

    if resp.status_code == 429:
        raise BotDetectionError("Request blocked by search engine (HTTP 429)")
    try:
        resp.raise_for_status()
    except requests.HTTPError as e:
        raise FetchError(f"Network request failed: HTTP {resp.status_code}") from e
    return resp.text


async def wait_interval() -> None:
    """リクエスト間隔を 1〜3 秒ランダムで待機する."""
    interval = random.uniform(REQUEST_INTERVAL_MIN, REQUEST_INTERVAL_MAX)
    await asyncio.sleep(interval)


def is_bot_check_page(html: str) -> bool:
    lowered = html.lower()
    return any(marker in lowered for marker in _BOT_MARKERS)


def parse_search_results(html: str) -> list[ResultRecord]:
    """検索結果 HTML から結果リストを抽出する.

    主戦略: 結果コンテナの DOM
    フォールバック: JSON-LD (schema.org/ItemList)
    """
    soup = BeautifulSoup(html, "html.parser")
    results = _parse_from_containers(soup)
    if results:
        return results

    logger.warning("結果コンテナのパース失敗。JSON-LD にフォールバック")
    results = _parse_from_json_ld(soup)
    if results:
        return results

    logger.error("検索結果のパースに失敗しました")
    return []


def _parse_from_containers(soup: BeautifulSoup) -> list[ResultRecord]:
    containers: list[Tag] = []
    for selector in RESULT_CONTAINER_SELECTORS:
        containers = soup.select(selector)
        if containers:
            break

    results: list[ResultRecord] = []
    for container in containers:
        title = _select_text(container, TITLE_SELECTORS)
        url = _select_href(container, URL_SELECTORS)
        if not title and not url:
            continue
        results.append(ResultRecord(
            position=len(results) + 1,
            title=title,
            url=url,
            description=_select_text(container, SNIPPET_SELECTORS),
            type=_result_type(container),
        ))

    return results


def _parse_from_json_ld(soup: BeautifulSoup) -> list[ResultRecord]:
    """JSON-LD (schema.org/ItemList) から結果リストを抽出する."""
    results: list[ResultRecord] = []

    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string)
        except (json.JSONDecodeError, TypeError):
            continue

        if not isinstance(data, dict) or data.get("@type") != "ItemList":
            continue

        for entry in data.get("itemListElement", []):
            item = entry.get("item", {}) or {}
            url = item.get("url") or entry.get("url", "")
            title = item.get("name") or entry.get("name", "")
            if not title and not url:
                continue
            results.append(ResultRecord(
                position=int(entry.get("position") or len(results) + 1),
                title=title,
                url=url,
                description=item.get("description", ""),
            ))

    return results


def _select_text(container: Tag, selectors: list[str]) -> str:
    for selector in selectors:
        element = container.select_one(selector)
        if element is not None:
            return element.get_text(" ", strip=True)
    return ""


def _select_href(container: Tag, selectors: list[str]) -> str:
    for selector in selectors:
        element = container.select_one(selector)
        if element is not None and element.get("href"):
            return element["href"]
    return ""


def _result_type(container: Tag) -> ResultType:
    if any(container.select_one(s) is not None for s in NON_ORGANIC_SELECTORS):
        return ResultType.OTHER
    for parent in container.parents:
        if NON_ORGANIC_ANCESTOR_CLASSES.intersection(parent.get("class") or []):
            return ResultType.OTHER
    return ResultType.ORGANIC


class HtmlExtractor:
    """取得済み HTML から結果を抽出する Extractor."""

    def __init__(self, html: str):
        self.html = html

    def extract(self) -> list[ResultRecord]:
        if is_bot_check_page(self.html):
            raise BotDetectionError("Request blocked: captcha page returned")
        results = parse_search_results(self.html)
        if not results:
            raise ExtractionError("No search result elements found on page")
        logger.info("検索結果: %d 件を取得", len(results))
        return results


class RequestsExtractor:
    """検索ページを取得してから抽出する Extractor."""

    def __init__(self, keyword: str, device: str = "pc"):
        self.keyword = keyword
        self.device = device

    async def extract(self) -> list[ResultRecord]:
        html = await asyncio.to_thread(fetch_search_page, self.keyword, self.device)
        return HtmlExtractor(html).extract()
