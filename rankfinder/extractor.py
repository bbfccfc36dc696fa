"""Extractor 契約.

「現在のページ」から ResultRecord 列を取り出す差し替え可能な部品。
extract() は同期・非同期どちらでもよく、失敗時は例外を送出する。
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from typing import Protocol, Union

from rankfinder.models import ResultRecord

ExtractResult = Union[Sequence[ResultRecord], Awaitable[Sequence[ResultRecord]]]


class Extractor(Protocol):
    def extract(self) -> ExtractResult: ...


class StaticExtractor:
    """抽出済みの結果列をそのまま返す Extractor."""

    def __init__(self, results: Sequence[ResultRecord]):
        self._results = list(results)

    def extract(self) -> list[ResultRecord]:
        return list(self._results)
