"""キーワード照合モジュール.

照合戦略（トークン対ごとに優先順で評価）:
  1. 部分文字列の包含（どちらかがもう一方を含む）
  2. 語幹一致（英語の屈折語尾を除去して比較）
  3. 文字位置ごとの一致率によるあいまい一致

検索結果は順位順に評価し、最初に条件を満たした結果を採用する。
ただしキーワード全体がそのまま含まれる結果があれば、それを先に採用する。
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from rankfinder.models import MatchType, MatchVerdict, ResultRecord

logger = logging.getLogger(__name__)

# 強さの順位（大きいほど強い）
_STRATEGY_RANK = {
    MatchType.EXACT: 3,
    MatchType.STEM: 2,
    MatchType.FUZZY: 1,
}


@dataclass(frozen=True)
class MatchPolicy:
    """照合の閾値・重み."""

    containment_similarity: float = 0.9
    stem_similarity: float = 0.8
    fuzzy_ratio_threshold: float = 0.7
    fuzzy_weight: float = 0.7
    token_threshold: float = 0.6  # これを超えたトークン対で一致とみなす
    coverage_weight: float = 0.6
    quality_weight: float = 0.3
    acceptance_threshold: float = 0.25  # これを超えた結果を一致とみなす
    suffixes: tuple[str, ...] = ("ing", "ed", "er", "est", "ly", "es", "s")
    phrase_first: bool = True  # 各結果でキーワード全体の完全一致を先に調べる


DEFAULT_POLICY = MatchPolicy()


def tokenize(text: str | None) -> list[str]:
    """小文字化して空白区切りでトークン化する（空トークンは除外）."""
    if not text:
        return []
    return text.lower().split()


def normalize_text(text: str | None) -> str:
    """小文字化し、連続する空白を1つにまとめる."""
    return " ".join(tokenize(text))


def stem(word: str, suffixes: Iterable[str] = DEFAULT_POLICY.suffixes) -> str:
    """最長一致する語尾を1つ取り除く.

    3文字以下の語、および除去後の語幹が2文字以下になる場合はそのまま返す。
    """
    if len(word) <= 3:
        return word
    for suffix in sorted(suffixes, key=len, reverse=True):
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return word[: -len(suffix)]
    return word


def stems_match(a: str, b: str, suffixes: Iterable[str] = DEFAULT_POLICY.suffixes) -> bool:
    """語幹が一致し、かつ語幹が3文字以上なら True."""
    suffixes = tuple(suffixes)
    stem_a = stem(a, suffixes)
    return stem_a == stem(b, suffixes) and len(stem_a) > 2


def char_overlap_ratio(a: str, b: str) -> float:
    """同じ位置の文字の一致数 / 長い方の文字数."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 0.0
    same = sum(1 for x, y in zip(a, b) if x == y)
    return same / longer


def token_similarity(
    keyword_token: str, text_token: str, policy: MatchPolicy = DEFAULT_POLICY
) -> tuple[float, MatchType]:
    """トークン対の類似度と、それを出した戦略を返す.

    一致しない場合は (0.0, MatchType.NONE)。
    """
    if keyword_token in text_token or text_token in keyword_token:
        return policy.containment_similarity, MatchType.EXACT
    if stems_match(keyword_token, text_token, policy.suffixes):
        return policy.stem_similarity, MatchType.STEM
    ratio = char_overlap_ratio(keyword_token, text_token)
    if ratio > policy.fuzzy_ratio_threshold:
        return ratio * policy.fuzzy_weight, MatchType.FUZZY
    return 0.0, MatchType.NONE


@dataclass
class _ResultScore:
    """1件の検索結果に対する採点."""

    matched_words: int = 0
    total_words: int = 0
    total_similarity: float = 0.0
    strategies: set[MatchType] = field(default_factory=set)
    confidence: float = 0.0

    @property
    def strongest(self) -> MatchType:
        if not self.strategies:
            return MatchType.NONE
        return max(self.strategies, key=_STRATEGY_RANK.__getitem__)


class KeywordMatcher:
    """キーワードが検索結果のどこに現れるかを判定する."""

    def __init__(self, policy: MatchPolicy = DEFAULT_POLICY):
        self.policy = policy

    def match(self, keyword: str, results: Sequence[ResultRecord]) -> MatchVerdict:
        """最も上位で一致した検索結果の判定を返す.

        Args:
            keyword: 検索キーワード
            results: 抽出済みの検索結果

        Returns:
            MatchVerdict。一致なしなら found=False, confidence=0。
        """
        keyword_tokens = tokenize(keyword)
        if not keyword_tokens or not results:
            return MatchVerdict.not_found(total_words=len(keyword_tokens))

        phrase = " ".join(keyword_tokens)
        for record in sorted(results, key=lambda r: r.position):
            score = self._score(keyword_tokens, record)
            if self.policy.phrase_first and phrase in normalize_text(record.searchable_text):
                logger.debug("完全一致: keyword=%s, position=%d", keyword, record.position)
                return self._verdict(record, score, MatchType.EXACT)
            if self._qualifies(score):
                logger.debug(
                    "一致: keyword=%s, position=%d, confidence=%.3f",
                    keyword, record.position, score.confidence,
                )
                return self._verdict(record, score, score.strongest)

        logger.debug("一致なし: keyword=%s, results=%d", keyword, len(results))
        return MatchVerdict.not_found(total_words=len(keyword_tokens))

    def match_many(
        self, keywords: Iterable[str], results: Sequence[ResultRecord]
    ) -> dict[str, MatchVerdict]:
        """複数キーワードを同じ検索結果に対して一括照合する."""
        return {keyword: self.match(keyword, results) for keyword in keywords}

    def quick_position(self, keyword: str, results: Sequence[ResultRecord]) -> int | None:
        """順位のみ返す。見つからなければ None（圏外）."""
        return self.match(keyword, results).position

    def _score(self, keyword_tokens: list[str], record: ResultRecord) -> _ResultScore:
        text_tokens = tokenize(record.searchable_text)
        score = _ResultScore(total_words=len(keyword_tokens))

        for keyword_token in keyword_tokens:
            # 最良ではなく、走査順で最初に閾値を超えたトークンを採用
            for text_token in text_tokens:
                similarity, strategy = token_similarity(keyword_token, text_token, self.policy)
                if similarity > self.policy.token_threshold:
                    score.matched_words += 1
                    score.total_similarity += similarity
                    score.strategies.add(strategy)
                    break

        base_confidence = score.matched_words / score.total_words
        avg_similarity = (
            score.total_similarity / score.matched_words if score.matched_words else 0.0
        )
        confidence = (
            base_confidence * self.policy.coverage_weight
            + avg_similarity * self.policy.quality_weight
        )
        score.confidence = min(1.0, max(0.0, confidence))
        return score

    def _qualifies(self, score: _ResultScore) -> bool:
        return score.confidence > self.policy.acceptance_threshold and score.matched_words > 0

    @staticmethod
    def _verdict(record: ResultRecord, score: _ResultScore, match_type: MatchType) -> MatchVerdict:
        return MatchVerdict(
            found=True,
            position=record.position,
            match_type=match_type,
            confidence=score.confidence,
            matched_words=score.matched_words,
            total_words=score.total_words,
        )
