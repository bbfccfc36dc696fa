"""例外定義.

メッセージ文字列は resilience.categorize_error のキーワード照合対象になるため、
カテゴリに対応する英単語を必ず含める。
"""


class RankFinderError(Exception):
    """rankfinder 内で送出する例外の基底クラス."""


class ValidationError(RankFinderError):
    """入力値（キーワード等）が不正."""


class ExtractionError(RankFinderError):
    """検索結果ページから結果要素を取り出せない."""


class FetchError(RankFinderError):
    """検索ページの HTTP 取得に失敗."""


class BotDetectionError(RankFinderError):
    """CAPTCHA / unusual traffic ページが返された."""


class StorageError(RankFinderError):
    """永続化バックエンドの読み書きに失敗."""
