"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase（未設定ならローカル JSON に保存） ---
SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.environ.get("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA = "rank_tracker"
SUPABASE_KV_TABLE = "kv_store"

# --- 永続化 ---
HISTORY_FILE = Path(
    os.environ.get("RANKFINDER_HISTORY_FILE", _PROJECT_ROOT / "data" / "history.json")
)
HISTORY_KEY = "google_keyword_rank_history"
ERROR_LOG_KEY = "rankfinder_error_log"

# --- 検索履歴 ---
HISTORY_MAX_SIZE = int(os.environ.get("RANKFINDER_HISTORY_MAX_SIZE", "50"))
HISTORY_MIN_SIZE_LIMIT = 10
HISTORY_MAX_SIZE_LIMIT = 1000
HISTORY_RETENTION_DAYS = 30
HISTORY_DEFAULT_LIMIT = 20

# --- エラー処理 ---
ERROR_LOG_MAX_SIZE = 100
MAX_RETRIES = int(os.environ.get("RANKFINDER_MAX_RETRIES", "3"))
HEALTH_WINDOW_MS = 5 * 60 * 1000  # 直近 5 分
REPORT_WINDOW_MS = 60 * 60 * 1000  # 直近 1 時間

# --- Google 検索 ---
SEARCH_URL_TEMPLATE = "https://www.google.com/search?q={keyword}&num={num}&hl={hl}"
SEARCH_RESULTS_PER_PAGE = 10
SEARCH_LANGUAGE = os.environ.get("RANKFINDER_LANGUAGE", "en")

# --- User-Agent ---
PC_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)
SP_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Mobile Safari/537.36"
)

USER_AGENTS = {
    "pc": PC_USER_AGENT,
    "sp": SP_USER_AGENT,
}

# --- リクエスト設定 ---
REQUEST_INTERVAL_MIN = 1.0
REQUEST_INTERVAL_MAX = 3.0
REQUEST_TIMEOUT = 15  # 秒

# --- デバイス ---
DEVICES = ["pc", "sp"]

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"
LOG_DIR.mkdir(exist_ok=True)
