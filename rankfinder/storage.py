"""永続化バックエンド.

検索履歴・エラーログはキーごとの JSON 値として保存する。
  - MemoryBackend: プロセス内 dict（テスト・一時利用）
  - JsonFileBackend: ローカル JSON ファイル
  - SupabaseBackend: rank_tracker スキーマの kv_store テーブル
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from supabase import create_client

from rankfinder.config import (
    SUPABASE_KV_TABLE,
    SUPABASE_SCHEMA,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)
from rankfinder.errors import StorageError

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...


class MemoryBackend:
    """プロセス内 dict に保存する."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self.data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = value


class JsonFileBackend:
    """1つの JSON ファイルに {key: value} で保存する.

    同一インスタンス内の読み書きは1件ずつ順に実行する。
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, key, value)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"Storage JSON parse error in {self.path}: {e}") from e

    def _write(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class SupabaseBackend:
    """rank_tracker.kv_store (key text primary key, value jsonb) に保存する.

    Supabase client は同期 API のため、呼び出しはスレッドに逃がす。
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not SUPABASE_URL or not SUPABASE_SECRET_KEY:
                raise StorageError("Invalid Supabase configuration: SUPABASE_URL is not set")
            self._client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
        return self._client

    def _table(self):
        """rank_tracker スキーマの kv_store テーブルを参照する."""
        return self.client.schema(SUPABASE_SCHEMA).table(SUPABASE_KV_TABLE)

    async def get(self, key: str) -> Any | None:
        resp = await asyncio.to_thread(
            lambda: self._table().select("value").eq("key", key).limit(1).execute()
        )
        if not resp.data:
            return None
        return resp.data[0].get("value")

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(
            lambda: self._table().upsert({"key": key, "value": value}).execute()
        )
        logger.debug("kv_store に保存: key=%s", key)
