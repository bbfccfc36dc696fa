"""storage モジュールのテスト（Supabase はモック）."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from rankfinder.errors import StorageError
from rankfinder.storage import JsonFileBackend, MemoryBackend, SupabaseBackend


def _client_with_chain(data=None):
    """client.schema().table() 以降のチェーンを同じモックで返すクライアント."""
    client = MagicMock()
    chain = MagicMock()
    client.schema.return_value.table.return_value = chain
    for method in ("select", "eq", "limit", "upsert"):
        getattr(chain, method).return_value = chain
    chain.execute.return_value = MagicMock(data=data or [])
    return client, chain


class TestMemoryBackend:
    """MemoryBackend のテスト."""

    @pytest.mark.asyncio
    async def test_get_set(self):
        backend = MemoryBackend()
        assert await backend.get("k") is None

        await backend.set("k", [1, 2])
        assert await backend.get("k") == [1, 2]


class TestJsonFileBackend:
    """JsonFileBackend のテスト."""

    @pytest.mark.asyncio
    async def test_roundtrip_keeps_other_keys(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        backend = JsonFileBackend(path)

        await backend.set("history", [{"keyword": "ノニジュース"}])
        await backend.set("errors", [])

        assert await backend.get("history") == [{"keyword": "ノニジュース"}]
        assert json.loads(path.read_text(encoding="utf-8")) == {
            "history": [{"keyword": "ノニジュース"}],
            "errors": [],
        }

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        backend = JsonFileBackend(tmp_path / "none.json")
        assert await backend.get("history") is None

    @pytest.mark.asyncio
    async def test_broken_file(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(StorageError, match="parse"):
            await JsonFileBackend(path).get("history")

    @pytest.mark.asyncio
    async def test_concurrent_sets(self, tmp_path):
        """並行して書き込んでも全てのキーが残り、ファイルが壊れないこと."""
        path = tmp_path / "store.json"
        backend = JsonFileBackend(path)

        await asyncio.gather(*(backend.set(f"key{i}", [i]) for i in range(30)))

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {f"key{i}": [i] for i in range(30)}


class TestSupabaseBackend:
    """SupabaseBackend のテスト."""

    @pytest.mark.asyncio
    async def test_get(self):
        client, chain = _client_with_chain(data=[{"value": [{"id": "hist_1"}]}])

        value = await SupabaseBackend(client).get("google_keyword_rank_history")

        client.schema.assert_called_with("rank_tracker")
        client.schema.return_value.table.assert_called_with("kv_store")
        chain.eq.assert_called_once_with("key", "google_keyword_rank_history")
        assert value == [{"id": "hist_1"}]

    @pytest.mark.asyncio
    async def test_get_missing(self):
        client, _ = _client_with_chain(data=[])
        assert await SupabaseBackend(client).get("k") is None

    @pytest.mark.asyncio
    async def test_set(self):
        client, chain = _client_with_chain()

        await SupabaseBackend(client).set("k", {"a": 1})

        chain.upsert.assert_called_once_with({"key": "k", "value": {"a": 1}})
        chain.execute.assert_called_once()
