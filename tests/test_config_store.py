"""Unit tests for the saved generation recipe store."""

import json

import pytest

from server.config_store import CONFIGS_FILENAME, ConfigStore
from shared.errors import InvalidState, NotFound
from shared.schemas import SavedConfig


@pytest.fixture
def store(tmp_path):
    s = ConfigStore(tmp_path)
    s.initialize()
    return s


class TestConfigStore:
    def test_initialize_creates_empty_file(self, store, tmp_path):
        assert json.loads((tmp_path / CONFIGS_FILENAME).read_text()) == []

    @pytest.mark.asyncio
    async def test_add_and_get(self, store):
        saved = await store.add(SavedConfig(name="portrait", parameters={"steps": 30}, model="sdxl"))

        fetched = await store.get("portrait")
        assert fetched.id == saved.id
        assert fetched.parameters == {"steps": 30}
        assert fetched.model == "sdxl"
        assert [c.name for c in await store.list()] == ["portrait"]

    @pytest.mark.asyncio
    async def test_persisted_with_camel_case_keys(self, store, tmp_path):
        await store.add(SavedConfig(name="a", parameters={"cfg_scale": 7}))
        raw = json.loads((tmp_path / CONFIGS_FILENAME).read_text())
        assert raw[0]["name"] == "a"
        assert raw[0]["parameters"] == {"cfg_scale": 7}

        reopened = ConfigStore(tmp_path)
        assert (await reopened.get("a")).parameters == {"cfg_scale": 7}

    @pytest.mark.asyncio
    async def test_duplicate_name(self, store):
        await store.add(SavedConfig(name="a"))
        with pytest.raises(InvalidState):
            await store.add(SavedConfig(name="a"))

    @pytest.mark.asyncio
    async def test_update_ignores_unset_fields(self, store):
        await store.add(SavedConfig(name="a", parameters={"steps": 10}, model="m1"))

        updated = await store.update("a", parameters={"steps": 20}, model=None)

        assert updated.parameters == {"steps": 20}
        assert updated.model == "m1"
        assert (await store.get("a")).parameters == {"steps": 20}

    @pytest.mark.asyncio
    async def test_update_unknown(self, store):
        with pytest.raises(NotFound):
            await store.update("missing", parameters={})

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.add(SavedConfig(name="a"))
        await store.add(SavedConfig(name="b"))

        await store.delete("a")

        assert [c.name for c in await store.list()] == ["b"]
        with pytest.raises(NotFound):
            await store.delete("a")

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, store, tmp_path):
        (tmp_path / CONFIGS_FILENAME).write_text('[{"parameters": 3}]')
        assert await store.list() == []
