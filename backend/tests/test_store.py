"""
Tests for workbench/persistence/store.py
Dual-slot snapshot persistence, merge-on-save and import validation.
"""
import asyncio
import json

import pytest

from workbench.errors import ImportRejected, PersistenceReadFailure, PersistenceWriteFailure
from workbench.models import ProjectFile, ProjectSnapshot
from workbench.persistence.slots import MemorySlotStore
from workbench.persistence.store import PersistenceStore, parse_snapshot_document


def pf(path: str, content: str) -> ProjectFile:
    return ProjectFile(path=path, content=content)


def sample_snapshot() -> ProjectSnapshot:
    return ProjectSnapshot(
        files=[
            ProjectFile(path="package.json", content="{}", type="json"),
            ProjectFile(path="src/App.jsx", content="export default 1", type="javascript"),
        ],
        packages=["react", "zod"],
        project_name="Landing Page",
        sandbox_id="sbx_1",
    )


class YieldingSlots(MemorySlotStore):
    """Yields to the loop on every access so unlocked callers would interleave."""

    async def read(self, key):
        await asyncio.sleep(0)
        return await super().read(key)

    async def write(self, key, value):
        await asyncio.sleep(0)
        await super().write(key, value)


class FlakyBackupSlots(MemorySlotStore):
    def __init__(self):
        super().__init__()
        self.fail_backup = False

    async def write(self, key, value):
        if self.fail_backup and key.endswith("project_backup"):
            raise OSError("disk full")
        await super().write(key, value)


class BrokenSlots(MemorySlotStore):
    async def read(self, key):
        raise OSError("storage offline")


class TestSaveFiles:
    """Test merge semantics."""

    @pytest.mark.asyncio
    async def test_merge_keeps_existing_and_replaces_same_path(self, store):
        await store.save_files([pf("a.js", "1"), pf("b.js", "1")], ["react"])
        merged = await store.save_files([pf("b.js", "2"), pf("c.js", "1")], ["react", "zod"])

        assert [f.path for f in merged.files] == ["a.js", "b.js", "c.js"]
        assert merged.file_map()["b.js"].content == "2"
        assert merged.packages == ["react", "zod"]

        loaded = await store.load()
        assert loaded.file_map()["b.js"].content == "2"
        assert loaded.packages == ["react", "zod"]

    @pytest.mark.asyncio
    async def test_save_stamps_time(self, store):
        first = await store.save_files([pf("a.js", "1")])
        second = await store.save_files([pf("a.js", "2")])
        assert second.last_saved_at >= first.last_saved_at

    @pytest.mark.asyncio
    async def test_concurrent_saves_lose_nothing(self):
        store = PersistenceStore(YieldingSlots())
        await asyncio.gather(
            *(store.save_files([pf(f"file{i}.js", str(i))], [f"pkg{i}"]) for i in range(20))
        )
        loaded = await store.load()
        assert len(loaded.files) == 20
        assert len(loaded.packages) == 20

    @pytest.mark.asyncio
    async def test_new_project_uses_default_name(self, slots):
        store = PersistenceStore(slots, default_project_name="Landing Page")
        saved = await store.save_files([pf("a.js", "1")])
        assert saved.project_name == "Landing Page"


class TestDualSlots:
    """Test primary/backup writes and fallback reads."""

    @pytest.mark.asyncio
    async def test_both_slots_written(self, slots, store):
        await store.save_files([pf("a.js", "1")])
        assert slots.data["test:project_state"] == slots.data["test:project_backup"]

    @pytest.mark.asyncio
    async def test_load_falls_back_when_primary_missing(self, slots, store):
        await store.save_files([pf("a.js", "1")])
        del slots.data["test:project_state"]
        loaded = await store.load()
        assert loaded.file_map()["a.js"].content == "1"

    @pytest.mark.asyncio
    async def test_save_load_round_trip(self, store):
        snapshot = sample_snapshot()
        saved = await store.save(snapshot)
        loaded = await store.load()

        assert loaded.model_dump(exclude={"last_saved_at"}) == snapshot.model_dump(
            exclude={"last_saved_at"}
        )
        assert loaded.last_saved_at == saved.last_saved_at

    @pytest.mark.asyncio
    async def test_save_then_primary_lost_serves_backup(self, slots, store):
        snapshot = sample_snapshot()
        await store.save(snapshot)
        await slots.delete("test:project_state")

        loaded = await store.load()
        assert loaded.model_dump(exclude={"last_saved_at"}) == snapshot.model_dump(
            exclude={"last_saved_at"}
        )

    @pytest.mark.asyncio
    async def test_load_falls_back_when_primary_corrupt(self, slots, store):
        await store.save_files([pf("a.js", "1")])
        slots.data["test:project_state"] = "{not json"
        loaded = await store.load()
        assert loaded.file_map()["a.js"].content == "1"

    @pytest.mark.asyncio
    async def test_load_nothing(self, store):
        assert await store.load() is None
        assert await store.exists() is False

    @pytest.mark.asyncio
    async def test_unreadable_storage_raises(self):
        store = PersistenceStore(BrokenSlots())
        with pytest.raises(PersistenceReadFailure):
            await store.load()

    @pytest.mark.asyncio
    async def test_backup_failure_rolls_back_primary(self):
        slots = FlakyBackupSlots()
        store = PersistenceStore(slots)
        await store.save_files([pf("a.js", "1")])

        slots.fail_backup = True
        with pytest.raises(PersistenceWriteFailure):
            await store.save_files([pf("a.js", "2")])

        slots.fail_backup = False
        loaded = await store.load()
        assert loaded.file_map()["a.js"].content == "1"

    @pytest.mark.asyncio
    async def test_backup_failure_on_first_save_leaves_nothing(self):
        slots = FlakyBackupSlots()
        slots.fail_backup = True
        store = PersistenceStore(slots)
        with pytest.raises(PersistenceWriteFailure):
            await store.save_files([pf("a.js", "1")])
        assert slots.data == {}


class TestLifecycleOps:
    @pytest.mark.asyncio
    async def test_set_sandbox(self, store):
        assert await store.set_sandbox("sbx_1") is None
        await store.save_files([pf("a.js", "1")])
        updated = await store.set_sandbox("sbx_1")
        assert updated.sandbox_id == "sbx_1"
        assert (await store.load()).sandbox_id == "sbx_1"

    @pytest.mark.asyncio
    async def test_clear(self, slots, store):
        await store.save_files([pf("a.js", "1")])
        assert await store.exists() is True
        await store.clear()
        assert await store.load() is None
        assert slots.data == {}


class TestExportImport:
    """Test the portable JSON document."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        await store.save_files([pf("src/App.jsx", "export default 1")], ["react"])
        blob = await store.export_snapshot()

        doc = json.loads(blob)
        assert doc["projectName"] == "Generated App"
        assert "lastSavedAt" in doc

        other = PersistenceStore(MemorySlotStore())
        imported = await other.import_snapshot(blob)
        assert imported.file_map()["src/App.jsx"].content == "export default 1"
        assert imported.packages == ["react"]

    @pytest.mark.asyncio
    async def test_export_empty(self, store):
        with pytest.raises(PersistenceReadFailure):
            await store.export_snapshot()

    @pytest.mark.asyncio
    async def test_rejected_import_keeps_state(self, store):
        await store.save_files([pf("a.js", "1")])
        with pytest.raises(ImportRejected):
            await store.import_snapshot(b'{"packages": []}')
        assert (await store.load()).file_map()["a.js"].content == "1"

    @pytest.mark.asyncio
    async def test_empty_object_rejected_empty_files_accepted(self, store):
        with pytest.raises(ImportRejected):
            await store.import_snapshot({})
        assert await store.load() is None

        imported = await store.import_snapshot({"files": []})
        assert imported.files == []
        assert (await store.load()).files == []

    @pytest.mark.parametrize(
        "blob",
        [
            b"\xff\xfe",
            b"not json",
            b"[]",
            b'{"files": "a.js"}',
            b'{"files": [{"path": "a.js"}]}',
            b'{"files": [{"content": "x"}]}',
            b'{"files": [{"path": "a.js", "content": "x", "type": 3}]}',
            b'{"files": [], "packages": [1, 2]}',
        ],
    )
    def test_parse_rejects(self, blob):
        with pytest.raises(ImportRejected):
            parse_snapshot_document(blob)

    def test_parse_ignores_bad_timestamp(self):
        snapshot = parse_snapshot_document(
            {"files": [{"path": "a.js", "content": "x"}], "lastSavedAt": "yesterday"}
        )
        assert isinstance(snapshot, ProjectSnapshot)
        assert snapshot.files[0].type == "text"

    def test_parse_dedupes_paths(self):
        snapshot = parse_snapshot_document(
            {
                "files": [
                    {"path": "a.js", "content": "1"},
                    {"path": "b.js", "content": "1"},
                    {"path": "a.js", "content": "2"},
                ],
                "packages": ["react", "react"],
            }
        )
        assert [f.path for f in snapshot.files] == ["a.js", "b.js"]
        assert snapshot.file_map()["a.js"].content == "2"
        assert snapshot.packages == ["react"]
