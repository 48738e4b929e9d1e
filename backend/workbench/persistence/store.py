import asyncio
import json
import logging
from typing import Any, Iterable

from pydantic import ValidationError

from workbench.errors import ImportRejected, PersistenceReadFailure, PersistenceWriteFailure
from workbench.models import ProjectFile, ProjectSnapshot, utcnow
from workbench.persistence.slots import SlotStore


logger = logging.getLogger("workbench.persistence")


PRIMARY_KEY = "project_state"
BACKUP_KEY = "project_backup"


class PersistenceStore:
    """Single owner of the durable project snapshot.

    Every write goes through one ``asyncio.Lock``: ``save``, ``save_files``,
    ``import_snapshot`` and ``clear`` never interleave, and ``load`` waits for
    writes issued before it. Each snapshot is written to a primary and a backup
    slot; ``load`` falls back to the backup when the primary is missing or
    unreadable.
    """

    def __init__(
        self,
        slots: SlotStore,
        *,
        prefix: str = "",
        default_project_name: str = "Generated App",
    ):
        self.slots = slots
        self.primary_key = f"{prefix}:{PRIMARY_KEY}" if prefix else PRIMARY_KEY
        self.backup_key = f"{prefix}:{BACKUP_KEY}" if prefix else BACKUP_KEY
        self.default_project_name = default_project_name
        self._lock = asyncio.Lock()

    # -- reads -----------------------------------------------------------

    async def load(self) -> ProjectSnapshot | None:
        async with self._lock:
            return await self._load_unlocked()

    async def exists(self) -> bool:
        for key in (self.primary_key, self.backup_key):
            try:
                if await self.slots.read(key):
                    return True
            except Exception as e:
                logger.warning("exists: slot %s unreadable: %s", key, str(e))
        return False

    async def export_snapshot(self) -> bytes:
        snapshot = await self.load()
        if snapshot is None:
            raise PersistenceReadFailure("No project to export")
        return json.dumps(snapshot.to_document(), indent=2).encode("utf-8")

    # -- writes ----------------------------------------------------------

    async def save(self, snapshot: ProjectSnapshot) -> ProjectSnapshot:
        async with self._lock:
            return await self._save_unlocked(snapshot)

    async def save_files(
        self, files: Iterable[ProjectFile], packages: Iterable[str] = ()
    ) -> ProjectSnapshot:
        """Merge files and packages into the stored snapshot.

        Existing files are kept, incoming files replace entries with the same
        path (last write wins), and packages are unioned.
        """
        async with self._lock:
            existing = await self._load_unlocked()
            if existing is None:
                existing = ProjectSnapshot(project_name=self.default_project_name)

            by_path: dict[str, ProjectFile] = existing.file_map()
            for f in files:
                by_path[f.path] = f
            merged_packages = list(dict.fromkeys([*existing.packages, *packages]))

            merged = existing.model_copy(
                update={"files": list(by_path.values()), "packages": merged_packages}
            )
            return await self._save_unlocked(merged)

    async def set_sandbox(self, sandbox_id: str | None) -> ProjectSnapshot | None:
        async with self._lock:
            existing = await self._load_unlocked()
            if existing is None:
                return None
            return await self._save_unlocked(existing.model_copy(update={"sandbox_id": sandbox_id}))

    async def clear(self) -> None:
        async with self._lock:
            await self.slots.delete(self.primary_key)
            await self.slots.delete(self.backup_key)
        logger.info("project cleared")

    async def import_snapshot(self, blob: bytes | str | dict[str, Any]) -> ProjectSnapshot:
        """Validate an external document and store it.

        Raises ImportRejected without touching stored state unless the document
        carries a well-formed ``files`` list.
        """
        snapshot = parse_snapshot_document(blob)
        saved = await self.save(snapshot)
        logger.info("imported project with %d files", len(saved.files))
        return saved

    # -- internals -------------------------------------------------------

    async def _load_unlocked(self) -> ProjectSnapshot | None:
        read_errors: list[str] = []
        for key in (self.primary_key, self.backup_key):
            try:
                raw = await self.slots.read(key)
            except Exception as e:
                logger.warning("load: slot %s unreadable: %s", key, str(e))
                read_errors.append(f"{key}: {e}")
                continue
            if not raw:
                continue
            try:
                snapshot = ProjectSnapshot.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("load: slot %s holds an invalid snapshot: %s", key, str(e))
                continue
            if key == self.backup_key:
                logger.info("load: serving project from backup slot")
            return snapshot
        if len(read_errors) == 2:
            raise PersistenceReadFailure("; ".join(read_errors))
        return None

    async def _save_unlocked(self, snapshot: ProjectSnapshot) -> ProjectSnapshot:
        stamped = snapshot.model_copy(update={"last_saved_at": utcnow()})
        try:
            serialized = json.dumps(stamped.to_document())
        except (TypeError, ValueError) as e:
            raise PersistenceWriteFailure(f"Could not serialize project: {e}") from e

        try:
            previous = await self.slots.read(self.primary_key)
        except Exception:
            previous = None

        try:
            await self.slots.write(self.primary_key, serialized)
        except Exception as e:
            logger.error("save: primary write failed: %s", str(e))
            raise PersistenceWriteFailure(f"Primary write failed: {e}") from e

        try:
            await self.slots.write(self.backup_key, serialized)
        except Exception as e:
            logger.error("save: backup write failed, rolling back primary: %s", str(e))
            try:
                if previous is None:
                    await self.slots.delete(self.primary_key)
                else:
                    await self.slots.write(self.primary_key, previous)
            except Exception as rollback_error:
                logger.error("save: primary rollback failed: %s", str(rollback_error))
            raise PersistenceWriteFailure(f"Backup write failed: {e}") from e

        logger.info(
            "project saved: files=%d packages=%d", len(stamped.files), len(stamped.packages)
        )
        return stamped


def parse_snapshot_document(blob: bytes | str | dict[str, Any]) -> ProjectSnapshot:
    if isinstance(blob, (bytes, bytearray)):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ImportRejected("Project file is not UTF-8 text") from e
    if isinstance(blob, str):
        try:
            doc = json.loads(blob)
        except json.JSONDecodeError as e:
            raise ImportRejected(f"Project file is not valid JSON: {e.msg}") from e
    else:
        doc = blob

    if not isinstance(doc, dict):
        raise ImportRejected("Invalid project file format: expected an object")
    files = doc.get("files")
    if not isinstance(files, list):
        raise ImportRejected("Invalid project file format: 'files' must be a list")
    for i, entry in enumerate(files):
        if not isinstance(entry, dict):
            raise ImportRejected(f"Invalid file entry at index {i}")
        if not isinstance(entry.get("path"), str) or not entry["path"]:
            raise ImportRejected(f"File entry {i} is missing a path")
        if not isinstance(entry.get("content"), str):
            raise ImportRejected(f"File entry {i} ({entry['path']}) is missing content")
        if "type" in entry and not isinstance(entry["type"], str):
            raise ImportRejected(f"File entry {i} ({entry['path']}) has a non-string type")
    packages = doc.get("packages", [])
    if not isinstance(packages, list) or not all(isinstance(p, str) for p in packages):
        raise ImportRejected("Invalid project file format: 'packages' must be a list of strings")

    # lastSavedAt is refreshed on save, so an unparseable one is not a reason to reject
    cleaned = {k: v for k, v in doc.items() if k not in ("lastSavedAt", "last_saved_at")}
    try:
        return ProjectSnapshot.model_validate(cleaned)
    except ValidationError as e:
        raise ImportRejected(f"Invalid project file format: {e.error_count()} error(s)") from e
