import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field

from workbench.content_cleaner import clean_for_path
from workbench.errors import ImportRejected, PersistenceWriteFailure
from workbench.files import file_type_for, normalize_path
from workbench.models import ProjectFile
from workbench.services import Services, get_services


logger = logging.getLogger("workbench.api.project")

router = APIRouter(prefix="/api", tags=["project"])


class SaveFilesRequest(BaseModel):
    """Files produced by one generation step."""

    files: list[ProjectFile]
    packages: list[str] = Field(default_factory=list)
    clean: bool = False


class SaveFileRequest(BaseModel):
    file: str | None = None
    content: str | None = None


@router.get("/project")
async def get_project(services: Services = Depends(get_services)) -> dict[str, Any]:
    snapshot = await services.store.load()
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No saved project")
    return snapshot.to_document()


@router.delete("/project")
async def clear_project(services: Services = Depends(get_services)) -> dict[str, Any]:
    await services.store.clear()
    return {"ok": True}


@router.post("/project/files")
async def save_files(
    request: SaveFilesRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    files = request.files
    if request.clean:
        files = [
            f.model_copy(update={"content": clean_for_path(f.path, f.content)}) for f in files
        ]
    snapshot = await services.store.save_files(files, request.packages)
    return {
        "ok": True,
        "files": len(snapshot.files),
        "packages": snapshot.packages,
        "lastSavedAt": snapshot.last_saved_at.isoformat(),
    }


@router.post("/save-file")
async def save_file(
    request: SaveFileRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    if not request.file or request.content is None:
        raise HTTPException(status_code=400, detail="File and content required")
    path = normalize_path(request.file)
    try:
        await services.files.write(path, request.content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError as e:
        logger.error("save_file[%s] write failed: %s", path, str(e))
        raise HTTPException(status_code=500, detail=str(e))

    try:
        await services.store.save_files(
            [ProjectFile(path=path, content=request.content, type=file_type_for(path))]
        )
    except PersistenceWriteFailure as e:
        # The file itself was written; report that the snapshot is behind
        logger.error("save_file[%s] snapshot update failed: %s", path, str(e))
        return {"success": True, "persisted": False, "error": str(e)}
    return {"success": True, "persisted": True, "message": "File saved successfully"}


@router.get("/file-content")
async def file_content(file: str | None = None, services: Services = Depends(get_services)):
    if not file:
        raise HTTPException(status_code=400, detail="File parameter required")
    try:
        content = await services.files.read(file)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PlainTextResponse(content)


@router.get("/project/export")
async def export_project(services: Services = Depends(get_services)) -> Response:
    if not await services.store.exists():
        raise HTTPException(status_code=404, detail="No project to export")
    blob = await services.store.export_snapshot()
    filename = f"project-{int(time.time() * 1000)}.json"
    return Response(
        content=blob,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/project/import")
async def import_project(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:
    blob = await request.body()
    try:
        snapshot = await services.store.import_snapshot(blob)
    except ImportRejected as e:
        logger.info("import rejected: %s", str(e))
        raise
    return {"ok": True, "files": len(snapshot.files), "packages": len(snapshot.packages)}
