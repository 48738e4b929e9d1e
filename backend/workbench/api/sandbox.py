import asyncio
import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from workbench.models import LifecycleState, ProjectFile
from workbench.sandbox.provider import bounded
from workbench.services import Services, get_services
from workbench.sse import SSE_HEADERS, emit_event, lifecycle_sse, sse_format


logger = logging.getLogger("workbench.api.sandbox")

router = APIRouter(prefix="/api", tags=["sandbox"])


class RestoreRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    files: list[ProjectFile] | None = None
    packages: list[str] = Field(default_factory=list)
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


@router.get("/sandbox/{sandbox_id}/status")
async def sandbox_status(sandbox_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    observation = await services.monitor.observe(sandbox_id)
    return observation.model_dump(mode="json")


@router.get("/sandbox/{sandbox_id}/events")
async def sandbox_events(sandbox_id: str, services: Services = Depends(get_services)):
    monitor = services.monitor
    await monitor.watch(sandbox_id)

    async def event_generator() -> AsyncGenerator[str, None]:
        while True:
            try:
                observation = await monitor.check(sandbox_id)
            except Exception as e:
                logger.exception("lifecycle stream failed for %s", sandbox_id)
                yield sse_format(emit_event(sandbox_id, "sandbox_error", error=str(e)))
                return
            yield lifecycle_sse(observation)
            if observation.state is LifecycleState.EXPIRED:
                return
            await asyncio.sleep(monitor.poll_interval)

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@router.post("/sandbox/{sandbox_id}/recover")
async def recover_sandbox(sandbox_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    report = await services.recovery.recover(sandbox_id)
    return report.model_dump(mode="json")


@router.post("/restore-project")
async def restore_project(
    request: RestoreRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    if not request.files:
        raise HTTPException(status_code=400, detail="No files to restore")
    if not request.sandbox_id:
        raise HTTPException(status_code=400, detail="No active sandbox")
    logger.info(
        "restoring %d files into sandbox %s", len(request.files), request.sandbox_id
    )
    report = await services.recovery.restore(request.sandbox_id, request.files, request.packages)
    return report.model_dump(mode="json")


@router.delete("/sandbox/{sandbox_id}")
async def stop_sandbox(sandbox_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Stop a sandbox and drop its countdown and cached executor."""
    if services.monitor.active_sandbox_id == sandbox_id:
        await services.monitor.stop()
    services.sandbox_executors.pop(sandbox_id, None)
    services.monitor.forget(sandbox_id)
    await services.clocks.forget(sandbox_id)
    try:
        await bounded(
            services.provider.stop(sandbox_id),
            services.settings.sandbox_call_timeout_seconds,
            "Stopping sandbox",
        )
    except Exception as e:
        # Still a clean local state; the sandbox may already be stopped or gone
        logger.warning("stop %s failed: %s", sandbox_id, str(e))
        return {"ok": False, "error": str(e)}
    return {"ok": True, "stopped": True}
