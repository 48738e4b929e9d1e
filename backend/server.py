import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load env before the workbench modules read their settings
here = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(os.path.dirname(here), ".env"), override=False)

from workbench.api.inline_fix import router as inline_fix_router
from workbench.api.project import router as project_router
from workbench.api.remediation import router as remediation_router
from workbench.api.sandbox import router as sandbox_router
from workbench.errors import (
    ImportRejected,
    PersistenceReadFailure,
    SandboxProviderError,
    WorkbenchError,
)
from workbench.services import Services, get_services


# Basic logger for server diagnostics (inherits uvicorn handlers)
logging.getLogger("workbench").setLevel(os.getenv("WORKBENCH_LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("workbench.server")

ALLOWED_MODELS: list[str] = [
    "anthropic/claude-sonnet-4.5",
    "openai/gpt-4.1",
    "openai/gpt-4.1-mini",
    "openai/gpt-5-mini",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    services = app.dependency_overrides.get(get_services, get_services)()
    await services.monitor.stop()
    await services.monitor.wait_for_listeners()
    logger.info("workbench shut down")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_ERROR_STATUS: dict[type[WorkbenchError], int] = {
    ImportRejected: 400,
    PersistenceReadFailure: 503,
    SandboxProviderError: 502,
}


@app.exception_handler(WorkbenchError)
async def workbench_error_handler(request: Request, exc: WorkbenchError) -> JSONResponse:
    status = next(
        (code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)), 500
    )
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, str(exc))
    return JSONResponse(status_code=status, content={"ok": False, **exc.to_dict()})


app.include_router(remediation_router)
app.include_router(project_router)
app.include_router(sandbox_router)
app.include_router(inline_fix_router)


@app.get("/api/models")
async def list_models() -> dict[str, Any]:
    """Models offered for inline fixes.

    With a gateway key configured, ALLOWED_MODELS is intersected with what the
    gateway advertises; otherwise it is returned as-is.
    """
    result = list(ALLOWED_MODELS)
    api_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")
    gateway_base = (
        os.getenv("AI_GATEWAY_BASE_URL")
        or os.getenv("OPENAI_BASE_URL")
        or "https://ai-gateway.vercel.sh/v1"
    )
    if not api_key:
        return {"models": result}

    url = f"{gateway_base.rstrip('/')}/models"
    headers = {"Authorization": f"Bearer {api_key}"}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as e:
        logger.warning("gateway model listing failed: %s", str(e))
        return {"models": result}
    available_ids = {str(m.get("id")) for m in (data.get("data") or []) if m.get("id")}
    return {"models": [m for m in ALLOWED_MODELS if m in available_ids] or result}


@app.get("/api/health")
async def health(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {
        "ok": True,
        "storage": services.settings.storage_backend,
        "watching": services.monitor.active_sandbox_id if services.monitor.is_watching else None,
    }


@app.get("/")
def read_root():
    return {"Hello": "App Workbench"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8081")))
