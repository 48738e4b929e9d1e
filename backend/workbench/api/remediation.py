import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from workbench.errors import ManualInterventionRequired, RemediationUnavailable
from workbench.models import RemediationPlan
from workbench.services import Services, get_services


logger = logging.getLogger("workbench.api.remediation")

router = APIRouter(prefix="/api", tags=["remediation"])


class ClassifyRequest(BaseModel):
    error: str


class AutoFixRequest(BaseModel):
    """Either raw error text to classify, or a plan proposed earlier.

    With a sandboxId the patch is applied to that sandbox's files instead of
    the local project.
    """

    model_config = ConfigDict(populate_by_name=True)

    error: str | None = None
    plan: RemediationPlan | None = None
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


@router.post("/errors/classify")
async def classify_error(
    request: ClassifyRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    diagnosis = services.executor.diagnose(request.error)
    return diagnosis.model_dump(mode="json")


@router.post("/auto-fix")
async def auto_fix(
    request: AutoFixRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    executor = services.executor_for(request.sandbox_id)

    if request.plan is not None:
        try:
            result = await executor.apply(request.plan)
        except ManualInterventionRequired as e:
            return {
                "ok": False,
                "status": "manual",
                "plan": request.plan.model_dump(mode="json"),
                "error": str(e),
                "reload": False,
            }
        status = "failed" if not result.ok else ("fixed" if result.changed else "already_applied")
        return {
            "ok": result.ok,
            "status": status,
            "plan": request.plan.model_dump(mode="json"),
            "result": result.model_dump(mode="json"),
            "reload": status == "fixed",
        }

    if not request.error:
        return {"ok": False, "status": "unclassified", "error": "error or plan required", "reload": False}

    outcome = await executor.remediate(request.error)
    diagnosis = outcome.diagnosis
    body: dict[str, Any] = {
        "ok": outcome.status in {"fixed", "already_applied", "manual"},
        "status": outcome.status,
        "category": diagnosis.category,
        "rule": diagnosis.rule,
        "description": diagnosis.description,
        "plan": diagnosis.plan.model_dump(mode="json") if diagnosis.plan else None,
        "result": outcome.result.model_dump(mode="json") if outcome.result else None,
        "reload": outcome.reload,
    }
    if outcome.status == "unclassified":
        body["raw"] = request.error
    elif outcome.status == "unavailable":
        body["error"] = str(RemediationUnavailable(diagnosis.rule or "unknown"))
    elif outcome.status == "failed" and outcome.result is not None:
        body["error"] = outcome.result.error
        logger.warning("auto_fix failed for %s: %s", outcome.result.target_file, outcome.result.error)
    return body
