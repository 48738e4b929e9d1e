import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict

from fastapi import APIRouter, Depends
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from workbench.editing import apply_range_edit, display_code_with_line_numbers
from workbench.files import normalize_path
from workbench.services import Services, get_services


logger = logging.getLogger("workbench.api.inline_fix")

router = APIRouter(prefix="/api/inline-fix", tags=["inline-fix"])


@lru_cache(maxsize=1)
def get_llm_client() -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN") or os.getenv("OPENAI_API_KEY"),
        base_url=os.getenv("AI_GATEWAY_BASE_URL") or os.getenv("OPENAI_BASE_URL") or "https://ai-gateway.vercel.sh/v1",
    )


class InlineFixRequest(BaseModel):
    """Ask for a targeted edit, typically for a manual remediation plan."""

    file_path: str
    start_line: int = Field(..., ge=1)
    end_line: int = Field(..., ge=1)
    instruction: str
    selected_code: str = ""
    model: str | None = None


class InlineFixResponse(BaseModel):
    ok: bool
    file_path: str | None = None
    new_file_content: str | None = None
    details: Dict[str, Any] | None = None
    error: str | None = None


EDIT_TOOL = {
    "type": "function",
    "function": {
        "name": "edit_code",
        "description": "Replace exact text within [find_start_line, find_end_line] of the current file.",
        "parameters": {
            "type": "object",
            "properties": {
                "find": {"type": "string", "description": "Exact existing text to replace within the range"},
                "find_start_line": {"type": "integer", "minimum": 1},
                "find_end_line": {"type": "integer", "minimum": 1},
                "replace": {"type": "string", "description": "Replacement text (no line numbers)"},
            },
            "required": ["find", "find_start_line", "find_end_line", "replace"],
        },
    },
}


def build_messages(req: InlineFixRequest, code: str) -> list[dict[str, str]]:
    system = (
        "You fix errors in a generated web app. Apply a precise edit to the file within the given line range.\n"
        f"File: {req.file_path}\n"
        f"Allowed edit range: lines {req.start_line}-{req.end_line}\n"
        "Only operate within the range and keep formatting and indentation.\n"
        "Call the edit_code tool with: find, find_start_line, find_end_line, replace.\n"
    )
    selection = f"\nSelected text:\n{req.selected_code}\n" if req.selected_code else ""
    return [
        {"role": "system", "content": system},
        {
            "role": "user",
            "content": (
                f"Instruction: {req.instruction}\n\n"
                f"File contents with line numbers:\n{display_code_with_line_numbers(code)}{selection}"
            ),
        },
    ]


@router.post("")
async def inline_fix(
    req: InlineFixRequest, services: Services = Depends(get_services)
) -> InlineFixResponse:
    path = normalize_path(req.file_path)
    try:
        code = await services.files.read(path)
    except (FileNotFoundError, ValueError):
        return InlineFixResponse(ok=False, error=f"File not found: {req.file_path}")

    model = req.model or os.getenv("DEFAULT_MODEL") or "anthropic/claude-sonnet-4.5"
    try:
        completion = await get_llm_client().chat.completions.create(
            model=model,
            messages=build_messages(req, code),
            tools=[EDIT_TOOL],
            tool_choice="required",
        )
    except Exception as e:
        logger.exception("inline_fix completion failed")
        return InlineFixResponse(ok=False, error=str(e))

    msg = completion.choices[0].message if completion.choices else None
    tool_calls = getattr(msg, "tool_calls", None) if msg else None
    if not tool_calls:
        return InlineFixResponse(ok=False, error="Model did not provide an edit_code tool call.")

    try:
        args = json.loads(tool_calls[0].function.arguments or "{}")
    except json.JSONDecodeError:
        args = {}
    if not isinstance(args, dict):
        args = {}
    args.setdefault("find_start_line", req.start_line)
    args.setdefault("find_end_line", req.end_line)
    if "find" not in args and req.selected_code:
        args["find"] = req.selected_code

    result = apply_range_edit(code, args)
    if "new_code" not in result:
        return InlineFixResponse(ok=False, file_path=path, error=result.get("error"), details=result)
    # Suggestion only; the caller decides whether to save it
    return InlineFixResponse(
        ok=True,
        file_path=path,
        new_file_content=result["new_code"],
        details={k: v for k, v in result.items() if k != "new_code"},
    )
