import json
import time
from typing import Any

from workbench.models import LifecycleObservation, LifecycleState


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def emit_event(
    task_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "task_id": task_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


_STATE_EVENT_TYPES = {
    LifecycleState.ACTIVE: "sandbox_status",
    LifecycleState.WARNING: "sandbox_warning",
    LifecycleState.EXPIRED: "sandbox_expired",
}


def format_countdown(seconds: float) -> str:
    total = max(int(seconds), 0)
    return f"{total // 60}:{total % 60:02d}"


def lifecycle_sse(observation: LifecycleObservation) -> str:
    data = observation.model_dump(mode="json")
    data["countdown"] = format_countdown(observation.remaining_seconds)
    return sse_format(
        emit_event(observation.sandbox_id, _STATE_EVENT_TYPES[observation.state], data=data)
    )
