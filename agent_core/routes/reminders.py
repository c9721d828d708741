"""
Scheduler-triggered jobs.
"""

from dataclasses import asdict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from agent_core.infrastructure.observability.logging import get_logger
from agent_core.services.project_service import ProjectServiceError

router = APIRouter(prefix="/cron", tags=["cron"])
logger = get_logger(__name__)


@router.post("/project-reminders")
async def project_reminders(request: Request):
    """
    Send a reminder to every chat with live projects.

    Raises:
        503: Conversation store unavailable
    """
    service = request.app.state.runtime.reminders
    try:
        stats = await service.send_reminders()
    except ProjectServiceError as e:
        logger.error("Project reminder run failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "error": str(e)},
        )

    return {
        "success": True,
        "message": "Project reminders processed successfully",
        "stats": asdict(stats),
    }
