"""
Inbound messaging webhook.

The gateway posts every message here; the orchestrator runs the full
turn before the response is returned.
"""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.api.webhook_request import WebhookPayload, WebhookResponse
from agent_core.services.orchestrator import MessageOrchestrator

router = APIRouter(prefix="/messaging", tags=["messaging"])
logger = get_logger(__name__)


def get_orchestrator(request: Request) -> MessageOrchestrator:
    return request.app.state.runtime.orchestrator


@router.post("/incoming", response_model=WebhookResponse)
async def incoming_message(payload: WebhookPayload, request: Request):
    """
    Handle one inbound message.

    Returns:
        WebhookResponse on success

    Raises:
        422: Payload failed validation
        500: Unexpected error while processing the message
    """
    orchestrator = get_orchestrator(request)
    try:
        result = await orchestrator.handle_incoming(payload)
    except Exception as e:
        logger.error(
            "Webhook processing failed",
            thread_id=payload.thread_id,
            message_id=payload.message_id,
            error=str(e),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)},
        )

    logger.info(
        "Webhook processed",
        thread_id=result.thread_id,
        action=result.action,
        intent=result.intent,
        replied=result.replied,
    )
    return WebhookResponse(success=True, message=f"Message processed: {result.action}")
