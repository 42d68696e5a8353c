"""Inbound completion callbacks from the monitoring provider."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from app.core.dependencies import get_completion_handler
from app.core.exceptions import BadRequestError
from app.schemas.webhook import CompletionAck, CompletionEvent
from app.services.completion_handler import CompletionHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/completion", response_model=CompletionAck)
async def completion_webhook(
    request: Request,
    handler: CompletionHandler = Depends(get_completion_handler),
):
    """Record a task completion. Aggregation continues after the response is sent.

    Malformed payloads get 400 and cause no state change.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequestError("Request body must be JSON")

    try:
        event = CompletionEvent.model_validate(body)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        logger.warning("Rejected malformed completion payload (%s)", ", ".join(fields))
        raise BadRequestError(f"Invalid completion payload: {', '.join(fields)}")

    outcome = await handler.handle(event)
    return CompletionAck(task_id=outcome.task_id, outcome=outcome.outcome, scheduled=outcome.scheduled)
