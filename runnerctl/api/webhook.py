"""
POST /webhook
Receives signed GitHub deliveries and hands workflow_job events to the
lifecycle controller.

Response policy:
    - 401 only for a bad signature.
    - 200 for everything else, including discarded and failed events, so
      GitHub does not start a retry storm. The body says what happened.
"""
import logging

from fastapi import APIRouter, HTTPException, Request

from runnerctl.core.config import WEBHOOK_SECRET
from runnerctl.core.errors import (
    InvalidSignature,
    ProvisioningFailure,
    RunnerControllerError,
    UnsupportedEventKind,
    ValidationError,
)
from runnerctl.services.event_validator import validate_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def receive_webhook(request: Request):
    body = await request.body()

    try:
        event = validate_event(body, request.headers, WEBHOOK_SECRET)
    except InvalidSignature as e:
        logger.warning("Rejected webhook delivery: %s", e)
        raise HTTPException(status_code=401, detail="Invalid signature")
    except UnsupportedEventKind as e:
        logger.info("Discarding delivery: %s", e)
        return {"status": "discarded", "reason": str(e)}
    except ValidationError as e:
        logger.error("Discarding unparseable delivery: %s", e)
        return {"status": "discarded", "reason": str(e)}

    controller = request.app.state.controller
    try:
        outcome = await controller.handle(event)
    except ProvisioningFailure as e:
        # already logged with run/runner by the controller
        return {"status": "provisioning_failed", "run_id": e.run_id, "runner": e.runner_name}
    except RunnerControllerError as e:
        logger.error("[run=%s] Event handling failed: %s", event.run_id, e)
        return {"status": "error", "run_id": event.run_id}
    except Exception:
        logger.exception("[run=%s] Unexpected error handling '%s'", event.run_id, event.action)
        return {"status": "error", "run_id": event.run_id}

    return {"status": outcome, "run_id": event.run_id}
