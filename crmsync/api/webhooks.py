"""
CRM webhook intake.

Payloads are validated and queued; a worker applies them later, so the
CRM gets its acknowledgement without waiting on the local store.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session

from crmsync.api.deps import current_services
from crmsync.core.exceptions import SyncValidationError
from crmsync.core.logging_config import get_logger
from crmsync.db import get_session
from crmsync.services.container import SyncServices
from crmsync.services.execution import enqueue_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/crm", status_code=status.HTTP_202_ACCEPTED)
async def crm_webhook(
    request: Request,
    services: SyncServices = Depends(current_services),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON")

    if not services.settings.WEBHOOK_AUTO_SYNC:
        return {"status": "ignored", "reason": "auto sync disabled"}

    try:
        task = enqueue_webhook(session, payload)
    except SyncValidationError as e:
        logger.warning("webhook_payload_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return {"status": "queued", "task_id": task.id}
