"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import json
import logging

from api.src.db.database import get_db
from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    parse_pull_request_payload,
    build_event,
)
from api.src.services.runs import process_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256 or ""):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    event = build_event(x_github_event or "", payload)
    if event is None:
        return {
            "status": "ignored",
            "event": x_github_event,
            "message": f"Event type '{x_github_event}' not handled"
        }

    if x_github_event == "pull_request":
        webhook_data = parse_pull_request_payload(payload)
    else:
        webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    return await process_event(db, webhook_data, event)

@router.get("/test")
async def test_webhook():
    """Test endpoint to verify webhook route is working."""
    return {"status": "ok", "message": "Webhook endpoint is ready"}
