"""
Inbound email webhook

POST /webhooks/inbound-email
POST /webhooks/inbound-email/{secret}

The provider retries any non-2xx answer, so every request is acknowledged
with 204: bad secrets, malformed bodies and broker outages are logged and
dropped here, and message processing happens in the process_inbound_email
Celery task.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Request, Response
from pydantic import ValidationError

from app.config import get_settings
from app.schemas.inbound import InboundWebhookPayload
from app.services.screening_queue import SCREENING_QUEUE

logger = logging.getLogger(__name__)

router = APIRouter()


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def is_authorized(request: Request, path_secret: Optional[str]) -> bool:
    expected = get_settings().inbound_webhook_secret
    if not expected:
        return True
    supplied = path_secret or _bearer_token(request) or ""
    return hmac.compare_digest(supplied.encode(), expected.encode())


def enqueue_inbound_email(payload: dict) -> None:
    from app.tasks.ingestion import process_inbound_email

    process_inbound_email.apply_async(args=[payload], queue=SCREENING_QUEUE)


async def _handle(request: Request, secret: Optional[str]) -> Response:
    if not is_authorized(request, secret):
        logger.warning("Inbound email webhook called with an invalid secret")
        return Response(status_code=204)

    try:
        body = await request.json()
        payload = InboundWebhookPayload.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Malformed inbound email payload: {e}")
        return Response(status_code=204)

    if not payload.items:
        return Response(status_code=204)

    try:
        enqueue_inbound_email(payload.model_dump(by_alias=True))
        logger.info(f"Queued inbound email batch of {len(payload.items)} message(s)")
    except Exception as e:
        logger.error(f"Could not queue inbound email batch: {e}")

    return Response(status_code=204)


@router.post("/inbound-email", status_code=204)
async def inbound_email(request: Request):
    return await _handle(request, None)


@router.post("/inbound-email/{secret}", status_code=204)
async def inbound_email_with_secret(secret: str, request: Request):
    return await _handle(request, secret)
