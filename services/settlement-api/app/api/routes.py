"""REST API routes for the settlement service."""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas import (
    ChargeCreate,
    ChargeResponse,
    ErrorResponse,
    ReceiptListResponse,
    ReceiptResponse,
    WebhookAck,
)
from app.core.auth import AuthContext, require_user
from app.core.database import get_session
from app.core.errors import ForbiddenError, NotFoundError
from app.services import receipts
from app.services.charges import initiate_charge
from app.services.processor_client import ProcessorClient
from app.services.reconciler import handle_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


def get_processor() -> ProcessorClient:
    return ProcessorClient()


@router.post(
    "/charges",
    response_model=ChargeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Job not payable or payee not ready"},
        403: {"model": ErrorResponse, "description": "Caller may not pay for this job"},
        404: {"model": ErrorResponse, "description": "Job or payee not found"},
        409: {"model": ErrorResponse, "description": "Job already paid"},
        502: {"model": ErrorResponse, "description": "Payment processor error"},
    },
    summary="Create the charge for an in-progress job",
    tags=["charges"],
)
async def create_charge(
    body: ChargeCreate,
    auth: AuthContext = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    processor: ProcessorClient = Depends(get_processor),
):
    """Create a destination charge splitting the job price between the
    platform and the assigned worker.  The returned ``client_secret`` is
    confirmed on the payer's device; the job is marked complete by the
    caller only after that confirmation succeeds."""
    result = await initiate_charge(session, processor, body.job_id, auth.user_id)
    return result


@router.post(
    "/webhooks/processor",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Signature verification failed"},
        500: {"model": ErrorResponse, "description": "Webhook secret not configured"},
    },
    summary="Receive a signed payment-processor event",
    tags=["webhooks"],
)
async def processor_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    processor: ProcessorClient = Depends(get_processor),
) -> dict:
    raw_body = await request.body()
    return await handle_webhook(session, processor, raw_body, stripe_signature)


@router.get(
    "/settlements",
    response_model=ReceiptListResponse,
    summary="List the caller's payment receipts",
    tags=["settlements"],
)
async def list_settlements(
    auth: AuthContext = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    return await receipts.list_receipts(session, auth.user_id)


@router.get(
    "/settlements/{settlement_id}/receipt",
    response_model=ReceiptResponse,
    responses={404: {"model": ErrorResponse, "description": "Payment not found or not accessible"}},
    summary="Get the caller's receipt for one payment",
    tags=["settlements"],
)
async def get_settlement_receipt(
    settlement_id: uuid.UUID,
    auth: AuthContext = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Missing payments and payments the caller is not a party to answer
    identically, so ids cannot be probed."""
    try:
        return await receipts.get_receipt(session, settlement_id, auth.user_id)
    except (NotFoundError, ForbiddenError) as exc:
        if isinstance(exc, ForbiddenError):
            logger.info("User %s denied receipt %s", auth.user_id, settlement_id)
        raise NotFoundError("Payment not found") from None
