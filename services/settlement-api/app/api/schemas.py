"""Pydantic schemas for the REST API request/response models."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.services.access import Role


# ── Charges ───────────────────────────────────────────────────────────────────


class ChargeCreate(BaseModel):
    """Request body for POST /charges."""

    job_id: str = Field(..., min_length=1, max_length=64, examples=["job_8f2c1a"])


class ChargeResponse(BaseModel):
    """Everything the payer's device needs to confirm the charge."""

    client_secret: str
    processor_reference: str
    total_amount_minor: int
    platform_fee_minor: int
    estimated_processor_fee_minor: int
    estimated_net_amount_minor: int
    currency: str

    model_config = {"from_attributes": True}


# ── Receipts ──────────────────────────────────────────────────────────────────


class ReceiptResponse(BaseModel):
    settlement_id: uuid.UUID
    role: Role
    job_id: str
    counterparty_id: str
    headline_label: str = Field(..., description='"Amount paid" or "Amount received"')
    headline_amount_minor: int
    headline_display: str = Field(..., examples=["$25.00"])
    total_amount_minor: int
    platform_fee_minor: int
    processor_fee_minor: int | None
    processor_fee_estimated: bool
    net_amount_minor: int
    currency: str
    status: str
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class ReceiptListResponse(BaseModel):
    sent: list[ReceiptResponse]
    received: list[ReceiptResponse]


# ── Webhooks ──────────────────────────────────────────────────────────────────


class WebhookReceipt(BaseModel):
    settlement_id: uuid.UUID
    status: str
    total_amount_minor: int
    platform_fee_minor: int
    processor_fee_minor: int | None
    processor_fee_estimated: bool
    net_amount_minor: int
    currency: str


class WebhookAck(BaseModel):
    received: bool = True
    receipt: WebhookReceipt | None = None


# ── Errors ────────────────────────────────────────────────────────────────────


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
