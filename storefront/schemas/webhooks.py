"""Gateway webhook schemas."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the gateway for every verified event."""

    ok: bool = True
    event: str = Field(..., description="Gateway event name")
    processed: bool = Field(..., description="Whether the event changed or confirmed an order")
    duplicate: bool = Field(False, description="Event was already recorded")
    order_id: Optional[UUID] = None
    order_status: Optional[str] = None
    reason: Optional[str] = Field(None, description="Why a verified event was not processed")
