"""
Pydantic Schemas for the Local API

Request bodies and response shapes of the UI-facing endpoints in
kot_engine.main. Domain models live in kot_engine.models.

Version: 1.0.0
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field

from kot_engine.models import EntityId, OrderDraft, OrderItem, Role, generate_kot_number


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreateRequest(BaseModel):
    """Request schema for sending a new order to the kitchen."""
    table_id: Optional[EntityId] = Field(None, examples=[5])
    items: list[OrderItem] = Field(..., min_length=1)
    station: Optional[str] = Field(None, max_length=50, examples=["Grill"])
    waiter_id: Optional[EntityId] = None
    kot_number: Optional[str] = Field(None, max_length=64)

    def to_draft(self) -> OrderDraft:
        return OrderDraft(
            table_id=self.table_id,
            items=self.items,
            station=self.station,
            waiter_id=self.waiter_id,
            kot_number=self.kot_number or generate_kot_number(),
        )


class StatusChangeRequest(BaseModel):
    """Request schema for PUT /api/orders/{id}/status."""
    status: str = Field(..., examples=["preparing"])
    role: Role = Field(..., examples=["kitchen"])
    reason: Optional[str] = Field(None, max_length=500)


class PaymentRequest(BaseModel):
    """Request schema for POST /api/bills/{id}/pay."""
    payment_method: str = Field(
        default="CASH",
        validation_alias=AliasChoices("payment_method", "payment_mode"),
        examples=["CASH", "CARD", "UPI"],
    )
    amount: Optional[Decimal] = Field(None, examples=["188.80"])


class SoundRequest(BaseModel):
    enabled: bool = True


class AcknowledgeRequest(BaseModel):
    badge: Optional[str] = Field(None, examples=["new_orders", "ready_orders"])


class MarkReadRequest(BaseModel):
    alert_id: Optional[str] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    environment: str
    backend: str
    backend_reachable: bool
    online: bool
    queue_depth: int
    views: list[dict[str, Any]] = []


class ErrorResponse(BaseModel):
    """Error response schema."""
    success: bool = False
    error: str
    message: str
    entity_id: Optional[EntityId] = None
    retryable: bool = False
    reconcile: bool = False
