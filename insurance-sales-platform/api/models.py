"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Body of every error raised by the services."""
    error: str
    detail: str

    class Config:
        json_schema_extra = {
            "example": {
                "error": "INVALID_TRANSITION",
                "detail": "sale cannot go from 'pago' to 'proposta'"
            }
        }


# ============================================================================
# Workflow Models
# ============================================================================

class WorkflowRunRequest(BaseModel):
    """Request to run a named workflow."""
    trigger_type: str = Field("manual", description="webhook, schedule or manual")
    trigger_data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "trigger_type": "manual",
                "trigger_data": {"sale_id": "123e4567-e89b-12d3-a456-426614174000"}
            }
        }


class WorkflowRunResponse(BaseModel):
    """Result of a workflow execution."""
    execution_id: str
    workflow_id: str
    result: Dict[str, Any]
    duration_ms: int

    class Config:
        json_schema_extra = {
            "example": {
                "execution_id": "exec_1735732800000_k3j9x0a1b",
                "workflow_id": "policy-emission",
                "result": {"policy_number": "POR12345678", "status": "emitida"},
                "duration_ms": 412
            }
        }


class ExecutionResponse(BaseModel):
    """One execution log row."""
    execution_id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    trigger_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None


# ============================================================================
# Sale Models
# ============================================================================

class SaleCreateRequest(BaseModel):
    """Request to open a sale."""
    client_id: UUID
    product_id: UUID
    value: Decimal = Field(..., ge=0)
    lead_id: Optional[UUID] = None
    seller_id: Optional[UUID] = None
    installments: int = Field(1, ge=1)

    class Config:
        json_schema_extra = {
            "example": {
                "client_id": "123e4567-e89b-12d3-a456-426614174002",
                "product_id": "123e4567-e89b-12d3-a456-426614174003",
                "value": "2000.00",
                "installments": 1
            }
        }


class SaleTransitionRequest(BaseModel):
    """Request to move a sale to a new status."""
    status: str = Field(..., description="pendente, qualificado, proposta, pago or perdido")
    loss_reason: Optional[str] = Field(None, description="Required when status is perdido")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "perdido",
                "loss_reason": "Cliente desistiu"
            }
        }


class SaleResponse(BaseModel):
    sale_id: UUID
    client_id: UUID
    product_id: UUID
    lead_id: Optional[UUID] = None
    seller_id: Optional[UUID] = None
    value: Decimal
    status: str
    installments: int
    loss_reason: Optional[str] = None
    created_at: datetime
    closed_at: Optional[datetime] = None


# ============================================================================
# Payment Models
# ============================================================================

class PaymentOpenRequest(BaseModel):
    """Request to record a pending payment attempt for a sale."""
    sale_id: UUID
    amount: Optional[Decimal] = Field(None, ge=0, description="Defaults to the sale value")
    currency: str = "brl"
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "sale_id": "123e4567-e89b-12d3-a456-426614174000",
                "payment_intent_id": "pi_3Nx...",
                "currency": "brl"
            }
        }


class PaymentResponse(BaseModel):
    payment_id: UUID
    sale_id: UUID
    amount: Decimal
    currency: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None


# ============================================================================
# Bulk Models
# ============================================================================

class BulkTransitionRequest(BaseModel):
    sale_ids: List[UUID] = Field(..., min_length=1)
    status: str
    loss_reason: Optional[str] = None


class BulkIdsRequest(BaseModel):
    ids: List[UUID] = Field(..., min_length=1)


class BulkResponse(BaseModel):
    """Per-id outcome of a bulk operation; one failure never aborts the batch."""
    operation: str
    processed: int
    succeeded: int
    failed: int
    results: List[Dict[str, Any]]

    class Config:
        json_schema_extra = {
            "example": {
                "operation": "transition_sales",
                "processed": 2,
                "succeeded": 1,
                "failed": 1,
                "results": [
                    {"id": "uuid1", "success": True, "error": None, "detail": None, "status": "proposta"},
                    {"id": "uuid2", "success": False, "error": "INVALID_TRANSITION",
                     "detail": "sale cannot go from 'pago' to 'proposta'"}
                ]
            }
        }


# ============================================================================
# Recovery & Outbox Models
# ============================================================================

class RecoveryTriggerRequest(BaseModel):
    lead_id: UUID
    reason: str = Field(..., description="abandono, checkout_expirado or pagamento_falhou")
    max_attempts: int = Field(3, ge=1)


class RecoverySendRequest(BaseModel):
    lead_id: UUID
    reason: Optional[str] = None
    respect_schedule: bool = False


class OutboxBatchResponse(BaseModel):
    claimed: int
    completed: int
    retried: int
    dead_lettered: int
    outcomes: List[Dict[str, Any]]


class WebhookResponse(BaseModel):
    received: bool = True
    event_type: str
    handled: bool
    detail: Dict[str, Any] = Field(default_factory=dict)
