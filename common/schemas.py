from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

class OrderActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # validated by the workflow so a missing field maps to invalid_payload
    order_id: Optional[str] = Field(default=None, alias="orderId")
    action: Optional[str] = None
    reason: Optional[str] = None

class ActionResult(BaseModel):
    status: Literal["ok"] = "ok"
    order_status: str
    balance: Optional[Decimal] = None

class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    title: Optional[str] = None
    role_id: Optional[str] = None
    duration_days: Optional[int] = None

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: Decimal
    status: str
    item_title: Optional[str] = None
    role_id: Optional[str] = None
    duration_days: Optional[int] = None
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[int] = None
    failure_response: Optional[str] = None
    items: List[OrderItemOut] = Field(default_factory=list)

class OrderSummary(BaseModel):
    pending: List[OrderOut]
    stuck: List[OrderOut]

class LedgerConsistency(BaseModel):
    user_id: str
    balance: Decimal
    ledger_balance_after: Optional[Decimal] = None
    consistent: bool

class NotificationEvent(BaseModel):
    event_id: str
    tenant_id: str
    user_id: str
    title: str
    body: str
    author_name: Optional[str] = None
    author_avatar: Optional[str] = None
    created_at: datetime

class AuditEvent(BaseModel):
    event: str
    status: str
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
