# blogpay/schemas/payment_schema.py
from pydantic import BaseModel
from typing import List, Optional, Literal
from datetime import datetime
from decimal import Decimal


class PaymentCreateRequest(BaseModel):
    plan_id: str
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    gateway: Literal["midtrans", "xendit", "stripe"] = "midtrans"


class PaymentCreateResponse(BaseModel):
    order_id: str
    gateway: str
    status: str
    amount: Decimal
    currency: str
    redirect_target: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    public_key: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    order_id: str
    gateway: str
    status: str
    plan_id: str
    billing_cycle: str
    amount: Decimal
    currency: str
    gateway_transaction_id: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentMethod(BaseModel):
    gateway: str
    public_key: Optional[str] = None
    is_production: bool


class PaymentMethodsResponse(BaseModel):
    methods: List[PaymentMethod]


class WebhookAck(BaseModel):
    status: str = "OK"
    result: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    message: Optional[str] = None


class PaymentAnomalyPublic(BaseModel):
    id: int
    kind: str
    gateway: Optional[str] = None
    order_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    detail: str
    created_at: datetime

    class Config:
        from_attributes = True
