# blogpay/schemas/subscription_schema.py
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


class PlanPublic(BaseModel):
    id: str
    name: str
    description: str
    monthly_price: Decimal
    yearly_price: Decimal
    features: List[str]
    is_popular: bool
    is_free: bool

    class Config:
        from_attributes = True


class PlanList(BaseModel):
    plans: List[PlanPublic]
    currency: str


class CurrentSubscription(BaseModel):
    user_id: str
    plan_id: str
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    current_order_id: Optional[str] = None
    days_remaining: Optional[int] = None

    class Config:
        from_attributes = True
