from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.dependencies import get_current_user, get_db, get_payment_config
from blogpay.core.config import PaymentConfig
from blogpay.schemas.subscription_schema import CurrentSubscription, PlanList, PlanPublic
from blogpay.schemas.token_schema import TokenData
from blogpay.modules.subscription.service import subscription_service

router = APIRouter()


@router.get("/plans", response_model=PlanList)
async def get_available_plans(config: PaymentConfig = Depends(get_payment_config)):
    plans = [PlanPublic.model_validate(plan) for plan in subscription_service.list_plans()]
    return PlanList(plans=plans, currency=config.currency)


@router.get("/current", response_model=CurrentSubscription)
async def get_current_subscription(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscription_service.get_current(db, current_user.sub)
    response = CurrentSubscription.model_validate(subscription)
    response.days_remaining = subscription_service.days_remaining(subscription)
    return response
