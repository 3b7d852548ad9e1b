from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.dependencies import get_current_admin, get_current_user, get_db, get_orchestrator
from blogpay.core.exceptions import UnknownOrder
from blogpay.models.subscription_order_model import Gateway
from blogpay.modules.payment.orchestrator import PaymentOrchestrator
from blogpay.repository.anomaly_repository import anomaly_repository
from blogpay.repository.order_repository import order_repository
from blogpay.schemas import payment_schema
from blogpay.schemas.token_schema import TokenData

router = APIRouter()


async def _handle(gateway: Gateway, request: Request, db: AsyncSession, orchestrator: PaymentOrchestrator) -> dict:
    # Signatures are computed over the exact bytes the gateway sent
    raw_body = await request.body()
    result = await orchestrator.handle_webhook(db, gateway.value, raw_body, request.headers)
    return result.as_response()


@router.post("/webhooks/midtrans", response_model=payment_schema.WebhookAck)
async def midtrans_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await _handle(Gateway.MIDTRANS, request, db, orchestrator)


@router.post("/webhooks/xendit", response_model=payment_schema.WebhookAck)
async def xendit_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await _handle(Gateway.XENDIT, request, db, orchestrator)


@router.post("/webhooks/stripe", response_model=payment_schema.WebhookAck)
async def stripe_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await _handle(Gateway.STRIPE, request, db, orchestrator)


@router.post("/create", response_model=payment_schema.PaymentCreateResponse, status_code=201)
async def create_payment(
    body: payment_schema.PaymentCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: TokenData = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.create_subscription_charge(
        db,
        user_id=current_user.sub,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
        gateway=body.gateway,
        customer_email=current_user.email,
        customer_name=current_user.name,
    )
    return payment_schema.PaymentCreateResponse(**asdict(outcome))


@router.get("/status/{order_id}", response_model=payment_schema.PaymentStatusResponse)
async def get_payment_status(
    order_id: str,
    refresh: bool = Query(False, description="Poll the gateway before answering"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenData = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    order = await order_repository.get_by_order_id(db, order_id)
    if order is None or order.user_id != current_user.sub:
        raise UnknownOrder(f"Order {order_id} not found")
    if refresh and not order.is_terminal:
        await orchestrator.reconcile(db, order_id)
        order = await order_repository.get_by_order_id(db, order_id, fresh=True)
    return order


@router.get("/methods", response_model=payment_schema.PaymentMethodsResponse)
async def list_payment_methods(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    methods = [
        payment_schema.PaymentMethod(
            gateway=name,
            public_key=adapter.credentials.public_key,
            is_production=orchestrator.config.is_production,
        )
        for name, adapter in orchestrator.adapters.items()
    ]
    return payment_schema.PaymentMethodsResponse(methods=methods)


@router.post("/reconcile/{order_id}", response_model=payment_schema.WebhookAck)
async def reconcile_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_admin: TokenData = Depends(get_current_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.reconcile(db, order_id)
    return result.as_response()


@router.get("/anomalies", response_model=List[payment_schema.PaymentAnomalyPublic])
async def list_anomalies(
    kind: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_admin: TokenData = Depends(get_current_admin),
):
    return await anomaly_repository.list_unresolved(db, kind=kind)
