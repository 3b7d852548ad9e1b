from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from blogpay.modules.subscription.api import router as subscription_router
from blogpay.modules.payment.api import router as payment_router
from blogpay.core.database import db_manager
from blogpay.core.dependencies import get_db
from blogpay.core.global_error_handler import register_global_exception_handlers
from blogpay.core.config import settings

app = FastAPI(
    title="Blog Platform Billing API",
    description="Subscription checkout and payment settlement for Midtrans, Xendit and Stripe.",
    version="1.0.0"
)

# Register global exception handlers
register_global_exception_handlers(app)

@app.on_event("shutdown")
async def shutdown_event():
    """Close database connections on shutdown."""
    await db_manager.close()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscription_router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(payment_router, prefix="/api/payments", tags=["payments"])

@app.get("/api/")
async def root():
    return {"message": "Blog Platform Billing API is running"}

@app.get("/api/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok"}
