from functools import lru_cache
from typing import AsyncGenerator, List
from sqlalchemy.ext.asyncio import AsyncSession
from blogpay.core.database import db_manager
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from blogpay.core.config import settings, PaymentConfig
from blogpay.modules.payment.gateways import build_adapters
from blogpay.modules.payment.orchestrator import PaymentOrchestrator
from blogpay.schemas import token_schema

# Tokens are issued by the auth service; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/user/token")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in db_manager.get_db_session():
        yield session


DISPATCH_RETRY_POLICY = {"max_retries": 2, "interval_start": 0, "interval_step": 0.2, "interval_max": 0.5}


@lru_cache
def get_payment_config() -> PaymentConfig:
    return PaymentConfig.from_settings(settings)


def _dispatch_side_effects(job_ids: List[int]) -> None:
    from blogpay.tasks.payment_tasks import run_side_effects

    # Jobs that never reach the broker are picked up by the retry sweep
    run_side_effects.apply_async((job_ids,), retry=True, retry_policy=DISPATCH_RETRY_POLICY)


@lru_cache
def get_orchestrator() -> PaymentOrchestrator:
    """One orchestrator per process, built from the resolved configuration."""
    config = get_payment_config()
    return PaymentOrchestrator(config, build_adapters(config), dispatch=_dispatch_side_effects)


# --- User Authentication and Authorization Dependencies ---

async def get_current_user(token: str = Depends(oauth2_scheme)) -> token_schema.TokenData:
    """
    Dependency to get the current user from a JWT token.
    User records live in the auth service, so the verified claims are the user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception

        token_data = token_schema.TokenData(
            sub=str(user_id),
            role=payload.get("role"),
            email=payload.get("email"),
            name=payload.get("name"),
        )
    except JWTError:
        raise credentials_exception

    return token_data


async def get_current_admin(current_user: token_schema.TokenData = Depends(get_current_user)) -> token_schema.TokenData:
    """
    Dependency to ensure the user is an admin.
    """
    if current_user.role not in {"admin", "super_admin"}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The user does not have admin privileges",
        )
    return current_user
