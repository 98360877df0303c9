import logging
from functools import lru_cache
from typing import Optional

import redis
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from src.core.config import CASH_IN_SIMULATION_DELAY, PAYMENT_SIMULATION_DELAY, REDIS_URL
from src.core.database import get_db
from src.services.account_service import AccountService, Caller
from src.services.exceptions import InventoryError, PermissionDenied
from src.services.payment_service import PaymentSimulator

logger = logging.getLogger(__name__)


def http_error(error: InventoryError) -> HTTPException:
    """Translate a domain error into the HTTP error the client sees"""
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": str(error)},
    )


def get_caller(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Caller:
    """Identity supplied by the upstream identity provider"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return AccountService(db).get_caller(x_user_id)


def require_staff(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_staff:
        raise http_error(PermissionDenied("Staff access required"))
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise http_error(PermissionDenied("Admin access required"))
    return caller


def get_payment_simulator() -> PaymentSimulator:
    return PaymentSimulator(delay=PAYMENT_SIMULATION_DELAY)


def get_cash_in_simulator() -> PaymentSimulator:
    return PaymentSimulator(delay=CASH_IN_SIMULATION_DELAY)


@lru_cache(maxsize=1)
def get_redis_client():
    """Shared Redis client, or None when no REDIS_URL is configured"""
    if not REDIS_URL:
        return None
    logger.info("Using Redis product locks for order placement")
    return redis.Redis.from_url(REDIS_URL)
