from fastapi import APIRouter

from salary_advance.api.v1.routers import (
    balance,
    health,
    loans,
    mpesa_webhooks,
    repayments,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loans.router)
api_router.include_router(repayments.router)
api_router.include_router(balance.router)
api_router.include_router(mpesa_webhooks.router)

__all__ = ["api_router"]
