from fastapi import APIRouter, Depends

from salary_advance.core.health import live_payload, ready_payload
from salary_advance.core.limiter import limiter
from salary_advance.db.session import Database, get_database

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
@limiter.exempt
async def liveness() -> dict:
    return await live_payload()


@router.get("/ready")
@router.get("", include_in_schema=False)
@limiter.exempt
async def readiness(database: Database = Depends(get_database)) -> dict:
    return await ready_payload(database)
