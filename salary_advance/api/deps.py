"""Request dependencies: the authenticated caller and the database session.

Access tokens are issued by the identity service; this service only verifies
them and reads the caller's tenant, organization, employee and roles from the
claims.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.context import set_tenant_id
from salary_advance.core.roles import Caller
from salary_advance.core.security import decode_token
from salary_advance.db.session import get_db

bearer_scheme = HTTPBearer(auto_error=False)


def _int_claim(payload: dict, name: str, *, required: bool = False) -> int | None:
    value = payload.get(name)
    if value in (None, ""):
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Token missing {name}")
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {name} claim"
        ) from exc


def caller_from_claims(payload: dict) -> Caller:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Caller.from_roles(
        user_id=_int_claim(payload, "sub", required=True),
        tenant_id=_int_claim(payload, "tenant_id", required=True),
        organization_id=_int_claim(payload, "organization_id"),
        employee_id=_int_claim(payload, "employee_id"),
        roles=roles,
    )


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Caller:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_token(credentials.credentials, expected_type="access")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    caller = caller_from_claims(payload)
    set_tenant_id(caller.tenant_id)
    return caller


async def get_db_session(db: AsyncSession = Depends(get_db)) -> AsyncSession:
    return db
