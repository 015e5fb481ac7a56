"""SMS notifications.

Delivery is best-effort everywhere: ``send_sms`` reports success as a bool and
never raises, so a notifier outage cannot fail a lending operation.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Awaitable, Iterable

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.roles import Role
from salary_advance.core.settings import settings
from salary_advance.models.tenant import Tenant
from salary_advance.models.user import User
from salary_advance.services.loan_terms import money

logger = logging.getLogger(__name__)


def format_amount(value) -> str:
    return f"{money(value):,.2f}"


def format_due_date(value) -> str:
    return value.strftime("%d %b %Y")


async def send_sms(
    tenant_id: int,
    phone_number: str | None,
    message: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> bool:
    if not phone_number:
        logger.warning("SMS skipped for tenant=%s: no phone number", tenant_id)
        return False
    if not settings.sms_gateway_url:
        logger.info("SMS gateway not configured; message to %s not sent", phone_number)
        return False

    body = {
        "apikey": settings.sms_api_key,
        "partnerID": settings.sms_partner_id,
        "shortcode": settings.sms_sender_id,
        "mobile": phone_number,
        "message": message,
        "reference": str(tenant_id),
    }
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=settings.sms_timeout_seconds)
    try:
        response = await http.post(settings.sms_gateway_url, json=body)
        response.raise_for_status()
        return True
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.error("SMS delivery to %s failed: %s", phone_number, exc)
        return False
    finally:
        if owns_client:
            await http.aclose()


async def deliver_quietly(notify: Awaitable[Any], description: str) -> bool:
    """Await a notification for work that is already committed.

    Failures are logged and reported as ``False``, never raised. A failed
    lookup can leave the session transaction aborted; callers that keep using
    the session must roll back first.
    """
    try:
        await notify
    except Exception:
        logger.exception("Notification failed: %s", description)
        return False
    return True


async def send_many(tenant_id: int, recipients: Iterable[tuple[str | None, str]]) -> int:
    delivered = 0
    for phone_number, message in recipients:
        if await send_sms(tenant_id, phone_number, message):
            delivered += 1
    return delivered


async def tenant_name(db: AsyncSession, tenant_id: int) -> str:
    tenant = await db.get(Tenant, tenant_id)
    return tenant.name if tenant is not None else "the organization"


async def find_loan_reviewers(db: AsyncSession, tenant_id: int, organization_id: int) -> list[User]:
    """Active ORG_ADMINs of the organization, else the tenant's active ADMINs."""
    org_admins_stmt = select(User).where(
        User.tenant_id == tenant_id,
        User.organization_id == organization_id,
        User.roles.contains([Role.ORG_ADMIN.value]),
        User.status == "ACTIVE",
    )
    reviewers = list((await db.execute(org_admins_stmt)).scalars().all())
    if reviewers:
        return reviewers
    admins_stmt = select(User).where(
        User.tenant_id == tenant_id,
        User.roles.contains([Role.ADMIN.value]),
        User.status == "ACTIVE",
    )
    return list((await db.execute(admins_stmt)).scalars().all())


def loan_pending_message(first_name: str, amount: Decimal, lender: str) -> str:
    return f"Dear {first_name}, your KES {format_amount(amount)} loan at {lender} is pending approval."


def loan_review_request_message(reviewer: str, loan_id: int, amount: Decimal, applicant: str) -> str:
    return (
        f"Hello {reviewer}, new loan request #{loan_id} for KES {format_amount(amount)} "
        f"by {applicant}. Please review."
    )


def loan_approved_message(
    first_name: str,
    amount: Decimal,
    lender: str,
    *,
    interest_description: str,
    transaction_charge: Decimal,
    due_date,
    total_repayable: Decimal,
    auto_approved: bool = False,
) -> str:
    verb = "auto-approved" if auto_approved else "approved"
    return (
        f"Dear {first_name}, your loan of KES {format_amount(amount)} at {lender} has been {verb} "
        f"and disbursement initiated {interest_description}. "
        f"Transaction charge is KES {format_amount(transaction_charge)}. "
        f"Due date: {format_due_date(due_date)}. Total payable KES {format_amount(total_repayable)}."
    )


def loan_rejected_message(first_name: str, amount: Decimal, lender: str) -> str:
    return (
        f"Dear {first_name}, your loan of KES {format_amount(amount)} at {lender} has been rejected. "
        "Contact support for details."
    )


def disbursement_failed_message(first_name: str, amount: Decimal, lender: str, reason: str) -> str:
    return f"Dear {first_name}, your loan of KES {format_amount(amount)} at {lender} could not be disbursed {reason}."


def repayment_received_message(name: str, amount: Decimal, outstanding: Decimal, lender: str) -> str:
    return (
        f"Dear {name}, we have received KES {format_amount(amount)} towards your loan at {lender}. "
        f"Outstanding balance: KES {format_amount(outstanding)}."
    )


def organization_repayment_message(
    admin_name: str,
    organization: str,
    amount: Decimal,
    outstanding: Decimal,
    credited: Decimal,
    lender: str,
) -> str:
    message = (
        f"Dear {admin_name}, {lender} has received KES {format_amount(amount)} from {organization}. "
        f"Outstanding employee loans: KES {format_amount(outstanding)}."
    )
    if credited > 0:
        message += f" KES {format_amount(credited)} added to organization credit."
    return message
