"""Outbound M-Pesa calls.

Nothing in this module raises to its caller: every failure comes back as a
``GatewayResult`` with ``error`` set and the caller's conversation id attached,
so the disbursement orchestrator can branch without exception handling.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import uuid4

import httpx

from salary_advance.core.crypto import CertificateError, encrypt_security_credential
from salary_advance.core.settings import settings
from salary_advance.services import mpesa_token
from salary_advance.services.mpesa_config import MpesaCredentials
from salary_advance.utils.phone import InvalidPhoneNumber, normalize_msisdn

logger = logging.getLogger(__name__)

B2C_COMMAND = "BusinessPayment"
BALANCE_COMMAND = "AccountBalance"
SHORTCODE_IDENTIFIER = "4"


@dataclass
class GatewayResult:
    originator_conversation_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.error is None and str(self.payload.get("ResponseCode")) == "0"

    @property
    def conversation_id(self) -> str | None:
        return self.payload.get("ConversationID")

    @property
    def description(self) -> str | None:
        return (
            self.error
            or self.payload.get("ResponseDescription")
            or self.payload.get("errorMessage")
        )

    def as_dict(self) -> dict[str, Any]:
        merged = dict(self.payload)
        merged["OriginatorConversationID"] = self.originator_conversation_id
        if self.error:
            merged["error"] = self.error
        return merged


def generate_conversation_id() -> str:
    return str(uuid4())


def callback_url(path: str) -> str:
    return f"{settings.mpesa_callback_base_url.rstrip('/')}/{path.lstrip('/')}"


def _gateway_amount(amount) -> int:
    # The gateway accepts whole currency units only
    return int(Decimal(str(amount)).to_integral_value(rounding=ROUND_HALF_UP))


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text[:500] or f"HTTP {response.status_code}"}
    return data if isinstance(data, dict) else {"error": str(data)}


async def _post(
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    token: str,
    conversation_id: str,
) -> GatewayResult:
    started = time.perf_counter()
    try:
        response = await client.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=settings.mpesa_request_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        logger.error("M-Pesa request to %s failed: %s", url, exc)
        return GatewayResult(conversation_id, error=str(exc) or exc.__class__.__name__)
    finally:
        logger.info(
            "M-Pesa request %s took %.0fms", conversation_id, (time.perf_counter() - started) * 1000
        )

    if response.is_error:
        payload = _error_payload(response)
        return GatewayResult(
            conversation_id,
            payload=payload,
            error=payload.get("errorMessage") or payload.get("error") or f"HTTP {response.status_code}",
        )
    try:
        payload = response.json()
    except ValueError:
        return GatewayResult(conversation_id, error="Gateway returned a non-JSON response")
    if not isinstance(payload, dict):
        return GatewayResult(conversation_id, error="Gateway returned an unexpected response shape")
    return GatewayResult(conversation_id, payload=payload)


def _credential_errors(credentials: MpesaCredentials | None) -> str | None:
    if credentials is None:
        return "Missing M-Pesa B2C configuration"
    missing = credentials.missing_fields()
    if missing:
        return f"Missing M-Pesa B2C configuration: {', '.join(missing)}"
    return None


async def disburse(
    phone_number: str,
    amount,
    originator_conversation_id: str,
    credentials: MpesaCredentials | None,
    *,
    remarks: str = "Loan Disbursement",
    client: httpx.AsyncClient | None = None,
) -> GatewayResult:
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        value = Decimal("0")
    if value <= 0:
        return GatewayResult(originator_conversation_id, error="Invalid amount")
    try:
        msisdn = normalize_msisdn(phone_number)
    except InvalidPhoneNumber as exc:
        return GatewayResult(originator_conversation_id, error=str(exc))
    config_error = _credential_errors(credentials)
    if config_error:
        return GatewayResult(originator_conversation_id, error=config_error)
    try:
        security_credential = encrypt_security_credential(credentials.security_credential)
    except (CertificateError, OSError, ValueError) as exc:
        logger.error("Security credential encryption failed: %s", exc)
        return GatewayResult(originator_conversation_id, error="Unable to encrypt security credential")

    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        token = await mpesa_token.get_access_token(credentials, client=http)
        if not token:
            return GatewayResult(originator_conversation_id, error="Failed to fetch M-Pesa access token")
        body = {
            "OriginatorConversationID": originator_conversation_id,
            "InitiatorName": credentials.initiator_name,
            "SecurityCredential": security_credential,
            "CommandID": B2C_COMMAND,
            "Amount": _gateway_amount(value),
            "PartyA": credentials.short_code,
            "PartyB": msisdn,
            "Remarks": remarks,
            "QueueTimeOutURL": callback_url("b2c-timeout"),
            "ResultURL": callback_url("b2c-result"),
            "Occasion": "LoanDisbursement",
        }
        logger.info("Initiating B2C payment originator_conversation_id=%s", originator_conversation_id)
        return await _post(http, settings.mpesa_b2c_url, body, token, originator_conversation_id)
    finally:
        if owns_client:
            await http.aclose()


async def query_account_balance(
    credentials: MpesaCredentials | None,
    *,
    client: httpx.AsyncClient | None = None,
) -> GatewayResult:
    """Ask the gateway to post the account balance to the tenant's balance callback."""
    originator_conversation_id = generate_conversation_id()
    config_error = _credential_errors(credentials)
    if config_error:
        return GatewayResult(originator_conversation_id, error=config_error)
    try:
        security_credential = encrypt_security_credential(credentials.security_credential)
    except (CertificateError, OSError, ValueError) as exc:
        logger.error("Security credential encryption failed: %s", exc)
        return GatewayResult(originator_conversation_id, error="Unable to encrypt security credential")

    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        token = await mpesa_token.get_access_token(credentials, client=http)
        if not token:
            return GatewayResult(originator_conversation_id, error="Failed to fetch M-Pesa access token")
        body = {
            "OriginatorConversationID": originator_conversation_id,
            "Initiator": credentials.initiator_name,
            "SecurityCredential": security_credential,
            "CommandID": BALANCE_COMMAND,
            "PartyA": credentials.short_code,
            "IdentifierType": SHORTCODE_IDENTIFIER,
            "Remarks": "Account balance",
            "QueueTimeOutURL": callback_url("accountbalance-timeout"),
            "ResultURL": callback_url(f"{credentials.tenant_id}/accountbalance-result"),
        }
        return await _post(http, settings.mpesa_balance_url, body, token, originator_conversation_id)
    finally:
        if owns_client:
            await http.aclose()
