from salary_advance.models.audit_log import AuditLog
from salary_advance.models.c2b_transaction import C2BTransaction
from salary_advance.models.employee import Employee
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.mpesa_balance import MpesaBalance
from salary_advance.models.mpesa_config import MpesaConfig
from salary_advance.models.organization import Organization
from salary_advance.models.payment_batch import PaymentBatch
from salary_advance.models.payment_confirmation import PaymentConfirmation
from salary_advance.models.tenant import Tenant
from salary_advance.models.transaction_cost_band import TransactionCostBand
from salary_advance.models.user import User

__all__ = [
    "AuditLog",
    "C2BTransaction",
    "Employee",
    "Loan",
    "LoanPayout",
    "MpesaBalance",
    "MpesaConfig",
    "Organization",
    "PaymentBatch",
    "PaymentConfirmation",
    "Tenant",
    "TransactionCostBand",
    "User",
]
