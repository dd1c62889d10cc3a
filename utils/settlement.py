"""Moves payments from pending to a terminal state and keeps parent totals in step.

Webhook pushes, verification polls and manual admin confirmation all go
through :func:`apply_settlement`; its conditional write is the only guard
against crediting a parent twice for one transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import DIRECT_METHODS, PAYMENT_METHODS, TRIMESTERS, Parent, Payment, Student
from utils import payment_store as store
from utils.access import check_relationship
from utils.errors import NotFound, ValidationError
from utils.mobile_money import GatewayResult, MobileMoneyGateway, Provider, ProviderStatus, normalize_status
from utils.timezone_helpers import utcnow

DIRECT_PREFIXES = {"cash": "CASH", "bank_transfer": "BANK"}
MAX_AMOUNT = Decimal("10000000000")
_TERMINAL_STATUS = {
    "completed": ProviderStatus.COMPLETED,
    "failed": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
}


@dataclass
class PaymentRequest:
    student_id: int
    amount: Decimal
    payment_method: str
    trimester: str
    phone_number: Optional[str] = None
    provider: Optional[Provider] = None


@dataclass
class SettlementOutcome:
    payment: Payment
    applied: bool
    provider_status: ProviderStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": self.applied, "providerStatus": self.provider_status.value}


def _parse_amount(value: Any, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    # XOF has no minor unit; the stored Numeric(12, 2) column caps the magnitude
    if amount != amount.to_integral_value():
        raise ValidationError(f"{field} must be a whole number of francs")
    if amount >= MAX_AMOUNT:
        raise ValidationError(f"{field} is too large")
    return amount


def parse_payment_request(data: Mapping[str, Any], min_amount: int) -> PaymentRequest:
    if not isinstance(data, Mapping):
        raise ValidationError("Request body must be a JSON object")
    try:
        student_id = int(data.get("studentId"))
    except (TypeError, ValueError):
        raise ValidationError("studentId is required")
    if data.get("amount") in (None, ""):
        raise ValidationError("amount is required")
    amount = _parse_amount(data.get("amount"))
    if amount < min_amount:
        raise ValidationError(f"amount must be at least {min_amount}")
    method = str(data.get("paymentMethod") or "").strip()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"paymentMethod must be one of: {', '.join(PAYMENT_METHODS)}")
    trimester = str(data.get("trimester") or "").strip()
    if trimester not in TRIMESTERS:
        raise ValidationError(f"trimester must be one of: {', '.join(TRIMESTERS)}")

    req = PaymentRequest(student_id=student_id, amount=amount, payment_method=method, trimester=trimester)
    if method == "mobile_money":
        phone = str(data.get("phoneNumber") or "").strip()
        if not phone:
            raise ValidationError("phoneNumber is required for mobile money")
        if not data.get("mobileMoneyProvider"):
            raise ValidationError("mobileMoneyProvider is required for mobile money")
        req.phone_number = phone
        req.provider = Provider.parse(data.get("mobileMoneyProvider"))
    else:
        req.phone_number = (str(data.get("phoneNumber") or "").strip() or None)
    return req


def _commit() -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def initiate_payment(
    parent: Parent,
    data: Mapping[str, Any],
    gateway: MobileMoneyGateway,
    now: Optional[datetime] = None,
) -> Tuple[Payment, Optional[GatewayResult]]:
    cfg = current_app.config
    req = parse_payment_request(data, int(cfg.get("MIN_PAYMENT_AMOUNT", 0)))
    now = now or utcnow()

    # Lookups and ownership come first so a failure leaves no orphan row
    student = db.session.get(Student, req.student_id)
    if student is None:
        raise NotFound("Student not found", student_id=req.student_id, parent_id=parent.id)
    check_relationship(parent.id, student.id)
    academic_year = student.school.academic_year

    if req.payment_method in DIRECT_METHODS:
        payment = store.create_payment(
            transaction_id=f"{DIRECT_PREFIXES[req.payment_method]}-{now:%Y%m%d%H%M%S}-{_short_uid()}",
            parent_id=parent.id,
            student_id=student.id,
            school_id=student.school_id,
            amount=req.amount,
            payment_method=req.payment_method,
            trimester=req.trimester,
            academic_year=academic_year,
            due_date=now,
            now=now,
            phone_number=req.phone_number,
        )
        store.credit_parent(parent.id, req.amount, now)
        _commit()
        current_app.logger.info(
            "Direct %s payment %s recorded: parent=%s student=%s amount=%s",
            req.payment_method, payment.transaction_id, parent.id, student.id, req.amount,
        )
        return payment, None

    result = gateway.initiate(
        req.amount,
        req.phone_number,
        req.provider,
        description=f"Bulletin payment - {student.full_name} - {req.trimester}",
    )
    payment = store.create_payment(
        transaction_id=result.transaction_id,
        parent_id=parent.id,
        student_id=student.id,
        school_id=student.school_id,
        amount=req.amount,
        payment_method=req.payment_method,
        mobile_money_provider=req.provider.value,
        phone_number=req.phone_number,
        trimester=req.trimester,
        academic_year=academic_year,
        due_date=now + timedelta(days=int(cfg.get("PAYMENT_DUE_DAYS", 30))),
        now=now,
    )
    _commit()
    current_app.logger.info(
        "Mobile money payment %s initiated via %s: parent=%s student=%s amount=%s",
        payment.transaction_id, req.provider.value, parent.id, student.id, req.amount,
    )
    return payment, result


def _short_uid() -> str:
    return uuid.uuid4().hex[:8].upper()


def _settled_amount(payment: Payment, amount: Optional[Any]) -> Decimal:
    if amount is None:
        return Decimal(payment.amount)
    settled = _parse_amount(amount)
    if settled > Decimal(payment.amount):
        raise ValidationError(
            "Settled amount exceeds the invoiced amount",
            transaction_id=payment.transaction_id,
        )
    return settled


def apply_settlement(
    transaction_id: str,
    provider_status: ProviderStatus,
    amount: Optional[Any] = None,
    now: Optional[datetime] = None,
) -> SettlementOutcome:
    """Apply a provider-reported status to a pending payment, at most once."""
    payment = store.get_payment_by_transaction(transaction_id)
    log = current_app.logger

    if provider_status is ProviderStatus.PENDING:
        return SettlementOutcome(payment, False, provider_status)
    if payment.status != "pending":
        log.info("Payment %s already %s; ignoring %s", transaction_id, payment.status, provider_status.value)
        return SettlementOutcome(payment, False, provider_status)

    now = now or utcnow()
    if provider_status is ProviderStatus.COMPLETED:
        settled = _settled_amount(payment, amount)
        won = store.transition_from_pending(transaction_id, "completed", amount_paid=settled, paid_date=now)
        if won:
            store.credit_parent(payment.parent_id, settled, now)
    else:
        won = store.transition_from_pending(transaction_id, "failed")
    _commit()

    payment = store.get_payment_by_transaction(transaction_id)
    if won:
        log.info(
            "Payment %s -> %s: parent=%s student=%s amount_paid=%s",
            transaction_id, payment.status, payment.parent_id, payment.student_id, payment.amount_paid,
        )
    else:
        log.info("Payment %s settled concurrently; no change applied", transaction_id)
    return SettlementOutcome(payment, won, provider_status)


def handle_webhook(payload: Any, now: Optional[datetime] = None) -> SettlementOutcome:
    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook payload must be a JSON object")
    transaction_id = str(payload.get("transactionId") or "").strip()
    raw_status = str(payload.get("status") or "").strip()
    if not transaction_id or not raw_status:
        raise ValidationError("transactionId and status are required")
    provider_status = normalize_status(raw_status)
    amount = payload.get("amount")
    if provider_status is ProviderStatus.COMPLETED:
        # A success notice must state exactly what was settled
        if amount in (None, ""):
            raise ValidationError("amount is required for a successful payment", transaction_id=transaction_id)
        _parse_amount(amount)
    try:
        return apply_settlement(transaction_id, provider_status, amount=amount, now=now)
    except NotFound:
        current_app.logger.warning("Webhook for unknown transaction %s", transaction_id)
        raise


def verify_payment(transaction_id: str, gateway: MobileMoneyGateway, now: Optional[datetime] = None) -> SettlementOutcome:
    payment = store.get_payment_by_transaction(transaction_id)
    if payment.payment_method != "mobile_money" or payment.status != "pending":
        return SettlementOutcome(payment, False, _TERMINAL_STATUS.get(payment.status, ProviderStatus.PENDING))
    provider = Provider.parse(payment.mobile_money_provider) if payment.mobile_money_provider else None
    # GatewayUnavailable propagates untouched: the payment stays pending and the call can be retried
    result = gateway.verify(transaction_id, provider)
    return apply_settlement(transaction_id, result.provider_status, amount=result.amount, now=now)


def recompute_parent_totals(parent_id: int) -> Dict[str, Any]:
    """Rebuild a parent's cached totals from the completed payments, the source of truth."""
    parent = store.get_parent(parent_id)
    before = Decimal(parent.amount_paid or 0)
    total, latest = (
        db.session.query(func.coalesce(func.sum(Payment.amount_paid), 0), func.max(Payment.paid_date))
        .filter(Payment.parent_id == parent_id, Payment.status == "completed")
        .one()
    )
    total = Decimal(str(total or 0))
    parent.amount_paid = total
    parent.last_payment_date = latest
    if parent.payment_status != "exempted":
        if latest is not None:
            parent.payment_status = "paid"
        elif parent.payment_status == "paid":
            parent.payment_status = "pending"
    _commit()
    drift = total - before
    if drift:
        current_app.logger.warning("Parent %s totals drifted by %s; repaired", parent_id, drift)
    return {
        "parentId": parent_id,
        "amountPaidBefore": float(before),
        "amountPaid": float(total),
        "drift": float(drift),
        "paymentStatus": parent.payment_status,
    }


def reconcile_all_parents() -> List[Dict[str, Any]]:
    ids = [pid for (pid,) in db.session.query(Parent.id).order_by(Parent.id).all()]
    return [recompute_parent_totals(pid) for pid in ids]
