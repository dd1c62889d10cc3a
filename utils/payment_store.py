from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case, or_, update

from extensions import db
from models import DIRECT_METHODS, Parent, Payment
from utils.errors import NotFound, ValidationError

MUTABLE_FIELDS = {"status", "amount_paid", "paid_date", "notes"}

# Callers own the transaction: nothing in this module commits.


def create_payment(
    *,
    transaction_id: str,
    parent_id: int,
    student_id: int,
    school_id: int,
    amount: Decimal,
    payment_method: str,
    trimester: str,
    academic_year: str,
    due_date: datetime,
    now: datetime,
    mobile_money_provider: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> Payment:
    """Add a payment row: direct methods are settled on creation, mobile money waits."""
    direct = payment_method in DIRECT_METHODS
    payment = Payment(
        transaction_id=transaction_id,
        parent_id=parent_id,
        student_id=student_id,
        school_id=school_id,
        amount=amount,
        amount_paid=amount if direct else Decimal("0"),
        payment_method=payment_method,
        mobile_money_provider=None if direct else mobile_money_provider,
        phone_number=phone_number,
        status="completed" if direct else "pending",
        due_date=due_date,
        paid_date=now if direct else None,
        trimester=trimester,
        academic_year=academic_year,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise NotFound("Payment not found", payment_id=payment_id)
    return payment


def get_payment_by_transaction(transaction_id: str) -> Payment:
    payment = (
        Payment.query.filter_by(transaction_id=transaction_id)
        .execution_options(populate_existing=True)
        .first()
    )
    if payment is None:
        raise NotFound("Payment not found", transaction_id=transaction_id)
    return payment


def get_parent(parent_id: int) -> Parent:
    parent = db.session.get(Parent, parent_id, populate_existing=True)
    if parent is None:
        raise NotFound("Parent not found", parent_id=parent_id)
    return parent


def update_payment(payment: Payment, **fields) -> Payment:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Cannot modify payment fields: {', '.join(sorted(unknown))}",
            transaction_id=payment.transaction_id,
        )
    if "amount_paid" in fields:
        paid = Decimal(str(fields["amount_paid"]))
        if paid < 0 or paid > Decimal(payment.amount):
            raise ValidationError(
                "Amount paid must be between 0 and the invoiced amount",
                transaction_id=payment.transaction_id,
            )
        fields["amount_paid"] = paid
    for key, value in fields.items():
        setattr(payment, key, value)
    db.session.flush()
    return payment


def transition_from_pending(
    transaction_id: str,
    status: str,
    amount_paid: Optional[Decimal] = None,
    paid_date: Optional[datetime] = None,
) -> bool:
    """Conditional write; True only for the caller whose UPDATE matched a pending row."""
    values = {"status": status}
    if amount_paid is not None:
        values["amount_paid"] = amount_paid
    if paid_date is not None:
        values["paid_date"] = paid_date
    result = db.session.execute(
        update(Payment)
        .where(Payment.transaction_id == transaction_id, Payment.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def credit_parent(parent_id: int, amount: Decimal, when: datetime) -> None:
    # Increment happens in SQL so concurrent completions never lose an update
    result = db.session.execute(
        update(Parent)
        .where(Parent.id == parent_id)
        .values(
            amount_paid=Parent.amount_paid + amount,
            payment_status=case((Parent.payment_status == "exempted", "exempted"), else_="paid"),
            last_payment_date=when,
            updated_at=when,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Parent not found", parent_id=parent_id)


def latest_completed_payment(parent_id: int, student_id: int) -> Optional[Payment]:
    return (
        Payment.query.filter_by(parent_id=parent_id, student_id=student_id, status="completed")
        .filter(Payment.paid_date.isnot(None))
        .order_by(Payment.paid_date.desc())
        .execution_options(populate_existing=True)
        .first()
    )


def completed_payments_for(parent_id: int) -> List[Payment]:
    return (
        Payment.query.filter_by(parent_id=parent_id, status="completed")
        .order_by(Payment.paid_date.desc())
        .all()
    )


def payments_for_parent(parent_id: int) -> List[Payment]:
    return Payment.query.filter_by(parent_id=parent_id).order_by(Payment.created_at.desc(), Payment.id.desc()).all()


def overdue_payments(school_id: Optional[int], now: datetime) -> List[Payment]:
    query = Payment.query.filter(Payment.status == "pending", Payment.due_date < now)
    if school_id is not None:
        query = query.filter(Payment.school_id == school_id)
    return query.order_by(Payment.due_date.asc()).all()


def stale_parents(school_id: Optional[int], cutoff: datetime) -> List[Parent]:
    query = Parent.query.filter(
        Parent.payment_status.in_(("pending", "overdue")),
        or_(Parent.last_payment_date.is_(None), Parent.last_payment_date < cutoff),
    )
    if school_id is not None:
        query = query.filter(Parent.school_id == school_id)
    return query.order_by(Parent.id.asc()).all()
