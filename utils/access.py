from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar, cast

from flask import current_app, g

from models import ParentStudent
from utils import current_parent, is_admin
from utils import payment_store as store
from utils.errors import Forbidden, Unauthorized
from utils.timezone_helpers import utcnow

F = TypeVar("F", bound=Callable[..., Any])

REASON_PAID = "paid"
REASON_UNPAID = "unpaid"
REASON_OVERDUE = "overdue"

_MESSAGES = {
    REASON_PAID: "Payment up to date",
    REASON_UNPAID: "No payment found",
    REASON_OVERDUE: "Payment expired",
}


@dataclass(frozen=True)
class AccessDecision:
    authorized: bool
    reason: str
    last_payment_date: Optional[datetime] = None

    @property
    def message(self) -> str:
        return _MESSAGES[self.reason]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorized": self.authorized,
            "reason": self.reason,
            "message": self.message,
            "lastPaymentDate": self.last_payment_date.isoformat() if self.last_payment_date else None,
        }


def check_relationship(parent_id: int, student_id: int) -> None:
    link = ParentStudent.query.filter_by(parent_id=parent_id, student_id=student_id).first()
    if link is None:
        raise Forbidden("Access to this student's records is not allowed", parent_id=parent_id, student_id=student_id)


def _window(window_days: Optional[int]) -> timedelta:
    if window_days is None:
        window_days = int(current_app.config.get("BULLETIN_ACCESS_WINDOW_DAYS", 90))
    return timedelta(days=window_days)


def check_payment_status(
    parent_id: int,
    student_id: int,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> AccessDecision:
    """Freshness of the latest completed payment for this pair; reads only."""
    latest = store.latest_completed_payment(parent_id, student_id)
    if latest is None:
        return AccessDecision(False, REASON_UNPAID)
    now = now or utcnow()
    if now - latest.paid_date > _window(window_days):
        return AccessDecision(False, REASON_OVERDUE, latest.paid_date)
    return AccessDecision(True, REASON_PAID, latest.paid_date)


def is_authorized(
    parent_id: int,
    student_id: int,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> AccessDecision:
    check_relationship(parent_id, student_id)
    return check_payment_status(parent_id, student_id, now=now, window_days=window_days)


def bulletin_access_required(func: F) -> F:
    """Gate a view taking ``student_id`` on the parent's payment freshness.

    Staff sessions pass straight through; parents must be linked to the
    student (403 otherwise) and hold a recent completed payment (402 otherwise).
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if is_admin():
            g.access_decision = None
            return func(*args, **kwargs)
        parent = current_parent()
        student_id = int(kwargs["student_id"])
        decision = is_authorized(parent.id, student_id)
        if not decision.authorized:
            raise Unauthorized(
                "Payment required to access this resource",
                reason=decision.reason,
                parent_id=parent.id,
                student_id=student_id,
            )
        g.access_decision = decision
        return func(*args, **kwargs)

    return cast(F, wrapper)


def payment_alerts(school_id: Optional[int], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    cutoff = now - timedelta(days=int(current_app.config.get("PAYMENT_ALERT_DAYS", 30)))
    out: List[Dict[str, Any]] = []
    for parent in store.stale_parents(school_id, cutoff):
        row = parent.to_dict()
        row["amountDue"] = float((parent.total_amount_due or 0) - (parent.amount_paid or 0))
        out.append(row)
    return out
