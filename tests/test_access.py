from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from extensions import db
from models import Parent, Payment
from utils import payment_store as store
from utils.access import (
    REASON_OVERDUE,
    REASON_PAID,
    REASON_UNPAID,
    check_payment_status,
    is_authorized,
    payment_alerts,
)
from utils.errors import Forbidden

NOW = datetime(2026, 3, 1, 9, 30)


def _paid(seed, paid_date, transaction_id="CASH-1"):
    store.create_payment(
        transaction_id=transaction_id,
        parent_id=seed["parent_id"],
        student_id=seed["student_id"],
        school_id=seed["school_id"],
        amount=Decimal("20000"),
        payment_method="cash",
        trimester="first",
        academic_year="2025-2026",
        due_date=paid_date,
        now=paid_date,
    )
    store.credit_parent(seed["parent_id"], Decimal("20000"), paid_date)
    db.session.commit()


def test_no_payment_is_unpaid(seed):
    decision = is_authorized(seed["parent_id"], seed["student_id"], now=NOW)
    assert decision.authorized is False
    assert decision.reason == REASON_UNPAID
    assert decision.to_dict()["message"] == "No payment found"


def test_payment_ninety_days_old_still_authorizes(seed):
    _paid(seed, NOW - timedelta(days=90))
    decision = is_authorized(seed["parent_id"], seed["student_id"], now=NOW)
    assert decision.authorized is True
    assert decision.reason == REASON_PAID
    assert decision.last_payment_date == NOW - timedelta(days=90)


def test_payment_ninety_one_days_old_is_overdue(seed):
    _paid(seed, NOW - timedelta(days=91))
    decision = is_authorized(seed["parent_id"], seed["student_id"], now=NOW)
    assert decision.authorized is False
    assert decision.reason == REASON_OVERDUE
    assert decision.to_dict()["lastPaymentDate"] == (NOW - timedelta(days=91)).isoformat()


def test_latest_payment_decides(seed):
    _paid(seed, NOW - timedelta(days=200), "CASH-old")
    _paid(seed, NOW - timedelta(days=10), "CASH-new")
    assert is_authorized(seed["parent_id"], seed["student_id"], now=NOW).authorized is True


def test_window_is_configurable(app, seed):
    _paid(seed, NOW - timedelta(days=40))
    assert check_payment_status(seed["parent_id"], seed["student_id"], now=NOW, window_days=30).reason == REASON_OVERDUE
    app.config["BULLETIN_ACCESS_WINDOW_DAYS"] = 45
    assert check_payment_status(seed["parent_id"], seed["student_id"], now=NOW).authorized is True


def test_pending_and_failed_attempts_do_not_count(seed):
    store.create_payment(
        transaction_id="DEV-MTN-open",
        parent_id=seed["parent_id"],
        student_id=seed["student_id"],
        school_id=seed["school_id"],
        amount=Decimal("50000"),
        payment_method="mobile_money",
        mobile_money_provider="mtn",
        phone_number="+22997000001",
        trimester="first",
        academic_year="2025-2026",
        due_date=NOW,
        now=NOW,
    )
    db.session.commit()
    assert is_authorized(seed["parent_id"], seed["student_id"], now=NOW).reason == REASON_UNPAID


def test_unlinked_student_is_forbidden_even_when_paid(seed):
    _paid(seed, NOW - timedelta(days=1))
    with pytest.raises(Forbidden):
        is_authorized(seed["parent_id"], seed["other_student_id"], now=NOW)


def test_checks_do_not_write(seed):
    _paid(seed, NOW - timedelta(days=120))
    before = db.session.get(Parent, seed["parent_id"]).to_dict()
    is_authorized(seed["parent_id"], seed["student_id"], now=NOW)
    db.session.expire_all()
    assert db.session.get(Parent, seed["parent_id"]).to_dict() == before
    assert db.session.query(Payment).count() == 1


def test_payment_alerts_list_stale_parents(app, seed):
    rows = payment_alerts(seed["school_id"], now=NOW)
    assert [r["id"] for r in rows] == [seed["parent_id"]]
    assert rows[0]["amountDue"] == 150000.0

    _paid(seed, NOW - timedelta(days=5))
    parent = db.session.get(Parent, seed["parent_id"])
    parent.payment_status = "overdue"
    db.session.commit()
    # A recent payment keeps an overdue parent off the list
    assert payment_alerts(seed["school_id"], now=NOW) == []
    assert payment_alerts(seed["school_id"], now=NOW + timedelta(days=60))[0]["amountDue"] == 130000.0
