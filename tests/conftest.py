import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from extensions import db
from models import Parent, ParentStudent, School, Student


TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "MOBILE_MONEY_ENV": "sandbox",
    "MOBILE_MONEY_WEBHOOK_SECRET": "",
    "FEDAPAY_API_KEY": "",
    "MTN_API_KEY": "",
    "MTN_API_SECRET": "",
    "MOOV_API_KEY": "",
    "VODAFONE_API_KEY": "",
    "RATELIMIT_ENABLED": False,
    "TRUST_PROXY": False,
    "BULLETIN_ACCESS_WINDOW_DAYS": 90,
    "MIN_PAYMENT_AMOUNT": 1000,
}


@pytest.fixture
def app():
    app = create_app(TEST_CONFIG)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def seed(app):
    school = School(name="Lycée Behanzin", academic_year="2025-2026")
    db.session.add(school)
    db.session.flush()
    student = Student(first_name="Ama", last_name="Kossou", school_id=school.id)
    other_student = Student(first_name="Koffi", last_name="Agbo", school_id=school.id)
    parent = Parent(phone="+22997000001", school_id=school.id, total_amount_due=Decimal("150000"))
    db.session.add_all([student, other_student, parent])
    db.session.flush()
    db.session.add(ParentStudent(parent_id=parent.id, student_id=student.id, relationship="mother"))
    db.session.commit()
    return {
        "school_id": school.id,
        "student_id": student.id,
        "other_student_id": other_student.id,
        "parent_id": parent.id,
    }


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def parent_client(client, seed):
    with client.session_transaction() as sess:
        sess["parent_id"] = seed["parent_id"]
    return client


@pytest.fixture
def admin_client(client, seed):
    with client.session_transaction() as sess:
        sess["admin_logged_in"] = True
        sess["school_id"] = seed["school_id"]
    return client
