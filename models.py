from datetime import datetime

from extensions import db
from utils.timezone_helpers import utcnow


PAYMENT_METHODS = ("mobile_money", "cash", "bank_transfer")
DIRECT_METHODS = ("cash", "bank_transfer")
MOBILE_MONEY_PROVIDERS = ("mtn", "moov", "vodafone")
PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled")
PARENT_PAYMENT_STATUSES = ("paid", "pending", "overdue", "exempted")
TRIMESTERS = ("first", "second", "third", "annual")
RELATIONSHIPS = ("father", "mother", "guardian")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value) -> float:
    return float(value or 0)


class School(db.Model):
    __tablename__ = 'schools'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    academic_year = db.Column(db.String(20), nullable=False)

    def __repr__(self):
        return f'<School {self.name}>'


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)

    school = db.relationship('School')

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self):
        return f'<Student {self.full_name}>'


class Parent(db.Model):
    """Billing-responsible account; its totals are a cache over completed payments."""

    __tablename__ = 'parents'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    phone = db.Column(db.String(32), nullable=False)
    # School is optional while a parent is still registering
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=True, index=True)
    payment_status = db.Column(
        db.Enum(*PARENT_PAYMENT_STATUSES, name='parent_payment_status'),
        nullable=False,
        default='pending',
    )
    total_amount_due = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    last_payment_date = db.Column(db.DateTime, nullable=True)
    next_payment_due = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    children = db.relationship('ParentStudent', backref='parent', cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "schoolId": self.school_id,
            "phone": self.phone,
            "paymentStatus": self.payment_status,
            "totalAmountDue": _money(self.total_amount_due),
            "amountPaid": _money(self.amount_paid),
            "lastPaymentDate": _iso(self.last_payment_date),
        }

    def __repr__(self):
        return f'<Parent {self.id} status={self.payment_status}>'


class ParentStudent(db.Model):
    __tablename__ = 'parent_students'
    __table_args__ = (
        db.UniqueConstraint('parent_id', 'student_id', name='uq_parent_students_pair'),
    )

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    relationship = db.Column(db.Enum(*RELATIONSHIPS, name='parent_relationship'), nullable=True)


class Payment(db.Model):
    __tablename__ = 'payments'
    __table_args__ = (
        db.CheckConstraint('amount_paid <= amount', name='ck_payments_paid_within_amount'),
        db.CheckConstraint('amount_paid >= 0', name='ck_payments_paid_non_negative'),
        db.Index('ix_payments_parent_student_status', 'parent_id', 'student_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_method = db.Column(db.Enum(*PAYMENT_METHODS, name='payment_method'), nullable=False)
    mobile_money_provider = db.Column(db.Enum(*MOBILE_MONEY_PROVIDERS, name='mobile_money_provider'), nullable=True)
    phone_number = db.Column(db.String(32), nullable=True)
    status = db.Column(db.Enum(*PAYMENT_STATUSES, name='payment_status'), nullable=False, default='pending')
    due_date = db.Column(db.DateTime, nullable=False)
    paid_date = db.Column(db.DateTime, nullable=True)
    trimester = db.Column(db.Enum(*TRIMESTERS, name='payment_trimester'), nullable=False)
    academic_year = db.Column(db.String(20), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    student = db.relationship('Student')

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "parentId": self.parent_id,
            "studentId": self.student_id,
            "schoolId": self.school_id,
            "amount": _money(self.amount),
            "amountPaid": _money(self.amount_paid),
            "paymentMethod": self.payment_method,
            "mobileMoneyProvider": self.mobile_money_provider,
            "phoneNumber": self.phone_number,
            "status": self.status,
            "dueDate": _iso(self.due_date),
            "paidDate": _iso(self.paid_date),
            "trimester": self.trimester,
            "academicYear": self.academic_year,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Payment {self.transaction_id} {self.status} Paid={self.amount_paid}>'
