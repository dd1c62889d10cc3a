"""add payment tables

Revision ID: 7b1e4c9d2a60
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7b1e4c9d2a60"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'schools',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('academic_year', sa.String(length=20), nullable=False),
    )

    op.create_table(
        'students',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
    )
    op.create_index('ix_students_school_id', 'students', ['school_id'])

    op.create_table(
        'parents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=True),
        sa.Column(
            'payment_status',
            sa.Enum('paid', 'pending', 'overdue', 'exempted', name='parent_payment_status'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('total_amount_due', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('next_payment_due', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_parents_user_id', 'parents', ['user_id'])
    op.create_index('ix_parents_school_id', 'parents', ['school_id'])

    op.create_table(
        'parent_students',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('relationship', sa.Enum('father', 'mother', 'guardian', name='parent_relationship'), nullable=True),
        sa.UniqueConstraint('parent_id', 'student_id', name='uq_parent_students_pair'),
    )
    op.create_index('ix_parent_students_parent_id', 'parent_students', ['parent_id'])
    op.create_index('ix_parent_students_student_id', 'parent_students', ['student_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=False),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.Enum('mobile_money', 'cash', 'bank_transfer', name='payment_method'), nullable=False),
        sa.Column('mobile_money_provider', sa.Enum('mtn', 'moov', 'vodafone', name='mobile_money_provider'), nullable=True),
        sa.Column('phone_number', sa.String(length=32), nullable=True),
        sa.Column(
            'status',
            sa.Enum('pending', 'completed', 'failed', 'cancelled', name='payment_status'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('paid_date', sa.DateTime(), nullable=True),
        sa.Column('trimester', sa.Enum('first', 'second', 'third', 'annual', name='payment_trimester'), nullable=False),
        sa.Column('academic_year', sa.String(length=20), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount_paid <= amount', name='ck_payments_paid_within_amount'),
        sa.CheckConstraint('amount_paid >= 0', name='ck_payments_paid_non_negative'),
    )
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=True)
    op.create_index('ix_payments_school_id', 'payments', ['school_id'])
    op.create_index('ix_payments_parent_student_status', 'payments', ['parent_id', 'student_id', 'status'])


def downgrade():
    op.drop_index('ix_payments_parent_student_status', table_name='payments')
    op.drop_index('ix_payments_school_id', table_name='payments')
    op.drop_index('ix_payments_transaction_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_parent_students_student_id', table_name='parent_students')
    op.drop_index('ix_parent_students_parent_id', table_name='parent_students')
    op.drop_table('parent_students')
    op.drop_index('ix_parents_school_id', table_name='parents')
    op.drop_index('ix_parents_user_id', table_name='parents')
    op.drop_table('parents')
    op.drop_index('ix_students_school_id', table_name='students')
    op.drop_table('students')
    op.drop_table('schools')
