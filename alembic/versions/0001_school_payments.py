"""school payments schema

Revision ID: 0001_school_payments
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_school_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS school;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS school.students (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          user_id uuid NOT NULL UNIQUE,
          admission_no text NOT NULL UNIQUE,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS school.student_fees (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          student_id uuid NOT NULL REFERENCES school.students(id),
          description text NOT NULL,
          amount numeric(12, 2) NOT NULL CHECK (amount > 0),
          status text NOT NULL DEFAULT 'unpaid'
            CHECK (status IN ('unpaid', 'partial', 'paid')),
          due_date date,
          paid_date timestamptz,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_student_fees_student ON school.student_fees (student_id);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS school.payments (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          student_id uuid NOT NULL REFERENCES school.students(id),
          fee_id uuid NOT NULL REFERENCES school.student_fees(id),
          amount numeric(12, 2) NOT NULL CHECK (amount > 0),
          currency text NOT NULL DEFAULT 'KES',
          payment_method text NOT NULL DEFAULT 'mpesa',
          phone_number text NOT NULL,
          status text NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
          checkout_request_id text UNIQUE,
          merchant_request_id text,
          mpesa_receipt_number text UNIQUE,
          result_code integer,
          failure_reason text,
          metadata jsonb,
          initiated_by uuid,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now(),
          completed_at timestamptz,
          CONSTRAINT processing_requires_checkout_id
            CHECK (status <> 'processing' OR checkout_request_id IS NOT NULL)
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_payments_student_created ON school.payments (student_id, created_at DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_payments_status_updated ON school.payments (status, updated_at);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS school.payment_anomalies (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          payment_id uuid NOT NULL REFERENCES school.payments(id),
          checkout_request_id text NOT NULL,
          stored_status text NOT NULL,
          reported_status text NOT NULL,
          source text NOT NULL,
          details jsonb NOT NULL DEFAULT '{}'::jsonb,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS school.mpesa_callback_events (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          checkout_request_id text,
          valid boolean NOT NULL,
          applied boolean NOT NULL DEFAULT false,
          ignore_reason text,
          body jsonb,
          request_id text,
          received_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_mpesa_callback_events_checkout ON school.mpesa_callback_events (checkout_request_id);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS school.mpesa_callback_events;")
    op.execute("DROP TABLE IF EXISTS school.payment_anomalies;")
    op.execute("DROP TABLE IF EXISTS school.payments;")
    op.execute("DROP TABLE IF EXISTS school.student_fees;")
    op.execute("DROP TABLE IF EXISTS school.students;")
