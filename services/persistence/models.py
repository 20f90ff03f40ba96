"""
Database models for PostgreSQL (SQLite in tests) using SQLAlchemy.
"""

import datetime as dt
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    """Naive UTC timestamp; the columns are stored without a zone."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobCategory(Base):
    __tablename__ = "job_categories"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    require_orientation = Column(Boolean, nullable=False, default=False)


class Staff(Base):
    __tablename__ = "staff"
    id = Column(String, primary_key=True, default=new_id)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, index=True)
    managed_categories = Column(JSON, nullable=False, default=list)  # [] = every category


class Application(Base):
    __tablename__ = "applications"
    id = Column(String, primary_key=True, default=new_id)
    applicant_id = Column(String, nullable=False, index=True)
    job_category_id = Column(String, ForeignKey("job_categories.id"), nullable=False)
    application_type = Column(String, nullable=False, default="New")
    status = Column(String, nullable=False, default="Submitted")
    orientation_completed = Column(Boolean, nullable=False, default=False)
    payment_deadline = Column(DateTime, nullable=True)
    admin_remarks = Column(Text, nullable=True)
    last_updated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    artifacts = relationship("Artifact", back_populates="application")


class Artifact(Base):
    """A document upload or a payment submission; mutated in place on resubmission."""

    __tablename__ = "artifacts"
    __table_args__ = (UniqueConstraint("application_id", "artifact_type_id"),)
    id = Column(String, primary_key=True, default=new_id)
    application_id = Column(String, ForeignKey("applications.id"), nullable=False, index=True)
    artifact_type_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    file_ref = Column(Text, nullable=True)
    original_file_name = Column(String, nullable=True)
    review_status = Column(String, nullable=False, default="Pending")
    admin_remarks = Column(Text, nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)
    # payments only
    amount = Column(Float, nullable=True)
    payment_method = Column(String, nullable=True)
    reference_number = Column(String, nullable=True)
    version = Column(Integer, nullable=False)
    application = relationship("Application", back_populates="artifacts")

    __mapper_args__ = {"version_id_col": version}


class LedgerEntry(Base):
    """Current ("referral") shape of the attempt ledger; canonical for reads."""

    __tablename__ = "ledger_entries"
    __table_args__ = (UniqueConstraint("application_id", "artifact_type_id", "attempt_number"),)
    id = Column(String, primary_key=True, default=new_id)
    application_id = Column(String, nullable=False, index=True)
    artifact_type_id = Column(String, nullable=False)
    artifact_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    attempt_number = Column(Integer, nullable=False)
    issue_type = Column(String, nullable=False)
    category = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    specific_issues = Column(JSON, nullable=False, default=list)
    doctor_name = Column(String, nullable=True)
    clinic_address = Column(Text, nullable=True)
    file_ref = Column(Text, nullable=True)
    file_size = Column(Integer, nullable=True)
    file_type = Column(String, nullable=True)
    issued_by = Column(String, nullable=False)
    issued_at = Column(DateTime, default=utcnow)
    status = Column(String, nullable=False, default="pending")
    was_replaced = Column(Boolean, nullable=False, default=False)
    replacement_artifact_id = Column(String, nullable=True)
    replaced_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    notification_sent_at = Column(DateTime, nullable=True)


class DocumentRejectionHistory(Base):
    """Legacy shape kept in sync while older readers still query it."""

    __tablename__ = "document_rejection_history"
    id = Column(String, primary_key=True, default=new_id)
    ledger_entry_id = Column(String, nullable=True, index=True)
    application_id = Column(String, nullable=False, index=True)
    document_type_id = Column(String, nullable=False)
    document_upload_id = Column(String, nullable=True)
    rejected_file_id = Column(Text, nullable=True)
    rejection_category = Column(String, nullable=False)
    rejection_reason = Column(Text, nullable=False)
    specific_issues = Column(JSON, nullable=False, default=list)
    doctor_name = Column(String, nullable=True)
    rejected_by = Column(String, nullable=False)
    rejected_at = Column(DateTime, default=utcnow)
    was_replaced = Column(Boolean, nullable=False, default=False)
    replacement_upload_id = Column(String, nullable=True)
    replaced_at = Column(DateTime, nullable=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    notification_sent = Column(Boolean, nullable=False, default=False)


class PaymentRejectionHistory(Base):
    """Legacy shape of the payment ledger."""

    __tablename__ = "payment_rejection_history"
    id = Column(String, primary_key=True, default=new_id)
    ledger_entry_id = Column(String, nullable=True, index=True)
    application_id = Column(String, nullable=False, index=True)
    payment_id = Column(String, nullable=True)
    rejection_category = Column(String, nullable=False)
    rejection_reason = Column(Text, nullable=False)
    specific_issues = Column(JSON, nullable=False, default=list)
    rejected_by = Column(String, nullable=False)
    rejected_at = Column(DateTime, default=utcnow)
    was_replaced = Column(Boolean, nullable=False, default=False)
    replacement_payment_id = Column(String, nullable=True)
    replaced_at = Column(DateTime, nullable=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")


class PermanentRejection(Base):
    __tablename__ = "permanent_rejections"
    id = Column(String, primary_key=True, default=new_id)
    application_id = Column(String, ForeignKey("applications.id"), nullable=False, unique=True)
    applicant_id = Column(String, nullable=False)
    job_category_id = Column(String, nullable=False)
    trigger_artifact_type_id = Column(String, nullable=True)
    trigger_category = Column(String, nullable=False)
    rejection_type = Column(String, nullable=False)  # automatic | manual
    reason = Column(Text, nullable=True)
    total_document_attempts = Column(Integer, nullable=False, default=0)
    total_payment_attempts = Column(Integer, nullable=False, default=0)
    rejected_by = Column(String, nullable=False)
    rejected_at = Column(DateTime, default=utcnow)


class Orientation(Base):
    __tablename__ = "orientations"
    id = Column(String, primary_key=True, default=new_id)
    application_id = Column(String, ForeignKey("applications.id"), nullable=False, unique=True)
    scheduled_date = Column(Date, nullable=False, index=True)
    time_slot = Column(String, nullable=False)
    venue = Column(String, nullable=False)
    status = Column(String, nullable=False, default="Scheduled")
    check_in_time = Column(DateTime, nullable=True)
    check_out_time = Column(DateTime, nullable=True)
    checked_in_by = Column(String, nullable=True)
    checked_out_by = Column(String, nullable=True)
    notes = Column(Text, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(String, primary_key=True, default=new_id)
    recipient_id = Column(String, nullable=False, index=True)
    application_id = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    action_ref = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(String, primary_key=True, default=new_id)
    actor_id = Column(String, nullable=False, index=True)
    activity_type = Column(String, nullable=False)
    details = Column(Text, nullable=True)
    related_ids = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, default=utcnow)
