"""
Custody Engine - SQLAlchemy ORM Models
PostgreSQL database models for the custody / vehicle-replacement workflow
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum, Boolean
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR CUSTODY WORKFLOW
# =============================================================================

class CustodyStatus(str, Enum):
    """States in the custody state machine."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    CLOSED = "closed"
    VOIDED = "voided"


class CustodianType(str, Enum):
    """Who physically holds the replacement vehicle."""
    CUSTOMER = "customer"
    DRIVER = "driver"
    ORIGINATOR = "originator"


class ReasonCode(str, Enum):
    """Why the original vehicle is being replaced."""
    ACCIDENT = "accident"
    BREAKDOWN = "breakdown"
    MAINTENANCE = "maintenance"
    DAMAGE = "damage"
    OTHER = "other"


class RatePolicy(str, Enum):
    """Commercial terms applied to the replacement."""
    INHERIT = "inherit"
    PRORATE = "prorate"
    FREE = "free"
    SPECIAL_CODE = "special_code"


class ApprovalStatus(str, Enum):
    """Decision state of a single approver."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(str, Enum):
    """Documents attached to a custody transaction."""
    CUSTOMER_ACKNOWLEDGMENT = "customer_acknowledgment"
    INCIDENT_REPORT = "incident_report"
    PHOTOS = "photos"
    POLICE_REPORT = "police_report"
    INSURANCE_DOCS = "insurance_docs"
    HANDOVER_CHECKLIST = "handover_checklist"
    SIGNATURE = "signature"


class DocumentCategory(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"


class ExpiryNotice(str, Enum):
    """Last document expiry notice sent for a document."""
    NONE = "none"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class ChargeType(str, Enum):
    """What a custody charge bills for."""
    DAMAGE = "damage"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    ADMIN_FEE = "admin_fee"
    OTHER = "other"


class ChargeResponsibility(str, Enum):
    CUSTOMER = "customer"
    COMPANY = "company"
    INSURANCE = "insurance"
    THIRD_PARTY = "third_party"


class ChargeStatus(str, Enum):
    """Billing state of a charge line. Only drafts are editable."""
    DRAFT = "draft"
    POSTED = "posted"
    INVOICED = "invoiced"
    PAID = "paid"


class IntegrationType(str, Enum):
    """Partner systems that receive custody webhooks."""
    FLEET = "fleet"
    BILLING = "billing"
    CLAIMS = "claims"


# =============================================================================
# CUSTODY TRANSACTION (AGGREGATE ROOT)
# =============================================================================

class CustodyTransactionDB(Base):
    """
    A bounded record of substituting a replacement vehicle for the
    customer's originally contracted vehicle.
    """
    __tablename__ = "custody_transactions"

    id = Column(String(36), primary_key=True)  # UUID
    custody_no = Column(String(32), unique=True, nullable=False, index=True)  # Immutable once assigned

    # Linkage (foreign keys into tables owned by the wider back office)
    agreement_id = Column(String(36), nullable=False, index=True)
    agreement_line_id = Column(String(36), nullable=True)
    customer_id = Column(String(36), nullable=False, index=True)
    branch_id = Column(String(36), nullable=True, index=True)
    original_vehicle_id = Column(String(36), nullable=False)
    replacement_vehicle_id = Column(String(36), nullable=True)  # Required before ACTIVE

    # Custodian
    custodian_name = Column(String(200), nullable=True)
    custodian_type = Column(SQLEnum(CustodianType), default=CustodianType.CUSTOMER)
    custodian_contact = Column(JSON, nullable=True)

    # Cause
    reason_code = Column(SQLEnum(ReasonCode), nullable=False)
    incident_narrative = Column(Text, nullable=True)
    incident_date = Column(DateTime, nullable=False)

    # Timing
    effective_from = Column(DateTime, nullable=False)
    expected_return_date = Column(DateTime, nullable=True)
    actual_return_date = Column(DateTime, nullable=True)

    # Commercial terms
    rate_policy = Column(SQLEnum(RatePolicy), default=RatePolicy.INHERIT)
    special_rate_code = Column(String(50), nullable=True)

    # Lifecycle
    status = Column(SQLEnum(CustodyStatus), nullable=False, default=CustodyStatus.DRAFT, index=True)
    sla_breached = Column(Boolean, default=False)  # Monotonic: only flipped false -> true automatically
    sla_target_approve_by = Column(DateTime, nullable=True)  # Stamped once on first submission
    sla_target_handover_by = Column(DateTime, nullable=True)
    last_overdue_reminder_day = Column(Integer, default=0)  # Highest weekly milestone already reminded

    # Audit
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    closed_by = Column(String(36), nullable=True)
    closed_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)

    # Optimistic concurrency, bumped by the repository on every save
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    # Relationships
    approvals = relationship("CustodyApprovalDB", back_populates="custody", cascade="all, delete-orphan")
    documents = relationship("CustodyDocumentDB", back_populates="custody", cascade="all, delete-orphan")
    audit_log = relationship("CustodyAuditLogDB", back_populates="custody", cascade="all, delete-orphan")
    charges = relationship("CustodyChargeDB", back_populates="custody", cascade="all, delete-orphan")


class CustodyApprovalDB(Base):
    """
    One row per required approver per transaction.
    Created on submission. Immutable once decided.
    """
    __tablename__ = "custody_approvals"

    id = Column(String(36), primary_key=True)  # UUID
    custody_id = Column(String(36), ForeignKey("custody_transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    approver_id = Column(String(36), nullable=False)
    approval_level = Column(Integer, default=1)
    status = Column(SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    decided_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    due_by = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    custody = relationship("CustodyTransactionDB", back_populates="approvals")


class CustodyDocumentDB(Base):
    """Document attached to a custody transaction (licence, insurance, photos...)."""
    __tablename__ = "custody_documents"

    id = Column(String(36), primary_key=True)  # UUID
    custody_id = Column(String(36), ForeignKey("custody_transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    document_type = Column(SQLEnum(DocumentType), nullable=False)
    document_category = Column(SQLEnum(DocumentCategory), default=DocumentCategory.OPTIONAL)
    file_name = Column(String(255), nullable=False)
    file_url = Column(String(500), nullable=True)
    expires_on = Column(DateTime, nullable=True, index=True)
    expiry_notice = Column(SQLEnum(ExpiryNotice), default=ExpiryNotice.NONE)

    uploaded_by = Column(String(36), nullable=True)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    custody = relationship("CustodyTransactionDB", back_populates="documents")


class CustodyChargeDB(Base):
    """
    One billable line on a custody (damage, upgrade, admin fee...).
    Editable while draft; locked once posted to billing.
    """
    __tablename__ = "custody_charges"

    id = Column(String(36), primary_key=True)  # UUID
    custody_id = Column(String(36), ForeignKey("custody_transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    charge_type = Column(SQLEnum(ChargeType), nullable=False)
    item_code = Column(String(50), nullable=True)
    description = Column(String(500), nullable=False)
    quantity = Column(Float, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0)
    tax_rate = Column(Float, nullable=True)    # Percent
    tax_amount = Column(Float, nullable=True)
    total_amount = Column(Float, nullable=False, default=0)
    responsibility = Column(SQLEnum(ChargeResponsibility), nullable=False, default=ChargeResponsibility.CUSTOMER)
    status = Column(SQLEnum(ChargeStatus), nullable=False, default=ChargeStatus.DRAFT, index=True)

    # Billing
    posted_by = Column(String(36), nullable=True)
    posted_at = Column(DateTime, nullable=True)
    invoice_id = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    custody = relationship("CustodyTransactionDB", back_populates="charges")


class CustodyAuditLogDB(Base):
    """
    Immutable log of state machine transitions.
    Append-only - records every status change.
    """
    __tablename__ = "custody_audit_log"

    id = Column(String(36), primary_key=True)  # UUID
    custody_id = Column(String(36), ForeignKey("custody_transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(SQLEnum(CustodyStatus), nullable=True)  # NULL for creation
    to_status = Column(SQLEnum(CustodyStatus), nullable=False)
    trigger = Column(String(100), nullable=False)  # What caused the transition
    actor_id = Column(String(36), nullable=True)   # User id or "system"

    # Event Metadata (named to avoid the reserved 'metadata' attribute)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    custody = relationship("CustodyTransactionDB", back_populates="audit_log")


class CustodySequenceDB(Base):
    """Monotonic counter backing custody_no. Deleted drafts never free a number."""
    __tablename__ = "custody_sequence"

    name = Column(String(50), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


# =============================================================================
# INTEGRATION / NOTIFICATION MODELS
# =============================================================================

class WebhookLogDB(Base):
    """
    One row per delivery attempt (notification or partner webhook).
    Append-only. Only the retry annotations on a lineage root are updated.
    """
    __tablename__ = "custody_webhook_logs"

    id = Column(String(36), primary_key=True)  # UUID
    custody_id = Column(String(36), nullable=True, index=True)

    event_type = Column(String(50), nullable=False)
    webhook_type = Column(String(20), nullable=False)  # notification, fleet, billing, claims
    endpoint = Column(String(500), nullable=False)
    payload = Column(JSON, nullable=True)
    response = Column(JSON, nullable=True)
    status_code = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)

    # Retry lineage
    retry_of_id = Column(String(36), nullable=True, index=True)  # Lineage root for retry attempts
    retry_count = Column(Integer, default=0)                     # Annotated on the root only
    last_retry_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class NotificationPreferenceDB(Base):
    """Per-user notification toggles. Read by the dispatcher, never written by it."""
    __tablename__ = "custody_notification_preferences"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), unique=True, nullable=False, index=True)

    email_enabled = Column(Boolean, default=True)
    sms_enabled = Column(Boolean, default=False)
    notify_on_submission = Column(Boolean, default=True)
    notify_on_approval = Column(Boolean, default=True)
    notify_on_rejection = Column(Boolean, default=True)
    notify_on_handover = Column(Boolean, default=True)
    notify_on_closure = Column(Boolean, default=True)
    notify_on_sla_breach = Column(Boolean, default=True)
    email_address = Column(String(255), nullable=True)
    phone_number = Column(String(30), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IntegrationSettingDB(Base):
    """Enable flag, endpoint and per-event config for one partner integration."""
    __tablename__ = "custody_integration_settings"

    id = Column(String(36), primary_key=True)  # UUID
    integration_type = Column(SQLEnum(IntegrationType), unique=True, nullable=False)

    is_enabled = Column(Boolean, default=False)
    endpoint_url = Column(String(500), nullable=True)
    api_key_name = Column(String(100), nullable=True)  # Environment variable holding the bearer token
    config = Column(JSON, nullable=True)  # {"auto_create_invoice": bool, "auto_submit_accidents": bool}

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
