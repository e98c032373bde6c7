"""Custody Engine - Data Models"""
from .db_models import (
    # Enums
    CustodyStatus, CustodianType, ReasonCode, RatePolicy, ApprovalStatus,
    DocumentType, DocumentCategory, ExpiryNotice, IntegrationType,
    ChargeType, ChargeResponsibility, ChargeStatus,
    # Tables
    CustodyTransactionDB, CustodyApprovalDB, CustodyDocumentDB, CustodyChargeDB, CustodyAuditLogDB,
    CustodySequenceDB, WebhookLogDB, NotificationPreferenceDB, IntegrationSettingDB,
)

__all__ = [
    "CustodyStatus", "CustodianType", "ReasonCode", "RatePolicy", "ApprovalStatus",
    "DocumentType", "DocumentCategory", "ExpiryNotice", "IntegrationType",
    "ChargeType", "ChargeResponsibility", "ChargeStatus",
    "CustodyTransactionDB", "CustodyApprovalDB", "CustodyDocumentDB", "CustodyChargeDB", "CustodyAuditLogDB",
    "CustodySequenceDB", "WebhookLogDB", "NotificationPreferenceDB", "IntegrationSettingDB",
]
