"""
Custody Service

Main orchestration service for the custody workflow.
Wires the repository, SLA calculator, approval gate, integration dispatcher
and state machine together, and exposes the read side (lists, documents,
audit trail, statistics) plus the settings the dispatcher consults.

AUTHORITY MODEL:
- USER-AUTHORIZED: create, submit, approve, reject, activate, record_return, close, void, delete,
  charge entry and posting
- SYSTEM-AUTHORITATIVE: SLA breach flagging, overdue reminders, webhook retries, auto-close
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ...config import CustodySettings, get_settings
from ...models.db_models import (
    ChargeResponsibility, ChargeStatus, ChargeType, CustodyChargeDB, CustodyDocumentDB, CustodyStatus,
    DocumentCategory, DocumentType, ExpiryNotice, IntegrationSettingDB, IntegrationType, NotificationPreferenceDB,
)
from .approval_gate import ApprovalGate
from .exceptions import CustodyNotFoundError, ImmutableStateError, ValidationError
from .integration_dispatcher import IntegrationDispatcher
from .repository import CustodyFilters, CustodyRepository, PaginatedResult, to_naive_utc, utc_now
from .sla_engine import SLACalculator
from .state_machine import TERMINAL_STATUSES, CustodyStateMachine
from .transports import HttpxWebhookClient, LoggingNotificationSender, NotificationSender, WebhookClient


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

PREFERENCE_FIELDS = (
    "email_enabled",
    "sms_enabled",
    "notify_on_submission",
    "notify_on_approval",
    "notify_on_rejection",
    "notify_on_handover",
    "notify_on_closure",
    "notify_on_sla_breach",
    "email_address",
    "phone_number",
)

PREFERENCE_DEFAULTS = {
    "email_enabled": True,
    "sms_enabled": False,
    "notify_on_submission": True,
    "notify_on_approval": True,
    "notify_on_rejection": True,
    "notify_on_handover": True,
    "notify_on_closure": True,
    "notify_on_sla_breach": True,
    "email_address": None,
    "phone_number": None,
}


CHARGE_FIELDS = (
    "charge_type",
    "item_code",
    "description",
    "quantity",
    "unit_price",
    "tax_rate",
    "responsibility",
    "notes",
)


def compute_charge_amounts(quantity: float, unit_price: float, tax_rate: Optional[float]) -> Tuple[float, float]:
    """(tax_amount, total_amount) for a line; tax_rate is a percentage of the subtotal."""
    subtotal = quantity * unit_price
    tax = round(subtotal * (tax_rate or 0) / 100, 2)
    return tax, round(subtotal + tax, 2)


def _number(raw: Dict[str, Any], name: str, errors: List[str], minimum: float,
            maximum: Optional[float] = None, inclusive: bool = True) -> Optional[float]:
    try:
        value = float(raw.get(name))
    except (TypeError, ValueError):
        errors.append(f"{name}: must be a number")
        return None
    if value < minimum or (not inclusive and value == minimum) or (maximum is not None and value > maximum):
        bound = f">= {minimum}" if inclusive else f"> {minimum}"
        if maximum is not None:
            bound = f"between {minimum} and {maximum}"
        errors.append(f"{name}: must be {bound}")
        return None
    return value


def _charge_values(raw: Dict[str, Any], custody_id: Optional[str]) -> Dict[str, Any]:
    """Validate and coerce the editable fields of a charge line."""
    errors: List[str] = []

    try:
        charge_type = ChargeType(raw.get("charge_type"))
    except ValueError:
        charge_type = None
        errors.append(f"charge_type: must be one of {', '.join(t.value for t in ChargeType)}")
    try:
        responsibility = ChargeResponsibility(raw.get("responsibility"))
    except ValueError:
        responsibility = None
        errors.append(f"responsibility: must be one of {', '.join(r.value for r in ChargeResponsibility)}")

    description = (raw.get("description") or "").strip()
    if not description:
        errors.append("description: required")

    quantity = _number(raw, "quantity", errors, 0, inclusive=False)
    unit_price = _number(raw, "unit_price", errors, 0)
    tax_rate = _number(raw, "tax_rate", errors, 0, maximum=100)

    if errors:
        raise ValidationError(f"Invalid charge: {'; '.join(errors)}", errors, custody_id)

    return {
        "charge_type": charge_type,
        "item_code": raw.get("item_code") or None,
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
        "tax_rate": tax_rate,
        "responsibility": responsibility,
        "notes": raw.get("notes"),
    }



# =============================================================================
# CUSTODY SERVICE
# =============================================================================

class CustodyService:
    """
    Main service for custody management.

    Usage:
        service = CustodyService(SqlAlchemyCustodyRepository(db))
        txn = service.state_machine.create({...}, created_by=user_id)
        service.state_machine.submit_for_approval(txn.id, user_id)
    """

    def __init__(
        self,
        repository: CustodyRepository,
        settings: Optional[CustodySettings] = None,
        sender: Optional[NotificationSender] = None,
        webhook_client: Optional[WebhookClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.settings = settings or get_settings()
        self.clock = clock

        self.sla = SLACalculator(self.settings)
        self.gate = ApprovalGate(repository, self.settings)
        self.dispatcher = IntegrationDispatcher(
            repository,
            self.settings,
            sender or LoggingNotificationSender(),
            webhook_client or HttpxWebhookClient(self.settings.webhook_timeout_seconds),
            clock=clock,
        )
        self.state_machine = CustodyStateMachine(repository, self.sla, self.gate, self.dispatcher, clock)

    def close(self) -> None:
        self.repository.close()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_custody(self, custody_id: str):
        return self.repository.get_transaction(custody_id)

    def list_custodies(
        self,
        filters: Optional[CustodyFilters] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PaginatedResult:
        """Filtered, paginated list ordered by creation time, newest first."""
        if page < 1:
            raise ValidationError("page must be >= 1", ["page: must be >= 1"])
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}",
                [f"page_size: must be between 1 and {MAX_PAGE_SIZE}"],
            )
        return self.repository.list_transactions(filters or CustodyFilters(), page, page_size)

    def get_statistics(self, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> Dict[str, Any]:
        return self.repository.get_statistics(to_naive_utc(date_from), to_naive_utc(date_to))

    def list_approvals(self, custody_id: str):
        self.repository.get_transaction(custody_id)
        return self.repository.list_approvals(custody_id)

    def pending_approvers(self, custody_id: str) -> List[str]:
        self.repository.get_transaction(custody_id)
        return self.gate.pending_approvers_for(custody_id)

    def get_audit_log(self, custody_id: str):
        self.repository.get_transaction(custody_id)
        return self.repository.list_audit_log(custody_id)

    def list_webhook_logs(self, custody_id: Optional[str] = None, limit: int = 50):
        return self.repository.list_webhook_logs(custody_id, min(max(limit, 1), MAX_PAGE_SIZE))

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    def add_document(
        self,
        custody_id: str,
        document_type: str,
        file_name: str,
        file_url: Optional[str] = None,
        expires_on: Optional[datetime] = None,
        document_category: str = DocumentCategory.OPTIONAL.value,
        uploaded_by: Optional[str] = None,
    ) -> CustodyDocumentDB:
        """Attach a document record. Terminal transactions accept no new documents."""
        txn = self.repository.get_transaction(custody_id)
        if txn.status in TERMINAL_STATUSES:
            raise ImmutableStateError(
                f"Custody {txn.custody_no} is {txn.status.value}; documents can no longer be added",
                custody_id,
            )

        try:
            doc_type = DocumentType(document_type)
            category = DocumentCategory(document_category)
        except ValueError as e:
            raise ValidationError(str(e), [str(e)], custody_id)
        if not file_name:
            raise ValidationError("file_name is required", ["file_name: required"], custody_id)

        document = CustodyDocumentDB(
            id=str(uuid4()),
            custody_id=custody_id,
            document_type=doc_type,
            document_category=category,
            file_name=file_name,
            file_url=file_url,
            expires_on=to_naive_utc(expires_on),
            expiry_notice=ExpiryNotice.NONE,
            uploaded_by=uploaded_by,
            uploaded_at=self.clock(),
        )
        self.repository.add_document(document)
        logger.info(f"Attached {doc_type.value} document to custody {txn.custody_no}")
        return document

    def list_documents(self, custody_id: str):
        self.repository.get_transaction(custody_id)
        return self.repository.list_documents(custody_id)

    # =========================================================================
    # CHARGES
    # =========================================================================

    def add_charge(
        self,
        custody_id: str,
        charge_type: str,
        description: str,
        quantity: float = 1,
        unit_price: float = 0,
        tax_rate: Optional[float] = None,
        responsibility: str = ChargeResponsibility.CUSTOMER.value,
        item_code: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CustodyChargeDB:
        """Add a draft charge line. Voided custodies take no charges."""
        txn = self.repository.get_transaction(custody_id)
        if txn.status == CustodyStatus.VOIDED:
            raise ImmutableStateError(f"Custody {txn.custody_no} is voided; charges can no longer be added", custody_id)

        values = _charge_values(
            {
                "charge_type": charge_type,
                "description": description,
                "quantity": quantity,
                "unit_price": unit_price,
                "tax_rate": self.settings.charge_tax_rate if tax_rate is None else tax_rate,
                "responsibility": responsibility,
                "item_code": item_code,
                "notes": notes,
            },
            custody_id,
        )
        charge = CustodyChargeDB(
            id=str(uuid4()),
            custody_id=custody_id,
            status=ChargeStatus.DRAFT,
            created_at=self.clock(),
            **values,
        )
        charge.tax_amount, charge.total_amount = compute_charge_amounts(
            charge.quantity, charge.unit_price, charge.tax_rate
        )
        self.repository.add_charge(charge)
        logger.info(f"Added {charge.charge_type.value} charge {charge.total_amount:.2f} to custody {txn.custody_no}")
        return charge

    def update_charge(
        self, charge_id: str, changes: Dict[str, Any], custody_id: Optional[str] = None
    ) -> CustodyChargeDB:
        """Edit a draft charge and recompute its amounts. Posted charges are locked."""
        unknown = sorted(set(changes) - set(CHARGE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown charge field(s): {', '.join(unknown)}", unknown)

        charge = self.repository.get_charge(charge_id)
        if custody_id is not None and charge.custody_id != custody_id:
            raise CustodyNotFoundError(f"Charge {charge_id} not found on custody {custody_id}", custody_id)
        if charge.status != ChargeStatus.DRAFT:
            raise ImmutableStateError(
                f"Charge {charge_id} is {charge.status.value}; only draft charges can be edited",
                charge.custody_id,
            )

        current = {name: getattr(charge, name) for name in CHARGE_FIELDS}
        for name, value in _charge_values({**current, **changes}, charge.custody_id).items():
            setattr(charge, name, value)
        charge.tax_amount, charge.total_amount = compute_charge_amounts(
            charge.quantity, charge.unit_price, charge.tax_rate
        )
        self.repository.save_charges([charge])
        return charge

    def post_charges(self, custody_id: str, charge_ids: List[str], posted_by: Optional[str]) -> List[CustodyChargeDB]:
        """
        Lock a batch of draft charges for billing.

        All-or-nothing: an unknown id, a charge from another custody or one
        that is already posted refuses the whole batch.
        """
        txn = self.repository.get_transaction(custody_id)
        if not charge_ids:
            raise ValidationError("No charges selected", ["charge_ids: at least one required"], custody_id)

        charges = [self.repository.get_charge(charge_id) for charge_id in dict.fromkeys(charge_ids)]
        for charge in charges:
            if charge.custody_id != custody_id:
                raise ValidationError(
                    f"Charge {charge.id} does not belong to custody {txn.custody_no}",
                    [f"charge_ids: {charge.id} belongs to another custody"],
                    custody_id,
                )
            if charge.status != ChargeStatus.DRAFT:
                raise ImmutableStateError(f"Charge {charge.id} is already {charge.status.value}", custody_id)

        now = self.clock()
        for charge in charges:
            charge.status = ChargeStatus.POSTED
            charge.posted_by = posted_by
            charge.posted_at = now
        self.repository.save_charges(charges)

        total = sum(c.total_amount or 0 for c in charges)
        logger.info(f"Posted {len(charges)} charge(s) totalling {total:.2f} on custody {txn.custody_no}")
        return charges

    def list_charges(self, custody_id: str):
        self.repository.get_transaction(custody_id)
        return self.repository.list_charges(custody_id)

    # =========================================================================
    # NOTIFICATION PREFERENCES
    # =========================================================================

    def get_notification_preference(self, user_id: str) -> NotificationPreferenceDB:
        """Stored preferences, or the defaults if the user never saved any."""
        preference = self.repository.get_notification_preference(user_id)
        if preference is None:
            preference = NotificationPreferenceDB(id=None, user_id=user_id, **PREFERENCE_DEFAULTS)
        return preference

    def update_notification_preference(self, user_id: str, changes: Dict[str, Any]) -> NotificationPreferenceDB:
        unknown = sorted(set(changes) - set(PREFERENCE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown preference field(s): {', '.join(unknown)}", unknown)

        now = self.clock()
        preference = self.repository.get_notification_preference(user_id)
        if preference is None:
            preference = NotificationPreferenceDB(
                id=str(uuid4()), user_id=user_id, created_at=now, **PREFERENCE_DEFAULTS
            )

        for key, value in changes.items():
            setattr(preference, key, value)
        preference.updated_at = now
        return self.repository.save_notification_preference(preference)

    # =========================================================================
    # INTEGRATION SETTINGS
    # =========================================================================

    def list_integration_settings(self) -> List[IntegrationSettingDB]:
        return self.repository.list_integration_settings()

    def update_integration_setting(
        self,
        integration_type: str,
        is_enabled: Optional[bool] = None,
        endpoint_url: Optional[str] = None,
        api_key_name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> IntegrationSettingDB:
        """Create or update the settings of one partner integration."""
        try:
            kind = IntegrationType(integration_type)
        except ValueError as e:
            raise ValidationError(str(e), [str(e)])

        now = self.clock()
        setting = next((s for s in self.repository.list_integration_settings() if s.integration_type == kind), None)
        if setting is None:
            setting = IntegrationSettingDB(
                id=str(uuid4()), integration_type=kind, is_enabled=False, config={}, created_at=now
            )

        if is_enabled is not None:
            setting.is_enabled = is_enabled
        if endpoint_url is not None:
            setting.endpoint_url = endpoint_url or None
        if api_key_name is not None:
            setting.api_key_name = api_key_name or None
        if config is not None:
            setting.config = {**(setting.config or {}), **config}
        setting.updated_at = now

        logger.info(f"Integration {kind.value} updated (enabled={setting.is_enabled})")
        return self.repository.save_integration_setting(setting)
