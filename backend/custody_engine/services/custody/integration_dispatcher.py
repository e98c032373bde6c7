"""
Integration Dispatcher

Translates a custody workflow event into notifications and partner webhooks.

Usage:
    dispatcher = IntegrationDispatcher(repository, settings, sender, client)
    dispatcher.dispatch(custody_id, CustodyEvent.APPROVED, {"notes": "ok"})

Event handling is table-driven: each event type maps to one notification
rule (who hears about it, which preference can silence it) and any number
of webhook rules (which partner integration, which action, which config
flag gates it). Adding an event means registering rules, not editing a
branch.

Every delivery attempt appends one WebhookLogDB row. That log is the only
durable evidence of delivery and the input to the scheduler's retry sweep.
A failed delivery never raises; only failure to record the attempt does.
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from ...config import CustodySettings
from ...models.db_models import (
    ApprovalStatus, CustodyTransactionDB, IntegrationSettingDB, IntegrationType,
    ReasonCode, WebhookLogDB,
)
from .exceptions import CustodyError, IntegrationDispatchError
from .repository import CustodyRepository, utc_now
from .transports import NotificationSender, WebhookClient


logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "notification"
SIMULATED_ENDPOINT = "simulated"


class CustodyEvent(str, Enum):
    """Workflow events that may trigger notifications and webhooks."""
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    HANDOVER = "handover"
    CLOSED = "closed"
    VOIDED = "voided"
    SLA_BREACH = "sla_breach"
    DOCUMENT_EXPIRING_SOON = "document_expiring_soon"
    DOCUMENT_EXPIRED = "document_expired"
    CUSTODY_OVERDUE = "custody_overdue"
    AUTO_CLOSED = "auto_closed"


# =============================================================================
# RECIPIENT RESOLUTION
# =============================================================================

RecipientResolver = Callable[[CustodyRepository, CustodySettings, CustodyTransactionDB], List[str]]


def pending_approvers(repository, settings, txn) -> List[str]:
    return [
        a.approver_id for a in repository.list_approvals(txn.id)
        if a.status == ApprovalStatus.PENDING
    ]


def creator(repository, settings, txn) -> List[str]:
    return [txn.created_by] if txn.created_by else []


def customer(repository, settings, txn) -> List[str]:
    return [txn.customer_id] if txn.customer_id else []


def creator_and_customer(repository, settings, txn) -> List[str]:
    return creator(repository, settings, txn) + customer(repository, settings, txn)


def escalation_list(repository, settings, txn) -> List[str]:
    return list(settings.escalation_recipients)


# =============================================================================
# HANDLER DESCRIPTORS
# =============================================================================

@dataclass(frozen=True)
class NotificationRule:
    recipients: RecipientResolver
    preference_key: Optional[str] = None  # NotificationPreferenceDB flag that can silence it
    subject: str = "Custody update"


@dataclass(frozen=True)
class WebhookRule:
    integration_type: IntegrationType
    action: str
    data: Dict[str, Any] = field(default_factory=dict)
    config_flag: Optional[str] = None  # Key in IntegrationSettingDB.config that must be truthy
    condition: Optional[Callable[[CustodyTransactionDB], bool]] = None


@dataclass
class EventHandlers:
    notification: Optional[NotificationRule] = None
    webhooks: List[WebhookRule] = field(default_factory=list)


class EventRegistry:
    """Event type -> handler descriptors."""

    def __init__(self):
        self._handlers: Dict[CustodyEvent, EventHandlers] = {}

    def on_notify(self, event: CustodyEvent, rule: NotificationRule) -> "EventRegistry":
        self._handlers.setdefault(event, EventHandlers()).notification = rule
        return self

    def on_webhook(self, event: CustodyEvent, rule: WebhookRule) -> "EventRegistry":
        self._handlers.setdefault(event, EventHandlers()).webhooks.append(rule)
        return self

    def handlers_for(self, event: CustodyEvent) -> EventHandlers:
        return self._handlers.get(event, EventHandlers())


def _is_accident(txn: CustodyTransactionDB) -> bool:
    return txn.reason_code == ReasonCode.ACCIDENT


def build_default_registry() -> EventRegistry:
    """Notification and partner webhook rules for the custody workflow."""
    registry = EventRegistry()

    registry.on_notify(CustodyEvent.SUBMITTED, NotificationRule(pending_approvers, "notify_on_submission", "Custody SUBMITTED"))
    registry.on_notify(CustodyEvent.APPROVED, NotificationRule(creator, "notify_on_approval", "Custody APPROVED"))
    registry.on_notify(CustodyEvent.REJECTED, NotificationRule(creator, "notify_on_rejection", "Custody REJECTED"))
    registry.on_notify(CustodyEvent.HANDOVER, NotificationRule(customer, "notify_on_handover", "Custody HANDOVER"))
    registry.on_notify(CustodyEvent.CLOSED, NotificationRule(creator_and_customer, "notify_on_closure", "Custody CLOSED"))
    registry.on_notify(CustodyEvent.AUTO_CLOSED, NotificationRule(creator_and_customer, "notify_on_closure", "Custody AUTO-CLOSED"))
    registry.on_notify(CustodyEvent.VOIDED, NotificationRule(creator, None, "Custody VOIDED"))
    registry.on_notify(CustodyEvent.SLA_BREACH, NotificationRule(escalation_list, "notify_on_sla_breach", "Custody SLA BREACH"))
    registry.on_notify(CustodyEvent.DOCUMENT_EXPIRING_SOON, NotificationRule(creator, None, "Custody document expiring"))
    registry.on_notify(CustodyEvent.DOCUMENT_EXPIRED, NotificationRule(creator, None, "Custody document expired"))
    registry.on_notify(CustodyEvent.CUSTODY_OVERDUE, NotificationRule(creator_and_customer, None, "Custody OVERDUE"))

    # Fleet status sync
    registry.on_webhook(CustodyEvent.HANDOVER, WebhookRule(IntegrationType.FLEET, "update_vehicle_status", {"status": "in_custody"}))
    for event in (CustodyEvent.CLOSED, CustodyEvent.AUTO_CLOSED):
        registry.on_webhook(event, WebhookRule(IntegrationType.FLEET, "update_vehicle_status", {"status": "available"}))
        registry.on_webhook(event, WebhookRule(IntegrationType.BILLING, "create_invoice", config_flag="auto_create_invoice"))

    # Claims submission for accidents
    registry.on_webhook(
        CustodyEvent.SUBMITTED,
        WebhookRule(IntegrationType.CLAIMS, "submit_claim", config_flag="auto_submit_accidents", condition=_is_accident),
    )

    return registry


# =============================================================================
# MESSAGE BODIES
# =============================================================================

def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "Not specified"


def _destination(user_id: str, preference) -> str:
    """Address on the first enabled channel that has one, else the user id."""
    if preference is None:
        return user_id
    if preference.email_enabled is not False and preference.email_address:
        return preference.email_address
    if preference.sms_enabled and preference.phone_number:
        return preference.phone_number
    return user_id


def generate_notification_body(event: CustodyEvent, txn: CustodyTransactionDB, metadata: Dict[str, Any]) -> str:
    reason = getattr(txn.reason_code, "value", txn.reason_code)
    base_info = f"Custody Transaction: {txn.custody_no}\nReason: {reason}\nCustodian: {txn.custodian_name or '-'}"

    if event == CustodyEvent.SUBMITTED:
        return f"A new custody transaction has been submitted for approval.\n\n{base_info}\n\nPlease review and approve at your earliest convenience."
    if event == CustodyEvent.APPROVED:
        return f"Custody transaction has been approved.\n\n{base_info}\n\nYou can now proceed with vehicle handover."
    if event == CustodyEvent.REJECTED:
        return f"Custody transaction has been rejected.\n\n{base_info}\n\nReason: {metadata.get('rejection_reason') or 'Not specified'}"
    if event == CustodyEvent.HANDOVER:
        return f"Vehicle handover is scheduled.\n\n{base_info}\n\nEffective from: {_fmt(txn.effective_from)}"
    if event in (CustodyEvent.CLOSED, CustodyEvent.AUTO_CLOSED):
        return f"Custody transaction has been closed.\n\n{base_info}\n\nReturn date: {_fmt(txn.actual_return_date)}"
    if event == CustodyEvent.SLA_BREACH:
        return f"SLA BREACH ALERT\n\n{base_info}\n\nThe custody transaction has exceeded its SLA targets. Immediate action required."
    if event == CustodyEvent.CUSTODY_OVERDUE:
        return f"Custody transaction is {metadata.get('days_overdue')} days overdue.\n\n{base_info}\n\nExpected return: {_fmt(txn.expected_return_date)}"
    if event in (CustodyEvent.DOCUMENT_EXPIRING_SOON, CustodyEvent.DOCUMENT_EXPIRED):
        return f"Document {metadata.get('document_type')} requires attention ({event.value}).\n\n{base_info}"
    return f"Custody transaction update.\n\n{base_info}"


def build_webhook_payload(
    txn: CustodyTransactionDB,
    event: CustodyEvent,
    action: str,
    data: Dict[str, Any],
    timestamp: datetime,
) -> Dict[str, Any]:
    return {
        "custody_no": txn.custody_no,
        "custody_id": txn.id,
        "event_type": event.value,
        "action": action,
        "timestamp": timestamp.isoformat(),
        "data": {
            **data,
            "custody_details": {
                "reason_code": getattr(txn.reason_code, "value", txn.reason_code),
                "custodian_name": txn.custodian_name,
                "custodian_type": getattr(txn.custodian_type, "value", txn.custodian_type),
                "effective_from": txn.effective_from.isoformat() if txn.effective_from else None,
                "expected_return_date": txn.expected_return_date.isoformat() if txn.expected_return_date else None,
                "original_vehicle_id": txn.original_vehicle_id,
                "replacement_vehicle_id": txn.replacement_vehicle_id,
                "status": getattr(txn.status, "value", txn.status),
            },
        },
    }


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DispatchResult:
    custody_id: str
    event_type: str
    notifications_sent: int = 0
    notifications_skipped: int = 0
    notifications_failed: int = 0
    webhooks_sent: int = 0
    webhooks_failed: int = 0
    log_ids: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.notifications_failed == 0 and self.webhooks_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "custody_id": self.custody_id,
            "event_type": self.event_type,
            "success": self.success,
            "notifications_sent": self.notifications_sent,
            "notifications_skipped": self.notifications_skipped,
            "notifications_failed": self.notifications_failed,
            "webhooks_sent": self.webhooks_sent,
            "webhooks_failed": self.webhooks_failed,
        }


class IntegrationDispatcher:
    """
    Decides which notifications and partner webhooks fire for an event,
    delivers them, and records every attempt.
    """

    def __init__(
        self,
        repository: CustodyRepository,
        settings: CustodySettings,
        sender: NotificationSender,
        webhook_client: WebhookClient,
        registry: Optional[EventRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.settings = settings
        self.sender = sender
        self.webhook_client = webhook_client
        self.registry = registry or build_default_registry()
        self.clock = clock

    def dispatch(
        self,
        custody_id: str,
        event_type,
        metadata: Optional[Dict[str, Any]] = None,
        recipients: Optional[List[str]] = None,
    ) -> DispatchResult:
        """
        Dispatch one workflow event.

        Raises IntegrationDispatchError only when the transaction cannot be
        read or an attempt cannot be recorded. Delivery failures are logged
        to the webhook log and left for the retry sweep.
        """
        event = CustodyEvent(event_type)
        metadata = dict(metadata or {})
        result = DispatchResult(custody_id=custody_id, event_type=event.value)

        try:
            txn = self.repository.get_transaction(custody_id)
        except CustodyError as e:
            raise IntegrationDispatchError(f"Cannot dispatch {event.value}: {e.message}", custody_id)

        handlers = self.registry.handlers_for(event)

        if handlers.notification is not None:
            self._notify(txn, event, handlers.notification, metadata, recipients, result)

        if handlers.webhooks:
            self._call_webhooks(txn, event, handlers.webhooks, metadata, result)

        logger.info(
            f"Dispatched {event.value} for {txn.custody_no}: "
            f"{result.notifications_sent} notified, {result.notifications_skipped} skipped, "
            f"{result.webhooks_sent} webhooks ok, {result.webhooks_failed + result.notifications_failed} failed"
        )
        return result

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def _notify(self, txn, event, rule, metadata, recipients, result):
        targets = recipients or rule.recipients(self.repository, self.settings, txn)

        for user_id in dict.fromkeys(t for t in targets if t):
            preference = self.repository.get_notification_preference(user_id)
            if preference is not None and rule.preference_key and getattr(preference, rule.preference_key) is False:
                logger.info(f"User {user_id} has disabled {event.value} notifications")
                result.notifications_skipped += 1
                continue
            if preference is not None and preference.email_enabled is False and not preference.sms_enabled:
                logger.info(f"User {user_id} has no notification channel enabled, skipping {event.value}")
                result.notifications_skipped += 1
                continue

            payload = {
                "to": _destination(user_id, preference),
                "subject": f"{rule.subject}: {txn.custody_no}",
                "body": generate_notification_body(event, txn, metadata),
                "event_type": event.value,
                "custody_no": txn.custody_no,
                "metadata": metadata,
            }
            entry = self._deliver_notification(txn.id, event.value, user_id, payload)
            result.log_ids.append(entry.id)
            if entry.success:
                result.notifications_sent += 1
            else:
                result.notifications_failed += 1

    def _deliver_notification(self, custody_id, event_type, recipient, payload, retry_of=None, attempt=0):
        success = False
        status_code = None
        error_message = None
        try:
            self.sender.send_notification(recipient, event_type, payload)
            success = True
            status_code = 200
        except Exception as e:
            error_message = str(e)
            logger.warning(f"Notification to {recipient} for {event_type} failed: {e}")

        return self._record(
            custody_id=custody_id,
            event_type=event_type,
            webhook_type=NOTIFICATION_CHANNEL,
            endpoint=recipient,
            payload=payload,
            response=None,
            status_code=status_code,
            success=success,
            error_message=error_message,
            retry_of=retry_of,
            attempt=attempt,
        )

    # -------------------------------------------------------------------------
    # Partner webhooks
    # -------------------------------------------------------------------------

    def _call_webhooks(self, txn, event, rules, metadata, result):
        integrations = {s.integration_type: s for s in self.repository.list_integration_settings()}

        for rule in rules:
            setting = integrations.get(rule.integration_type)
            if setting is None or not setting.is_enabled:
                continue
            if rule.config_flag and not (setting.config or {}).get(rule.config_flag):
                continue
            if rule.condition is not None and not rule.condition(txn):
                continue

            payload = build_webhook_payload(txn, event, rule.action, {**rule.data, **metadata}, self.clock())
            entry = self._deliver_webhook(txn.id, event.value, setting, payload)
            result.log_ids.append(entry.id)
            if entry.success:
                result.webhooks_sent += 1
            else:
                result.webhooks_failed += 1

    def _auth_headers(self, setting: IntegrationSettingDB) -> Dict[str, str]:
        if setting.api_key_name:
            api_key = os.getenv(setting.api_key_name)
            if api_key:
                return {"Authorization": f"Bearer {api_key}"}
        return {}

    def _deliver_webhook(self, custody_id, event_type, setting, payload, retry_of=None, attempt=0, endpoint=None):
        integration = getattr(setting.integration_type, "value", setting.integration_type)
        endpoint = endpoint or setting.endpoint_url or SIMULATED_ENDPOINT
        response = None
        status_code = None
        success = False
        error_message = None

        if endpoint == SIMULATED_ENDPOINT:
            # No partner endpoint configured: record a simulated delivery
            response = {"message": "Simulated webhook call"}
            status_code = 200
            success = True
        else:
            try:
                reply = self.webhook_client.call_webhook(endpoint, payload, self._auth_headers(setting))
                response = reply.body
                status_code = reply.status_code
                success = reply.ok
                if not success:
                    error_message = f"HTTP {status_code}"
            except Exception as e:
                error_message = str(e) or type(e).__name__
                logger.warning(f"{integration} webhook {endpoint} failed for {event_type}: {error_message}")

        return self._record(
            custody_id=custody_id,
            event_type=event_type,
            webhook_type=integration,
            endpoint=endpoint,
            payload=payload,
            response=response,
            status_code=status_code,
            success=success,
            error_message=error_message,
            retry_of=retry_of,
            attempt=attempt,
        )

    # -------------------------------------------------------------------------
    # Retry support
    # -------------------------------------------------------------------------

    def redeliver(self, entry: WebhookLogDB, attempt: int) -> WebhookLogDB:
        """
        Retry one failed delivery with its stored payload and endpoint.
        Appends a new log row linked to the lineage root. Webhook retries
        still need the integration enabled and use its current credentials.
        """
        root_id = entry.retry_of_id or entry.id

        if entry.webhook_type == NOTIFICATION_CHANNEL:
            return self._deliver_notification(
                entry.custody_id, entry.event_type, entry.endpoint, entry.payload or {},
                retry_of=root_id, attempt=attempt,
            )

        setting = next(
            (s for s in self.repository.list_integration_settings()
             if getattr(s.integration_type, "value", s.integration_type) == entry.webhook_type),
            None,
        )
        if setting is None or not setting.is_enabled:
            return self._record(
                custody_id=entry.custody_id,
                event_type=entry.event_type,
                webhook_type=entry.webhook_type,
                endpoint=entry.endpoint,
                payload=entry.payload,
                response=None,
                status_code=None,
                success=False,
                error_message=f"Integration {entry.webhook_type} is disabled",
                retry_of=root_id,
                attempt=attempt,
            )

        return self._deliver_webhook(
            entry.custody_id, entry.event_type, setting, entry.payload or {},
            retry_of=root_id, attempt=attempt, endpoint=entry.endpoint,
        )

    def _record(self, custody_id, event_type, webhook_type, endpoint, payload, response,
                status_code, success, error_message, retry_of, attempt) -> WebhookLogDB:
        entry = WebhookLogDB(
            id=str(uuid4()),
            custody_id=custody_id,
            event_type=event_type,
            webhook_type=webhook_type,
            endpoint=endpoint,
            payload=payload,
            response=response,
            status_code=status_code,
            success=success,
            error_message=error_message,
            retry_of_id=retry_of,
            retry_count=attempt,
            created_at=self.clock(),
        )
        try:
            return self.repository.add_webhook_log(entry)
        except Exception as e:
            raise IntegrationDispatchError(f"Failed to record {webhook_type} delivery: {e}", custody_id)
