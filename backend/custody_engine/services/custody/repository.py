"""
Custody Store

Repository boundary between the workflow and the relational store.

Two implementations share one contract:
- SqlAlchemyCustodyRepository: production store over a SQLAlchemy Session.
  Optimistic concurrency is a versioned UPDATE: the mapper checks the
  loaded version and save_transaction() assigns the next one.
- InMemoryCustodyRepository: thread-safe fake. Hands out detached copies so
  a stale writer is detected exactly as the database would detect it.

Every write that changes a transaction goes through save_transaction(),
which persists the transaction, its approval decisions and its audit entry
atomically.
"""
import copy
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_, exists, func
from sqlalchemy.orm import Session, aliased
from sqlalchemy.orm.exc import StaleDataError

from ...models.db_models import (
    CustodyTransactionDB, CustodyApprovalDB, CustodyDocumentDB, CustodyChargeDB, CustodyAuditLogDB,
    CustodySequenceDB, WebhookLogDB, NotificationPreferenceDB, IntegrationSettingDB,
    ChargeStatus, CustodyStatus, IntegrationType,
)
from .exceptions import ConcurrentModificationError, CustodyNotFoundError


CUSTODY_NO_PREFIX = "CUS"
SEQUENCE_NAME = "custody_no"


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC. Naive values are assumed UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_custody_no(year: int, value: int) -> str:
    return f"{CUSTODY_NO_PREFIX}-{year}-{value:06d}"


@dataclass
class CustodyFilters:
    """List filters. Empty fields do not constrain the result."""
    status: Optional[List[CustodyStatus]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    branch_id: Optional[str] = None
    reason_code: Optional[List[str]] = None
    customer_id: Optional[str] = None
    agreement_id: Optional[str] = None
    sla_breached: Optional[bool] = None
    search: Optional[str] = None


@dataclass
class PaginatedResult:
    data: List[Any] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)


def build_statistics(
    active: int,
    pending: int,
    breaches: int,
    closed: int,
    durations: Iterable[Tuple[datetime, datetime]],
    sla_tracked: int,
    sla_tracked_breached: int,
    unposted_charges: int = 0,
) -> Dict[str, Any]:
    """Shape the aggregate counts returned by get_statistics()."""
    days = [
        (closed_at - effective_from).total_seconds() / 86400
        for effective_from, closed_at in durations
        if effective_from and closed_at
    ]
    avg_duration = round(sum(days) / len(days), 1) if days else 0.0

    if sla_tracked:
        compliance = round(100.0 * (sla_tracked - sla_tracked_breached) / sla_tracked, 1)
    else:
        compliance = 100.0

    return {
        "active_custodies": active,
        "pending_approvals": pending,
        "sla_breaches": breaches,
        "closed_this_period": closed,
        "avg_duration_days": avg_duration,
        "sla_compliance_pct": compliance,
        "unposted_charges": unposted_charges,
    }


# =============================================================================
# REPOSITORY CONTRACT
# =============================================================================

class CustodyRepository(ABC):
    """Operations the workflow consumes from the custody store."""

    # Transactions ------------------------------------------------------------

    @abstractmethod
    def next_custody_no(self) -> str:
        """Allocate the next human-readable custody number. Never reused."""

    @abstractmethod
    def add_transaction(self, txn: CustodyTransactionDB, audit: Optional[CustodyAuditLogDB] = None) -> CustodyTransactionDB:
        ...

    @abstractmethod
    def get_transaction(self, custody_id: str) -> CustodyTransactionDB:
        """Raises CustodyNotFoundError for unknown ids."""

    @abstractmethod
    def save_transaction(
        self,
        txn: CustodyTransactionDB,
        expected_version: int,
        approvals: Sequence[CustodyApprovalDB] = (),
        audit: Optional[CustodyAuditLogDB] = None,
    ) -> CustodyTransactionDB:
        """Persist atomically. Raises ConcurrentModificationError on a stale version."""

    @abstractmethod
    def delete_transaction(self, custody_id: str) -> None:
        ...

    @abstractmethod
    def list_transactions(self, filters: CustodyFilters, page: int = 1, page_size: int = 20) -> PaginatedResult:
        ...

    @abstractmethod
    def list_transactions_by_status(self, statuses: Sequence[CustodyStatus]) -> List[CustodyTransactionDB]:
        ...

    # Approvals ---------------------------------------------------------------

    @abstractmethod
    def list_approvals(self, custody_id: str) -> List[CustodyApprovalDB]:
        ...

    # Documents ---------------------------------------------------------------

    @abstractmethod
    def add_document(self, document: CustodyDocumentDB) -> CustodyDocumentDB:
        ...

    @abstractmethod
    def save_document(self, document: CustodyDocumentDB) -> CustodyDocumentDB:
        ...

    @abstractmethod
    def list_documents(self, custody_id: str) -> List[CustodyDocumentDB]:
        ...

    @abstractmethod
    def list_documents_expiring(
        self, before: datetime, statuses: Sequence[CustodyStatus]
    ) -> List[Tuple[CustodyDocumentDB, CustodyTransactionDB]]:
        """Documents expiring on or before `before` whose custody is in `statuses`."""

    # Charges -----------------------------------------------------------------

    @abstractmethod
    def add_charge(self, charge: CustodyChargeDB) -> CustodyChargeDB:
        ...

    @abstractmethod
    def get_charge(self, charge_id: str) -> CustodyChargeDB:
        """Raises CustodyNotFoundError for an unknown id."""

    @abstractmethod
    def save_charges(self, charges: Sequence[CustodyChargeDB]) -> List[CustodyChargeDB]:
        """Persist several charge rows together; all or none are written."""

    @abstractmethod
    def list_charges(self, custody_id: str) -> List[CustodyChargeDB]:
        """Newest first."""

    # Audit -------------------------------------------------------------------

    @abstractmethod
    def list_audit_log(self, custody_id: str) -> List[CustodyAuditLogDB]:
        ...

    # Webhook log -------------------------------------------------------------

    @abstractmethod
    def add_webhook_log(self, entry: WebhookLogDB) -> WebhookLogDB:
        ...

    @abstractmethod
    def list_webhook_logs(self, custody_id: Optional[str] = None, limit: int = 50) -> List[WebhookLogDB]:
        ...

    @abstractmethod
    def list_retryable_webhook_logs(self, since: datetime, max_retries: int) -> List[WebhookLogDB]:
        """Failed lineage roots newer than `since`, below `max_retries`, never retried successfully."""

    @abstractmethod
    def annotate_webhook_retry(self, log_id: str, retry_count: int, last_retry_at: datetime) -> None:
        ...

    # Preferences / integration settings --------------------------------------

    @abstractmethod
    def get_notification_preference(self, user_id: str) -> Optional[NotificationPreferenceDB]:
        ...

    @abstractmethod
    def save_notification_preference(self, preference: NotificationPreferenceDB) -> NotificationPreferenceDB:
        ...

    @abstractmethod
    def list_integration_settings(self) -> List[IntegrationSettingDB]:
        ...

    @abstractmethod
    def save_integration_setting(self, setting: IntegrationSettingDB) -> IntegrationSettingDB:
        ...

    # Reporting ---------------------------------------------------------------

    @abstractmethod
    def get_statistics(self, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> Dict[str, Any]:
        ...

    def discard(self) -> None:
        """Drop unsaved changes made to objects handed out by this store."""

    def close(self) -> None:
        """Release underlying resources."""


# =============================================================================
# SQLALCHEMY REPOSITORY
# =============================================================================

class SqlAlchemyCustodyRepository(CustodyRepository):
    """Custody store backed by a SQLAlchemy Session."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def next_custody_no(self) -> str:
        seq = (
            self.db.query(CustodySequenceDB)
            .filter(CustodySequenceDB.name == SEQUENCE_NAME)
            .with_for_update()
            .first()
        )
        if seq is None:
            seq = CustodySequenceDB(name=SEQUENCE_NAME, last_value=0)
            self.db.add(seq)
        seq.last_value += 1
        self.db.flush()
        return format_custody_no(utc_now().year, seq.last_value)

    def add_transaction(self, txn, audit=None):
        self.db.add(txn)
        if audit is not None:
            self.db.add(audit)
        self.db.commit()
        return txn

    def get_transaction(self, custody_id):
        txn = self.db.get(CustodyTransactionDB, custody_id)
        if txn is None:
            raise CustodyNotFoundError(f"Custody transaction {custody_id} not found", custody_id)
        return txn

    def save_transaction(self, txn, expected_version, approvals=(), audit=None):
        if txn.version != expected_version:
            self.db.rollback()
            raise ConcurrentModificationError(
                f"Custody {txn.custody_no} was modified concurrently", txn.id
            )
        # The UPDATE carries WHERE version = expected_version
        txn.version = expected_version + 1
        for approval in approvals:
            self.db.add(approval)
        if audit is not None:
            self.db.add(audit)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrentModificationError(
                f"Custody {txn.id} was modified concurrently", txn.id
            )
        return txn

    def delete_transaction(self, custody_id):
        txn = self.get_transaction(custody_id)
        self.db.delete(txn)
        self.db.commit()

    def list_transactions(self, filters, page=1, page_size=20):
        query = self.db.query(CustodyTransactionDB)

        if filters.status:
            query = query.filter(CustodyTransactionDB.status.in_(filters.status))
        if filters.date_from:
            query = query.filter(CustodyTransactionDB.created_at >= filters.date_from)
        if filters.date_to:
            query = query.filter(CustodyTransactionDB.created_at <= filters.date_to)
        if filters.branch_id:
            query = query.filter(CustodyTransactionDB.branch_id == filters.branch_id)
        if filters.reason_code:
            query = query.filter(CustodyTransactionDB.reason_code.in_(filters.reason_code))
        if filters.customer_id:
            query = query.filter(CustodyTransactionDB.customer_id == filters.customer_id)
        if filters.agreement_id:
            query = query.filter(CustodyTransactionDB.agreement_id == filters.agreement_id)
        if filters.sla_breached is not None:
            query = query.filter(CustodyTransactionDB.sla_breached == filters.sla_breached)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.filter(or_(
                CustodyTransactionDB.custody_no.ilike(pattern),
                CustodyTransactionDB.custodian_name.ilike(pattern),
                CustodyTransactionDB.incident_narrative.ilike(pattern),
            ))

        total = query.count()
        rows = (
            query.order_by(CustodyTransactionDB.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return PaginatedResult(data=rows, total_count=total, page=page, page_size=page_size)

    def list_transactions_by_status(self, statuses):
        return self.db.query(CustodyTransactionDB).filter(
            CustodyTransactionDB.status.in_(list(statuses))
        ).all()

    def list_approvals(self, custody_id):
        return self.db.query(CustodyApprovalDB).filter(
            CustodyApprovalDB.custody_id == custody_id
        ).order_by(CustodyApprovalDB.approval_level.asc()).all()

    def add_document(self, document):
        self.db.add(document)
        self.db.commit()
        return document

    def save_document(self, document):
        self.db.add(document)
        self.db.commit()
        return document

    def list_documents(self, custody_id):
        return self.db.query(CustodyDocumentDB).filter(
            CustodyDocumentDB.custody_id == custody_id
        ).order_by(CustodyDocumentDB.uploaded_at.desc()).all()

    def list_documents_expiring(self, before, statuses):
        return (
            self.db.query(CustodyDocumentDB, CustodyTransactionDB)
            .join(CustodyTransactionDB, CustodyDocumentDB.custody_id == CustodyTransactionDB.id)
            .filter(
                CustodyDocumentDB.expires_on.isnot(None),
                CustodyDocumentDB.expires_on <= before,
                CustodyTransactionDB.status.in_(list(statuses)),
            )
            .all()
        )

    def add_charge(self, charge):
        self.db.add(charge)
        self.db.commit()
        return charge

    def get_charge(self, charge_id):
        charge = self.db.get(CustodyChargeDB, charge_id)
        if charge is None:
            raise CustodyNotFoundError(f"Charge {charge_id} not found")
        return charge

    def save_charges(self, charges):
        for charge in charges:
            self.db.add(charge)
        self.db.commit()
        return list(charges)

    def list_charges(self, custody_id):
        return self.db.query(CustodyChargeDB).filter(
            CustodyChargeDB.custody_id == custody_id
        ).order_by(CustodyChargeDB.created_at.desc()).all()

    def list_audit_log(self, custody_id):
        return self.db.query(CustodyAuditLogDB).filter(
            CustodyAuditLogDB.custody_id == custody_id
        ).order_by(CustodyAuditLogDB.created_at.desc()).all()

    def add_webhook_log(self, entry):
        self.db.add(entry)
        self.db.commit()
        return entry

    def list_webhook_logs(self, custody_id=None, limit=50):
        query = self.db.query(WebhookLogDB)
        if custody_id:
            query = query.filter(WebhookLogDB.custody_id == custody_id)
        return query.order_by(WebhookLogDB.created_at.desc()).limit(limit).all()

    def list_retryable_webhook_logs(self, since, max_retries):
        retry = aliased(WebhookLogDB)
        succeeded_retry = exists().where(
            retry.retry_of_id == WebhookLogDB.id,
            retry.success.is_(True),
        )
        return (
            self.db.query(WebhookLogDB)
            .filter(
                WebhookLogDB.retry_of_id.is_(None),
                WebhookLogDB.success.is_(False),
                WebhookLogDB.created_at >= since,
                func.coalesce(WebhookLogDB.retry_count, 0) < max_retries,
                ~succeeded_retry,
            )
            .order_by(WebhookLogDB.created_at.asc())
            .all()
        )

    def annotate_webhook_retry(self, log_id, retry_count, last_retry_at):
        entry = self.db.get(WebhookLogDB, log_id)
        if entry is None:
            return
        entry.retry_count = retry_count
        entry.last_retry_at = last_retry_at
        self.db.commit()

    def get_notification_preference(self, user_id):
        return self.db.query(NotificationPreferenceDB).filter(
            NotificationPreferenceDB.user_id == user_id
        ).first()

    def save_notification_preference(self, preference):
        self.db.add(preference)
        self.db.commit()
        return preference

    def list_integration_settings(self):
        return self.db.query(IntegrationSettingDB).all()

    def save_integration_setting(self, setting):
        self.db.add(setting)
        self.db.commit()
        return setting

    def get_statistics(self, date_from=None, date_to=None):
        T = CustodyTransactionDB

        def in_range(column, query):
            if date_from:
                query = query.filter(column >= date_from)
            if date_to:
                query = query.filter(column <= date_to)
            return query

        active = self.db.query(func.count(T.id)).filter(T.status == CustodyStatus.ACTIVE).scalar()
        pending = self.db.query(func.count(T.id)).filter(T.status == CustodyStatus.PENDING_APPROVAL).scalar()
        breaches = in_range(
            T.created_at, self.db.query(func.count(T.id)).filter(T.sla_breached.is_(True))
        ).scalar()
        closed_query = in_range(T.closed_at, self.db.query(T.effective_from, T.closed_at).filter(
            T.status == CustodyStatus.CLOSED
        ))
        durations = closed_query.all()
        tracked = in_range(
            T.created_at, self.db.query(func.count(T.id)).filter(T.sla_target_approve_by.isnot(None))
        ).scalar()
        tracked_breached = in_range(
            T.created_at,
            self.db.query(func.count(T.id)).filter(
                T.sla_target_approve_by.isnot(None), T.sla_breached.is_(True)
            ),
        ).scalar()
        unposted = self.db.query(func.count(CustodyChargeDB.id)).filter(
            CustodyChargeDB.status == ChargeStatus.DRAFT
        ).scalar()

        return build_statistics(
            active=active or 0,
            pending=pending or 0,
            breaches=breaches or 0,
            closed=len(durations),
            durations=durations,
            sla_tracked=tracked or 0,
            sla_tracked_breached=tracked_breached or 0,
            unposted_charges=unposted or 0,
        )

    def discard(self):
        self.db.rollback()

    def close(self):
        self.db.close()


# =============================================================================
# IN-MEMORY REPOSITORY
# =============================================================================

def _detach(obj):
    """Copy an ORM row's column values into a fresh, session-less instance."""
    if obj is None:
        return None
    cls = type(obj)
    values = {
        column.key: copy.deepcopy(getattr(obj, column.key))
        for column in cls.__mapper__.column_attrs
    }
    return cls(**values)


def _in_range(value: Optional[datetime], date_from: Optional[datetime], date_to: Optional[datetime]) -> bool:
    if value is None:
        return False
    if date_from and value < date_from:
        return False
    if date_to and value > date_to:
        return False
    return True


class InMemoryCustodyRepository(CustodyRepository):
    """Thread-safe custody store held in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._sequence = 0
        self._transactions: Dict[str, CustodyTransactionDB] = {}
        self._approvals: Dict[str, CustodyApprovalDB] = {}
        self._documents: Dict[str, CustodyDocumentDB] = {}
        self._charges: Dict[str, CustodyChargeDB] = {}
        self._audit: List[CustodyAuditLogDB] = []
        self._webhook_logs: Dict[str, WebhookLogDB] = {}
        self._preferences: Dict[str, NotificationPreferenceDB] = {}
        self._integrations: Dict[IntegrationType, IntegrationSettingDB] = {}

    def next_custody_no(self):
        with self._lock:
            self._sequence += 1
            return format_custody_no(utc_now().year, self._sequence)

    def add_transaction(self, txn, audit=None):
        with self._lock:
            if txn.version is None:
                txn.version = 1
            self._transactions[txn.id] = _detach(txn)
            if audit is not None:
                self._audit.append(_detach(audit))
        return txn

    def get_transaction(self, custody_id):
        with self._lock:
            stored = self._transactions.get(custody_id)
            if stored is None:
                raise CustodyNotFoundError(f"Custody transaction {custody_id} not found", custody_id)
            return _detach(stored)

    def save_transaction(self, txn, expected_version, approvals=(), audit=None):
        with self._lock:
            stored = self._transactions.get(txn.id)
            if stored is None:
                raise CustodyNotFoundError(f"Custody transaction {txn.id} not found", txn.id)
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    f"Custody {txn.custody_no} was modified concurrently", txn.id
                )
            txn.version = expected_version + 1
            self._transactions[txn.id] = _detach(txn)
            for approval in approvals:
                self._approvals[approval.id] = _detach(approval)
            if audit is not None:
                self._audit.append(_detach(audit))
        return txn

    def delete_transaction(self, custody_id):
        with self._lock:
            if custody_id not in self._transactions:
                raise CustodyNotFoundError(f"Custody transaction {custody_id} not found", custody_id)
            del self._transactions[custody_id]
            self._approvals = {k: v for k, v in self._approvals.items() if v.custody_id != custody_id}
            self._documents = {k: v for k, v in self._documents.items() if v.custody_id != custody_id}
            self._charges = {k: v for k, v in self._charges.items() if v.custody_id != custody_id}
            self._audit = [a for a in self._audit if a.custody_id != custody_id]

    def _matches(self, txn: CustodyTransactionDB, filters: CustodyFilters) -> bool:
        if filters.status and txn.status not in filters.status:
            return False
        if (filters.date_from or filters.date_to) and not _in_range(txn.created_at, filters.date_from, filters.date_to):
            return False
        if filters.branch_id and txn.branch_id != filters.branch_id:
            return False
        if filters.reason_code and txn.reason_code not in filters.reason_code:
            return False
        if filters.customer_id and txn.customer_id != filters.customer_id:
            return False
        if filters.agreement_id and txn.agreement_id != filters.agreement_id:
            return False
        if filters.sla_breached is not None and bool(txn.sla_breached) != filters.sla_breached:
            return False
        if filters.search:
            needle = filters.search.lower()
            haystack = [txn.custody_no, txn.custodian_name, txn.incident_narrative]
            if not any(needle in (value or "").lower() for value in haystack):
                return False
        return True

    def list_transactions(self, filters, page=1, page_size=20):
        with self._lock:
            rows = [t for t in self._transactions.values() if self._matches(t, filters)]
        rows.sort(key=lambda t: t.created_at or datetime.min, reverse=True)
        start = (page - 1) * page_size
        return PaginatedResult(
            data=[_detach(t) for t in rows[start:start + page_size]],
            total_count=len(rows),
            page=page,
            page_size=page_size,
        )

    def list_transactions_by_status(self, statuses):
        wanted = set(statuses)
        with self._lock:
            return [_detach(t) for t in self._transactions.values() if t.status in wanted]

    def list_approvals(self, custody_id):
        with self._lock:
            rows = [_detach(a) for a in self._approvals.values() if a.custody_id == custody_id]
        return sorted(rows, key=lambda a: a.approval_level or 0)

    def add_document(self, document):
        with self._lock:
            self._documents[document.id] = _detach(document)
        return document

    def save_document(self, document):
        return self.add_document(document)

    def list_documents(self, custody_id):
        with self._lock:
            return [_detach(d) for d in self._documents.values() if d.custody_id == custody_id]

    def list_documents_expiring(self, before, statuses):
        wanted = set(statuses)
        with self._lock:
            result = []
            for document in self._documents.values():
                txn = self._transactions.get(document.custody_id)
                if txn is None or txn.status not in wanted:
                    continue
                if document.expires_on is not None and document.expires_on <= before:
                    result.append((_detach(document), _detach(txn)))
            return result

    def add_charge(self, charge):
        with self._lock:
            self._charges[charge.id] = _detach(charge)
        return charge

    def get_charge(self, charge_id):
        with self._lock:
            stored = self._charges.get(charge_id)
            if stored is None:
                raise CustodyNotFoundError(f"Charge {charge_id} not found")
            return _detach(stored)

    def save_charges(self, charges):
        with self._lock:
            for charge in charges:
                self._charges[charge.id] = _detach(charge)
        return list(charges)

    def list_charges(self, custody_id):
        with self._lock:
            rows = [_detach(c) for c in self._charges.values() if c.custody_id == custody_id]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    def list_audit_log(self, custody_id):
        with self._lock:
            rows = [_detach(a) for a in self._audit if a.custody_id == custody_id]
        return list(reversed(rows))

    def add_webhook_log(self, entry):
        with self._lock:
            self._webhook_logs[entry.id] = _detach(entry)
        return entry

    def list_webhook_logs(self, custody_id=None, limit=50):
        with self._lock:
            rows = [
                _detach(e) for e in self._webhook_logs.values()
                if custody_id is None or e.custody_id == custody_id
            ]
        return list(reversed(rows))[:limit]

    def list_retryable_webhook_logs(self, since, max_retries):
        with self._lock:
            retried_ok = {
                e.retry_of_id for e in self._webhook_logs.values()
                if e.retry_of_id and e.success
            }
            return [
                _detach(e) for e in self._webhook_logs.values()
                if e.retry_of_id is None
                and not e.success
                and e.created_at is not None and e.created_at >= since
                and (e.retry_count or 0) < max_retries
                and e.id not in retried_ok
            ]

    def annotate_webhook_retry(self, log_id, retry_count, last_retry_at):
        with self._lock:
            entry = self._webhook_logs.get(log_id)
            if entry is not None:
                entry.retry_count = retry_count
                entry.last_retry_at = last_retry_at

    def get_notification_preference(self, user_id):
        with self._lock:
            return _detach(self._preferences.get(user_id))

    def save_notification_preference(self, preference):
        with self._lock:
            self._preferences[preference.user_id] = _detach(preference)
        return preference

    def list_integration_settings(self):
        with self._lock:
            return [_detach(s) for s in self._integrations.values()]

    def save_integration_setting(self, setting):
        with self._lock:
            self._integrations[setting.integration_type] = _detach(setting)
        return setting

    def get_statistics(self, date_from=None, date_to=None):
        with self._lock:
            rows = list(self._transactions.values())
            unposted = sum(1 for c in self._charges.values() if c.status == ChargeStatus.DRAFT)

        def created_in_range(t):
            if not date_from and not date_to:
                return True
            return _in_range(t.created_at, date_from, date_to)

        def closed_in_range(t):
            if not date_from and not date_to:
                return t.closed_at is not None
            return _in_range(t.closed_at, date_from, date_to)

        closed = [t for t in rows if t.status == CustodyStatus.CLOSED and closed_in_range(t)]
        tracked = [t for t in rows if t.sla_target_approve_by is not None and created_in_range(t)]

        return build_statistics(
            active=sum(1 for t in rows if t.status == CustodyStatus.ACTIVE),
            pending=sum(1 for t in rows if t.status == CustodyStatus.PENDING_APPROVAL),
            breaches=sum(1 for t in rows if t.sla_breached and created_in_range(t)),
            closed=len(closed),
            durations=[(t.effective_from, t.closed_at) for t in closed],
            sla_tracked=len(tracked),
            sla_tracked_breached=sum(1 for t in tracked if t.sla_breached),
            unposted_charges=unposted,
        )
