"""
Custody State Machine

Explicit state machine for the custody / vehicle-replacement workflow.
Every status change goes through the transition table below; no code path
writes an arbitrary status.

    draft -> pending_approval -> approved -> active -> closed
    any non-terminal state -> voided

Each transition:
1. Loads the transaction and checks the edge
2. Validates cross-field rules before mutating anything
3. Saves the transaction, its approval decisions and one audit row atomically,
   guarded by the optimistic version check (one retry on conflict)
4. Hands the committed event to the integration dispatcher. Dispatch
   failures are logged and never undo the transition.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from ...models.db_models import (
    ApprovalStatus, CustodianType, CustodyApprovalDB, CustodyAuditLogDB, CustodyStatus,
    CustodyTransactionDB, DocumentCategory, RatePolicy, ReasonCode,
)
from .approval_gate import ApprovalGate, GateOutcome
from .exceptions import (
    ConcurrentModificationError, ImmutableStateError, InvalidTransitionError,
    PreconditionError, ValidationError,
)
from .integration_dispatcher import CustodyEvent, IntegrationDispatcher
from .repository import CustodyRepository, to_naive_utc, utc_now
from .sla_engine import SLACalculator


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
MAX_WRITE_ATTEMPTS = 2  # First write plus one retry after a version conflict


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    CustodyStatus.DRAFT: {
        "description": "Created by an operator, not yet submitted",
        "allowed_transitions": [CustodyStatus.PENDING_APPROVAL, CustodyStatus.VOIDED],
        "terminal": False,
        "deletable": True,
    },
    CustodyStatus.PENDING_APPROVAL: {
        "description": "SLA targets stamped, awaiting approver decisions",
        "allowed_transitions": [CustodyStatus.APPROVED, CustodyStatus.VOIDED],
        "terminal": False,
        "deletable": False,
    },
    CustodyStatus.APPROVED: {
        "description": "Quorum reached, awaiting replacement vehicle handover",
        "allowed_transitions": [CustodyStatus.ACTIVE, CustodyStatus.VOIDED],
        "terminal": False,
        "deletable": False,
    },
    CustodyStatus.ACTIVE: {
        "description": "Replacement vehicle is with the custodian",
        "allowed_transitions": [CustodyStatus.CLOSED, CustodyStatus.VOIDED],
        "terminal": False,
        "deletable": False,
    },
    CustodyStatus.CLOSED: {
        "description": "Vehicle returned and transaction finalized",
        "allowed_transitions": [],  # Terminal state
        "terminal": True,
        "deletable": False,
    },
    CustodyStatus.VOIDED: {
        "description": "Rejected or administratively cancelled",
        "allowed_transitions": [],  # Terminal state
        "terminal": True,
        "deletable": False,
    },
}

TERMINAL_STATUSES = tuple(s for s, c in STATE_CONFIG.items() if c["terminal"])
OPEN_STATUSES = tuple(s for s, c in STATE_CONFIG.items() if not c["terminal"])


def _status_value(status) -> Optional[str]:
    return getattr(status, "value", status)


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    return f"{existing}\n{note}" if existing else note


# =============================================================================
# CREATE INPUT
# =============================================================================

class CustodyCreateData(BaseModel):
    """Fields accepted when an operator opens a custody transaction."""
    agreement_id: str = Field(..., min_length=1)
    agreement_line_id: Optional[str] = None
    customer_id: str = Field(..., min_length=1)
    branch_id: Optional[str] = None
    original_vehicle_id: str = Field(..., min_length=1)
    replacement_vehicle_id: Optional[str] = None

    custodian_name: Optional[str] = Field(None, min_length=2, max_length=200)
    custodian_type: CustodianType = CustodianType.CUSTOMER
    custodian_contact: Optional[Dict[str, Any]] = None

    reason_code: ReasonCode
    incident_narrative: Optional[str] = Field(None, max_length=2000)
    incident_date: datetime

    effective_from: datetime
    expected_return_date: Optional[datetime] = None

    rate_policy: RatePolicy = RatePolicy.INHERIT
    special_rate_code: Optional[str] = Field(None, max_length=50)

    notes: Optional[str] = Field(None, max_length=5000)
    tags: Optional[List[str]] = Field(None, max_length=20)

    @field_validator("incident_date", "effective_from", "expected_return_date")
    @classmethod
    def normalize_timezone(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def check_cross_field_rules(self):
        if self.rate_policy == RatePolicy.SPECIAL_CODE and not self.special_rate_code:
            raise ValueError("special_rate_code is required when rate_policy is special_code")
        if self.expected_return_date is not None and self.expected_return_date <= self.effective_from:
            raise ValueError("expected_return_date must be after effective_from")
        return self


def _format_errors(exc: PydanticValidationError) -> List[str]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        errors.append(f"{location}: {error['msg']}" if location else error["msg"])
    return errors


# =============================================================================
# STATE MACHINE
# =============================================================================

@dataclass
class _Change:
    """What one committed write did, for the audit row and the dispatcher."""
    trigger: str
    from_status: CustodyStatus
    to_status: CustodyStatus
    event: Optional[CustodyEvent] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    approvals: List[CustodyApprovalDB] = field(default_factory=list)


class CustodyStateMachine:
    """
    Enforces legal status transitions and the side effects each one requires.

    Core principles:
    - Status only follows edges of STATE_CONFIG
    - SLA targets are stamped once, on first submission
    - A single rejection vetoes the transaction
    - One actor's decision wins per transition; stale writers are retried
      once and then surfaced as ConcurrentModificationError
    """

    def __init__(
        self,
        repository: CustodyRepository,
        sla_calculator: SLACalculator,
        approval_gate: ApprovalGate,
        dispatcher: Optional[IntegrationDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.sla = sla_calculator
        self.gate = approval_gate
        self.dispatcher = dispatcher
        self.clock = clock

    def get_state_config(self, status: CustodyStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(status, {})

    def can_transition(self, from_status: CustodyStatus, to_status: CustodyStatus) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_status)
        if to_status in config.get("allowed_transitions", []):
            return True, "Transition allowed"
        if config.get("terminal"):
            return False, f"{_status_value(from_status)} is a terminal state"
        return False, f"Cannot transition from {_status_value(from_status)} to {_status_value(to_status)}"

    def _require_transition(self, txn: CustodyTransactionDB, to_status: CustodyStatus) -> None:
        allowed, reason = self.can_transition(txn.status, to_status)
        if not allowed:
            raise InvalidTransitionError(
                f"Custody {txn.custody_no}: {reason}",
                txn.id,
                from_status=_status_value(txn.status),
                to_status=_status_value(to_status),
            )

    def _require_status(self, txn: CustodyTransactionDB, status: CustodyStatus, operation: str) -> None:
        if txn.status != status:
            raise InvalidTransitionError(
                f"Custody {txn.custody_no}: {operation} requires status {status.value}, "
                f"current status is {_status_value(txn.status)}",
                txn.id,
                from_status=_status_value(txn.status),
            )

    def _require_documents(self, txn: CustodyTransactionDB) -> None:
        """At least one document in the required category must be attached."""
        documents = self.repository.list_documents(txn.id)
        if not any(d.document_category == DocumentCategory.REQUIRED for d in documents):
            raise PreconditionError(
                f"Cannot submit custody {txn.custody_no}: required documents not uploaded", txn.id
            )

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def _apply(
        self,
        custody_id: str,
        actor_id: Optional[str],
        action: Callable[[CustodyTransactionDB, datetime], Optional[_Change]],
    ) -> Tuple[CustodyTransactionDB, Optional[_Change]]:
        """
        Run `action` against a fresh copy of the transaction and persist it.

        `action` validates, mutates and describes the change, or returns None
        when there is nothing to write. On a version conflict the whole action
        is re-run once against a reloaded transaction.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            txn = self.repository.get_transaction(custody_id)
            expected_version = txn.version
            now = self.clock()

            try:
                change = action(txn, now)
            except Exception:
                # A refused action may have touched session-tracked objects
                self.repository.discard()
                raise
            if change is None:
                return txn, None

            txn.updated_at = now
            audit = CustodyAuditLogDB(
                id=str(uuid4()),
                custody_id=txn.id,
                from_status=change.from_status,
                to_status=change.to_status,
                trigger=change.trigger,
                actor_id=actor_id,
                event_metadata=change.metadata,
                created_at=now,
            )

            try:
                self.repository.save_transaction(txn, expected_version, change.approvals, audit)
            except ConcurrentModificationError:
                if attempt == MAX_WRITE_ATTEMPTS:
                    logger.warning(f"Custody {custody_id}: {change.trigger} lost a concurrent write, giving up")
                    raise
                logger.info(f"Custody {custody_id}: version conflict on {change.trigger}, retrying")
                continue

            if change.from_status != change.to_status:
                logger.info(
                    f"Custody {txn.custody_no}: {change.from_status.value} -> {change.to_status.value} "
                    f"({change.trigger}) by {actor_id or SYSTEM_ACTOR}"
                )
            self._emit(txn, change)
            return txn, change

    def _emit(self, txn: CustodyTransactionDB, change: _Change) -> None:
        if change.event is None or self.dispatcher is None:
            return
        try:
            self.dispatcher.dispatch(txn.id, change.event, change.metadata)
        except Exception as e:
            # The transition is already committed; failed deliveries are retried by the scheduler
            logger.error(f"Dispatch of {change.event.value} for {txn.custody_no} failed: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create(self, data: Dict[str, Any], created_by: Optional[str] = None) -> CustodyTransactionDB:
        """Insert a draft transaction. Raises ValidationError on bad input."""
        try:
            payload = CustodyCreateData.model_validate(data)
        except PydanticValidationError as e:
            errors = _format_errors(e)
            raise ValidationError(f"Invalid custody transaction: {'; '.join(errors)}", errors)

        now = self.clock()
        if payload.incident_date > now:
            raise ValidationError("incident_date cannot be in the future", ["incident_date: cannot be in the future"])

        txn = CustodyTransactionDB(
            id=str(uuid4()),
            custody_no=self.repository.next_custody_no(),
            **payload.model_dump(),
            status=CustodyStatus.DRAFT,
            sla_breached=False,
            last_overdue_reminder_day=0,
            created_by=created_by,
            version=1,
            created_at=now,
            updated_at=now,
        )
        audit = CustodyAuditLogDB(
            id=str(uuid4()),
            custody_id=txn.id,
            from_status=None,
            to_status=CustodyStatus.DRAFT,
            trigger="created",
            actor_id=created_by,
            event_metadata={"reason_code": payload.reason_code.value},
            created_at=now,
        )
        self.repository.add_transaction(txn, audit)
        logger.info(f"Created custody {txn.custody_no} ({payload.reason_code.value}) by {created_by or SYSTEM_ACTOR}")
        return txn

    def submit_for_approval(self, custody_id: str, actor_id: Optional[str] = None) -> CustodyTransactionDB:
        """
        draft -> pending_approval. Stamps SLA targets and creates approval rows.

        Refused with PreconditionError, leaving the draft untouched, when no
        required document is attached or no approver is configured.
        """
        def action(txn, now):
            self._require_transition(txn, CustodyStatus.PENDING_APPROVAL)
            self._require_documents(txn)

            metadata: Dict[str, Any] = {}
            approve_by, handover_by = txn.sla_target_approve_by, txn.sla_target_handover_by
            if approve_by is None or handover_by is None:
                approve_by, handover_by, sla_metadata = self.sla.calculate_targets(txn, now)
                metadata["sla"] = sla_metadata

            approvals = self.gate.build_approvals(txn, now, due_by=approve_by)

            txn.sla_target_approve_by = approve_by
            txn.sla_target_handover_by = handover_by
            txn.status = CustodyStatus.PENDING_APPROVAL
            metadata["approvers"] = [a.approver_id for a in approvals]

            return _Change(
                trigger="submitted",
                from_status=CustodyStatus.DRAFT,
                to_status=CustodyStatus.PENDING_APPROVAL,
                event=CustodyEvent.SUBMITTED,
                metadata=metadata,
                approvals=approvals,
            )

        txn, _ = self._apply(custody_id, actor_id, action)
        return txn

    def approve(self, custody_id: str, approver_id: str, notes: Optional[str] = None) -> CustodyTransactionDB:
        """
        Record one approver's acceptance.

        Transitions to approved once the quorum is satisfied; otherwise the
        transaction stays in pending_approval awaiting the other approvers.
        """
        def action(txn, now):
            self._require_status(txn, CustodyStatus.PENDING_APPROVAL, "approve")

            approvals = self.repository.list_approvals(txn.id)
            decided = self.gate.record_decision(approvals, approver_id, ApprovalStatus.APPROVED, notes, now)
            outcome = self.gate.evaluate(approvals)
            metadata = {"approver_id": approver_id, "notes": notes, "outcome": outcome.value}

            if outcome != GateOutcome.APPROVED:
                return _Change(
                    trigger="approval_recorded",
                    from_status=txn.status,
                    to_status=txn.status,
                    metadata=metadata,
                    approvals=[decided],
                )

            self._require_transition(txn, CustodyStatus.APPROVED)
            txn.status = CustodyStatus.APPROVED
            txn.approved_by = approver_id
            txn.approved_at = now
            return _Change(
                trigger="approved",
                from_status=CustodyStatus.PENDING_APPROVAL,
                to_status=CustodyStatus.APPROVED,
                event=CustodyEvent.APPROVED,
                metadata=metadata,
                approvals=[decided],
            )

        txn, _ = self._apply(custody_id, approver_id, action)
        return txn

    def reject(self, custody_id: str, approver_id: str, reason: str) -> CustodyTransactionDB:
        """pending_approval -> voided. A single rejection vetoes the transaction."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", ["reason: required"], custody_id)

        def action(txn, now):
            self._require_status(txn, CustodyStatus.PENDING_APPROVAL, "reject")

            approvals = self.repository.list_approvals(txn.id)
            decided = self.gate.record_decision(approvals, approver_id, ApprovalStatus.REJECTED, reason, now)

            self._require_transition(txn, CustodyStatus.VOIDED)
            txn.status = CustodyStatus.VOIDED
            txn.notes = reason
            txn.closed_by = approver_id
            txn.closed_at = now
            return _Change(
                trigger="rejected",
                from_status=CustodyStatus.PENDING_APPROVAL,
                to_status=CustodyStatus.VOIDED,
                event=CustodyEvent.REJECTED,
                metadata={"approver_id": approver_id, "rejection_reason": reason},
                approvals=[decided],
            )

        txn, _ = self._apply(custody_id, approver_id, action)
        return txn

    def assign_replacement_vehicle(
        self, custody_id: str, vehicle_id: str, actor_id: Optional[str] = None
    ) -> CustodyTransactionDB:
        """Set or change the replacement vehicle before handover."""
        if not vehicle_id:
            raise ValidationError("replacement_vehicle_id is required", ["replacement_vehicle_id: required"], custody_id)

        def action(txn, now):
            if txn.status not in (CustodyStatus.DRAFT, CustodyStatus.PENDING_APPROVAL, CustodyStatus.APPROVED):
                raise ImmutableStateError(
                    f"Custody {txn.custody_no}: replacement vehicle cannot change in status {_status_value(txn.status)}",
                    txn.id,
                )
            previous = txn.replacement_vehicle_id
            txn.replacement_vehicle_id = vehicle_id
            return _Change(
                trigger="replacement_assigned",
                from_status=txn.status,
                to_status=txn.status,
                metadata={"previous_vehicle_id": previous, "replacement_vehicle_id": vehicle_id},
            )

        txn, _ = self._apply(custody_id, actor_id, action)
        return txn

    def activate(self, custody_id: str, actor_id: Optional[str] = None) -> CustodyTransactionDB:
        """approved -> active. Requires a replacement vehicle."""
        def action(txn, now):
            self._require_status(txn, CustodyStatus.APPROVED, "activate")
            if not txn.replacement_vehicle_id:
                raise PreconditionError(
                    f"Custody {txn.custody_no}: replacement vehicle must be assigned before handover",
                    txn.id,
                )
            self._require_transition(txn, CustodyStatus.ACTIVE)
            txn.status = CustodyStatus.ACTIVE
            return _Change(
                trigger="handover",
                from_status=CustodyStatus.APPROVED,
                to_status=CustodyStatus.ACTIVE,
                event=CustodyEvent.HANDOVER,
                metadata={"replacement_vehicle_id": txn.replacement_vehicle_id},
            )

        txn, _ = self._apply(custody_id, actor_id, action)
        return txn

    def _check_return_date(self, txn: CustodyTransactionDB, actual_return_date: datetime) -> datetime:
        actual_return_date = to_naive_utc(actual_return_date)
        if txn.effective_from is not None and actual_return_date < txn.effective_from:
            raise ValidationError(
                "actual_return_date cannot be before effective_from",
                ["actual_return_date: must be on or after effective_from"],
                txn.id,
            )
        return actual_return_date

    def record_return(
        self,
        custody_id: str,
        actual_return_date: datetime,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> CustodyTransactionDB:
        """Record the vehicle return on an active transaction. Status is unchanged."""
        def action(txn, now):
            self._require_status(txn, CustodyStatus.ACTIVE, "record_return")
            returned_at = self._check_return_date(txn, actual_return_date)
            txn.actual_return_date = returned_at
            txn.notes = _append_note(txn.notes, notes)
            return _Change(
                trigger="return_recorded",
                from_status=txn.status,
                to_status=txn.status,
                metadata={"actual_return_date": returned_at.isoformat()},
            )

        txn, _ = self._apply(custody_id, actor_id, action)
        return txn

    def close(
        self,
        custody_id: str,
        closer_id: Optional[str],
        notes: Optional[str] = None,
        actual_return_date: Optional[datetime] = None,
    ) -> CustodyTransactionDB:
        """active -> closed. Terminal."""
        return self._close(custody_id, closer_id, notes, actual_return_date, CustodyEvent.CLOSED)

    def auto_close(self, custody_id: str, days_overdue: int) -> CustodyTransactionDB:
        """Force-close an abandoned active transaction as the system actor."""
        note = f"Auto-closed by system after {days_overdue} days overdue"
        return self._close(custody_id, SYSTEM_ACTOR, note, None, CustodyEvent.AUTO_CLOSED,
                           {"days_overdue": days_overdue})

    def _close(self, custody_id, closer_id, notes, actual_return_date, event, extra_metadata=None):
        def action(txn, now):
            self._require_status(txn, CustodyStatus.ACTIVE, "close")
            self._require_transition(txn, CustodyStatus.CLOSED)
            if actual_return_date is not None:
                txn.actual_return_date = self._check_return_date(txn, actual_return_date)

            txn.status = CustodyStatus.CLOSED
            txn.closed_by = closer_id
            txn.closed_at = now
            txn.notes = _append_note(txn.notes, notes)

            metadata = {"closed_by": closer_id, **(extra_metadata or {})}
            if txn.actual_return_date is not None:
                metadata["actual_return_date"] = txn.actual_return_date.isoformat()
            return _Change(
                trigger=event.value,
                from_status=CustodyStatus.ACTIVE,
                to_status=CustodyStatus.CLOSED,
                event=event,
                metadata=metadata,
            )

        txn, _ = self._apply(custody_id, closer_id, action)
        return txn

    def void(self, custody_id: str, reason: Optional[str], actor_id: Optional[str]) -> CustodyTransactionDB:
        """Administrative cancellation from any non-terminal state."""
        def action(txn, now):
            from_status = txn.status
            self._require_transition(txn, CustodyStatus.VOIDED)
            txn.status = CustodyStatus.VOIDED
            txn.closed_by = actor_id
            txn.closed_at = now
            txn.notes = _append_note(txn.notes, f"Voided: {reason}" if reason else None)
            return _Change(
                trigger="voided",
                from_status=from_status,
                to_status=CustodyStatus.VOIDED,
                event=CustodyEvent.VOIDED,
                metadata={"reason": reason, "voided_by": actor_id},
            )

        txn, _ = self._apply(custody_id, actor_id, action)
        return txn

    def delete(self, custody_id: str) -> None:
        """Delete a draft. Anything past draft already has an audit trail to keep."""
        txn = self.repository.get_transaction(custody_id)
        if not self.get_state_config(txn.status).get("deletable"):
            raise ImmutableStateError(
                f"Custody {txn.custody_no} is {_status_value(txn.status)} and can no longer be deleted",
                txn.id,
            )
        self.repository.delete_transaction(custody_id)
        logger.info(f"Deleted draft custody {txn.custody_no}")

    # -------------------------------------------------------------------------
    # System writes used by the reconciliation scheduler
    # -------------------------------------------------------------------------

    def mark_sla_breached(self, custody_id: str, breach_info: Optional[Dict[str, Any]] = None) -> bool:
        """
        Flip sla_breached false -> true.

        Returns True only for the write that flipped it, so the caller can
        dispatch exactly one sla_breach event per transaction.
        """
        def action(txn, now):
            if txn.sla_breached or txn.status in TERMINAL_STATUSES:
                return None
            txn.sla_breached = True
            return _Change(
                trigger="sla_breach",
                from_status=txn.status,
                to_status=txn.status,
                metadata=breach_info or {},
            )

        _, change = self._apply(custody_id, SYSTEM_ACTOR, action)
        return change is not None

    def record_overdue_reminder(self, custody_id: str, milestone_day: int) -> bool:
        """
        Claim an overdue reminder milestone (day 7, 14, 21...).

        Returns True only if this milestone had not been reminded yet.
        """
        def action(txn, now):
            if txn.status != CustodyStatus.ACTIVE or (txn.last_overdue_reminder_day or 0) >= milestone_day:
                return None
            txn.last_overdue_reminder_day = milestone_day
            return _Change(
                trigger="overdue_reminder",
                from_status=txn.status,
                to_status=txn.status,
                metadata={"milestone_day": milestone_day},
            )

        _, change = self._apply(custody_id, SYSTEM_ACTOR, action)
        return change is not None
