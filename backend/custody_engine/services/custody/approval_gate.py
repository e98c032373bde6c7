"""
Approval Gate

Multi-approver gating for transactions in pending_approval.

Rules:
- One approval row per configured approver, created on submission
- A single rejection vetoes the whole transaction
- Acceptance needs the configured quorum (unanimous by default)
- Each approver decides at most once; decisions are immutable
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from ...config import CustodySettings
from ...models.db_models import ApprovalStatus, CustodyApprovalDB, CustodyTransactionDB
from .exceptions import DuplicateDecisionError, PreconditionError
from .repository import CustodyRepository


class QuorumRule(str, Enum):
    """How many approvals are needed once nobody has rejected."""
    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    SINGLE = "single"


class GateOutcome(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalGate:
    """Decides when a pending transaction may leave pending_approval."""

    def __init__(self, repository: CustodyRepository, settings: CustodySettings):
        self.repository = repository
        self.settings = settings
        self.quorum_rule = QuorumRule(settings.quorum_rule)

    def build_approvals(
        self, txn: CustodyTransactionDB, now: datetime, due_by: Optional[datetime] = None
    ) -> List[CustodyApprovalDB]:
        """Create one pending approval row per configured approver, due by `due_by`."""
        approver_ids = self.settings.approvers_for(getattr(txn.reason_code, "value", txn.reason_code))
        if not approver_ids:
            raise PreconditionError(
                f"No approvers configured for reason {getattr(txn.reason_code, 'value', txn.reason_code)}",
                txn.id,
            )

        return [
            CustodyApprovalDB(
                id=str(uuid4()),
                custody_id=txn.id,
                approver_id=approver_id,
                approval_level=level,
                status=ApprovalStatus.PENDING,
                due_by=due_by or txn.sla_target_approve_by,
                created_at=now,
            )
            for level, approver_id in enumerate(dict.fromkeys(approver_ids), start=1)
        ]

    def record_decision(
        self,
        approvals: List[CustodyApprovalDB],
        approver_id: str,
        decision: ApprovalStatus,
        notes: Optional[str],
        now: datetime,
    ) -> CustodyApprovalDB:
        """
        Record one approver's decision on the in-hand approval rows.

        Raises PreconditionError if the approver is not assigned,
        DuplicateDecisionError if they already decided.
        """
        approval = next((a for a in approvals if a.approver_id == approver_id), None)
        if approval is None:
            custody_id = approvals[0].custody_id if approvals else None
            raise PreconditionError(f"{approver_id} is not an assigned approver", custody_id)

        if approval.status != ApprovalStatus.PENDING:
            raise DuplicateDecisionError(
                f"Approver {approver_id} already decided ({approval.status.value})",
                approval.custody_id,
            )

        approval.status = decision
        approval.decided_at = now
        approval.notes = notes
        return approval

    def evaluate(self, approvals: List[CustodyApprovalDB]) -> GateOutcome:
        """Apply veto and quorum to a set of approval rows."""
        if any(a.status == ApprovalStatus.REJECTED for a in approvals):
            return GateOutcome.REJECTED

        total = len(approvals)
        approved = sum(1 for a in approvals if a.status == ApprovalStatus.APPROVED)

        if total == 0:
            return GateOutcome.PENDING

        if self.quorum_rule == QuorumRule.UNANIMOUS:
            satisfied = approved == total
        elif self.quorum_rule == QuorumRule.MAJORITY:
            satisfied = approved * 2 > total
        else:
            satisfied = approved >= 1

        return GateOutcome.APPROVED if satisfied else GateOutcome.PENDING

    def pending_approvers_for(self, custody_id: str) -> List[str]:
        """Approvers who have not yet decided, in approval-level order."""
        return [
            a.approver_id
            for a in self.repository.list_approvals(custody_id)
            if a.status == ApprovalStatus.PENDING
        ]

    def is_satisfied(self, custody_id: str) -> bool:
        return self.evaluate(self.repository.list_approvals(custody_id)) == GateOutcome.APPROVED
