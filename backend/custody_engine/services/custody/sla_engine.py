"""
SLA Engine

Derives approval and handover deadlines for a custody transaction and
detects breaches.

Key behaviors:
- Windows are configuration, keyed by reason code, overridable per branch
- Deadlines are computed once, at first submission, and never move
- Breach predicates are side-effect free; the reconciliation scheduler
  applies the sla_breached flag
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from ...config import CustodySettings
from ...models.db_models import CustodyStatus, CustodyTransactionDB


# Statuses in which the handover deadline is still running
HANDOVER_PENDING_STATUSES = (CustodyStatus.PENDING_APPROVAL, CustodyStatus.APPROVED)


def _reason_value(reason_code) -> str:
    return getattr(reason_code, "value", reason_code) or "other"


class SLACalculator:
    """
    Pure function of transaction attributes to two deadlines.

    Resolution order for a window: branch override for the reason code,
    then the reason code's default window, then the "other" window.
    """

    def __init__(self, settings: CustodySettings):
        self.settings = settings

    def resolve_windows(self, reason_code, branch_id: Optional[str] = None) -> Dict[str, int]:
        """Approval/handover windows (hours) for a reason code and branch."""
        reason = _reason_value(reason_code)

        if branch_id:
            branch_windows = self.settings.branch_sla_windows.get(branch_id, {})
            if reason in branch_windows:
                return dict(branch_windows[reason])

        windows = self.settings.sla_windows
        return dict(windows.get(reason) or windows.get("other") or {"approve_hours": 8, "handover_hours": 24})

    def calculate_targets(
        self,
        txn: CustodyTransactionDB,
        submitted_at: datetime,
    ) -> Tuple[datetime, datetime, Dict[str, Any]]:
        """
        Calculate the SLA targets for a transaction entering pending_approval.

        Returns (approve_by, handover_by, metadata)
        """
        windows = self.resolve_windows(txn.reason_code, txn.branch_id)

        approve_by = submitted_at + timedelta(hours=windows["approve_hours"])
        handover_by = submitted_at + timedelta(hours=windows["handover_hours"])

        metadata = {
            "reason_code": _reason_value(txn.reason_code),
            "branch_id": txn.branch_id,
            "approve_hours": windows["approve_hours"],
            "handover_hours": windows["handover_hours"],
            "submitted_at": submitted_at.isoformat(),
        }

        return approve_by, handover_by, metadata

    # -------------------------------------------------------------------------
    # Breach predicates
    # -------------------------------------------------------------------------

    @staticmethod
    def is_approve_breached(txn: CustodyTransactionDB, now: datetime) -> bool:
        """Still awaiting approval after the approval deadline."""
        return (
            txn.status == CustodyStatus.PENDING_APPROVAL
            and txn.sla_target_approve_by is not None
            and now > txn.sla_target_approve_by
        )

    @staticmethod
    def is_handover_breached(txn: CustodyTransactionDB, now: datetime) -> bool:
        """Replacement vehicle not yet handed over after the handover deadline."""
        return (
            txn.status in HANDOVER_PENDING_STATUSES
            and txn.sla_target_handover_by is not None
            and now > txn.sla_target_handover_by
        )

    def check_breach(self, txn: CustodyTransactionDB, now: datetime) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Check whether a transaction is in breach of either target.

        Returns (is_breached, breach_info)
        """
        approve = self.is_approve_breached(txn, now)
        handover = self.is_handover_breached(txn, now)

        if not (approve or handover):
            return False, None

        breached_targets = []
        if approve:
            breached_targets.append("approval")
        if handover:
            breached_targets.append("handover")

        breach_info = {
            "custody_id": txn.id,
            "custody_no": txn.custody_no,
            "status": getattr(txn.status, "value", txn.status),
            "breached_targets": breached_targets,
            "sla_target_approve_by": txn.sla_target_approve_by.isoformat() if txn.sla_target_approve_by else None,
            "sla_target_handover_by": txn.sla_target_handover_by.isoformat() if txn.sla_target_handover_by else None,
        }
        return True, breach_info
