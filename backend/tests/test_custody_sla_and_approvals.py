"""
Tests for the SLA Calculator and the Approval Gate.

SLA:
- Window resolution: branch override -> reason code -> "other"
- Breach predicates are pure and strict (deadline itself is not a breach)

Approval gate:
- Unanimous by default, majority and single as alternatives
- Any rejection vetoes regardless of quorum rule
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest


NOW = datetime(2025, 1, 1, 9, 0)


def _txn(**fields):
    from custody_engine.models.db_models import CustodyStatus, CustodyTransactionDB, ReasonCode

    values = {
        "id": "c-1",
        "custody_no": "CUS-2025-000001",
        "reason_code": ReasonCode.BREAKDOWN,
        "branch_id": None,
        "status": CustodyStatus.PENDING_APPROVAL,
        "sla_target_approve_by": None,
        "sla_target_handover_by": None,
    }
    values.update(fields)
    return CustodyTransactionDB(**values)


# =============================================================================
# TEST: SLA CALCULATOR
# =============================================================================

class TestSLACalculator:
    """Deadline derivation and breach predicates."""

    def test_accident_window_is_tighter_than_maintenance(self, settings):
        from custody_engine.services.custody.sla_engine import SLACalculator

        calc = SLACalculator(settings)
        accident = calc.resolve_windows("accident")
        maintenance = calc.resolve_windows("maintenance")

        assert accident["approve_hours"] < maintenance["approve_hours"]
        assert accident["handover_hours"] < maintenance["handover_hours"]

    def test_branch_override_wins(self, settings):
        """A branch-specific window replaces the reason default."""
        from custody_engine.models.db_models import ReasonCode
        from custody_engine.services.custody.sla_engine import SLACalculator

        settings.branch_sla_windows = {"airport": {"breakdown": {"approve_hours": 1, "handover_hours": 2}}}
        calc = SLACalculator(settings)

        approve_by, handover_by, metadata = calc.calculate_targets(
            _txn(branch_id="airport", reason_code=ReasonCode.BREAKDOWN), NOW
        )
        assert approve_by == NOW + timedelta(hours=1)
        assert handover_by == NOW + timedelta(hours=2)
        assert metadata["branch_id"] == "airport"

        # Other branches keep the reason default
        approve_by, _, _ = calc.calculate_targets(_txn(branch_id="downtown"), NOW)
        assert approve_by == NOW + timedelta(hours=4)

    def test_missing_reason_window_falls_back_to_other(self, settings):
        from custody_engine.services.custody.sla_engine import SLACalculator

        del settings.sla_windows["damage"]
        calc = SLACalculator(settings)

        assert calc.resolve_windows("damage") == settings.sla_windows["other"]

    def test_approve_breach_is_strictly_after_deadline(self, settings):
        from custody_engine.services.custody.sla_engine import SLACalculator

        deadline = NOW + timedelta(hours=4)
        txn = _txn(sla_target_approve_by=deadline)

        assert SLACalculator.is_approve_breached(txn, deadline) is False
        assert SLACalculator.is_approve_breached(txn, deadline + timedelta(seconds=1)) is True

    def test_approve_breach_only_while_pending(self, settings):
        from custody_engine.models.db_models import CustodyStatus
        from custody_engine.services.custody.sla_engine import SLACalculator

        txn = _txn(status=CustodyStatus.APPROVED, sla_target_approve_by=NOW)
        assert SLACalculator.is_approve_breached(txn, NOW + timedelta(days=1)) is False

    def test_handover_breach_while_approved(self, settings):
        """Handover clock keeps running after approval until activation."""
        from custody_engine.models.db_models import CustodyStatus
        from custody_engine.services.custody.sla_engine import SLACalculator

        calc = SLACalculator(settings)
        txn = _txn(
            status=CustodyStatus.APPROVED,
            sla_target_approve_by=NOW,
            sla_target_handover_by=NOW + timedelta(hours=4),
        )

        is_breached, info = calc.check_breach(txn, NOW + timedelta(hours=5))
        assert is_breached is True
        assert info["breached_targets"] == ["handover"]

        txn.status = CustodyStatus.ACTIVE
        assert calc.check_breach(txn, NOW + timedelta(hours=5)) == (False, None)

    def test_no_targets_means_no_breach(self, settings):
        from custody_engine.services.custody.sla_engine import SLACalculator

        assert SLACalculator(settings).check_breach(_txn(), NOW + timedelta(days=30)) == (False, None)


# =============================================================================
# TEST: APPROVAL GATE
# =============================================================================

def _approvals(*statuses):
    from custody_engine.models.db_models import ApprovalStatus, CustodyApprovalDB

    return [
        CustodyApprovalDB(
            id=f"a-{i}", custody_id="c-1", approver_id=f"sup_{i}",
            approval_level=i, status=ApprovalStatus(status),
        )
        for i, status in enumerate(statuses, start=1)
    ]


class TestApprovalGate:
    """Quorum and veto rules."""

    @pytest.mark.parametrize("rule,statuses,expected", [
        ("unanimous", ("approved", "approved", "approved"), "approved"),
        ("unanimous", ("approved", "approved", "pending"), "pending"),
        ("unanimous", ("approved", "rejected", "approved"), "rejected"),
        ("majority", ("approved", "approved", "pending"), "approved"),
        ("majority", ("approved", "pending", "pending"), "pending"),
        ("majority", ("approved", "approved", "rejected"), "rejected"),
        ("single", ("approved", "pending", "pending"), "approved"),
        ("single", ("pending", "rejected", "approved"), "rejected"),
    ])
    def test_evaluate(self, settings, rule, statuses, expected):
        from custody_engine.services.custody.approval_gate import ApprovalGate

        settings.quorum_rule = rule
        gate = ApprovalGate(MagicMock(), settings)

        assert gate.evaluate(_approvals(*statuses)).value == expected

    def test_build_approvals_deduplicates_and_copies_due_by(self, settings):
        from custody_engine.models.db_models import ApprovalStatus
        from custody_engine.services.custody.approval_gate import ApprovalGate

        settings.approvers = ["sup_1", "sup_2", "sup_1"]
        gate = ApprovalGate(MagicMock(), settings)
        txn = _txn(sla_target_approve_by=NOW + timedelta(hours=4))

        rows = gate.build_approvals(txn, NOW)

        assert [r.approver_id for r in rows] == ["sup_1", "sup_2"]
        assert [r.approval_level for r in rows] == [1, 2]
        assert all(r.status == ApprovalStatus.PENDING for r in rows)
        assert all(r.due_by == txn.sla_target_approve_by for r in rows)

    def test_reason_specific_approvers(self, settings):
        """Accidents can require a different approver set."""
        from custody_engine.models.db_models import ReasonCode
        from custody_engine.services.custody.approval_gate import ApprovalGate

        settings.reason_approvers = {"accident": ["claims_lead", "sup_1"]}
        gate = ApprovalGate(MagicMock(), settings)

        rows = gate.build_approvals(_txn(reason_code=ReasonCode.ACCIDENT), NOW)
        assert [r.approver_id for r in rows] == ["claims_lead", "sup_1"]

    def test_pending_approvers_and_is_satisfied(self, settings):
        from custody_engine.services.custody.approval_gate import ApprovalGate

        repo = MagicMock()
        repo.list_approvals.return_value = _approvals("approved", "pending")
        gate = ApprovalGate(repo, settings)

        assert gate.pending_approvers_for("c-1") == ["sup_2"]
        assert gate.is_satisfied("c-1") is False

        repo.list_approvals.return_value = _approvals("approved", "approved")
        assert gate.is_satisfied("c-1") is True

    def test_invalid_quorum_rule_is_refused(self, settings):
        from custody_engine.services.custody.approval_gate import ApprovalGate

        settings.quorum_rule = "two_thirds"
        with pytest.raises(ValueError):
            ApprovalGate(MagicMock(), settings)
