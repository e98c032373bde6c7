"""
Tests for the Reconciliation Scheduler.

Each sweep is checked for its effect and for idempotence across runs:
1. SLA breach detection flips the flag once and escalates once
2. Document expiry warns at <=7 days and again when expired
3. Overdue reminders fire only at weekly milestones
4. Webhook retries never exceed the retry cap per lineage
5. Auto-close only touches custodies overdue beyond the threshold
Plus failure isolation, single-flight and the run report shape.
"""
from datetime import datetime, timedelta

import pytest


@pytest.fixture
def scheduler(service, settings, clock):
    from custody_engine.services.custody.reconciliation_scheduler import CustodyReconciliationScheduler

    return CustodyReconciliationScheduler(lambda: service, settings, clock=clock)


def _notifications(repo, custody_id, event_type):
    return [
        e for e in repo.list_webhook_logs(custody_id, limit=200)
        if e.webhook_type == "notification" and e.event_type == event_type
    ]


# =============================================================================
# TEST: RUN REPORT
# =============================================================================

class TestSchedulerRun:
    """Report shape, isolation and single-flight."""

    def test_empty_run_reports_all_tasks(self, scheduler, clock):
        from custody_engine.services.custody.reconciliation_scheduler import SWEEP_ORDER

        report = scheduler.run()

        assert report["success"] is True
        assert report["summary"] == {"total_tasks": 5, "successful": 5, "failed": 0}
        assert [r["task"] for r in report["results"]] == SWEEP_ORDER
        assert all(r["count"] == 0 for r in report["results"])
        assert report["timestamp"] == clock.now.isoformat()

    def test_failing_sweep_does_not_block_others(self, scheduler, service, custody_data, clock, repo, monkeypatch,
                                                 attach_required):
        """A broken document sweep still lets SLA breach detection run."""
        sm = service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id)
        sm.submit_for_approval(txn.id)
        clock.advance(hours=5)

        def broken(before, statuses):
            raise RuntimeError("document index corrupted")

        monkeypatch.setattr(repo, "list_documents_expiring", broken)

        report = scheduler.run()
        results = {r["task"]: r for r in report["results"]}

        assert report["success"] is False
        assert report["summary"]["failed"] == 1
        assert results["document_expiry_check"]["success"] is False
        assert "document index corrupted" in results["document_expiry_check"]["error"]
        assert results["sla_breach_detection"] == {"task": "sla_breach_detection", "success": True, "count": 1}
        assert repo.get_transaction(txn.id).sla_breached is True

    def test_running_sweep_is_skipped(self, scheduler):
        """A second trigger while a sweep is in flight reports it as skipped."""
        lock = scheduler._locks["webhook_retry"]
        lock.acquire()
        try:
            result = scheduler.run_task("webhook_retry")
        finally:
            lock.release()

        assert result == {"task": "webhook_retry", "success": True, "count": 0, "skipped": True}

    def test_subset_of_tasks(self, scheduler):
        report = scheduler.run(["auto_close_expired"])
        assert [r["task"] for r in report["results"]] == ["auto_close_expired"]

    def test_unknown_task_is_refused(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run(["defragment"])


# =============================================================================
# TEST: SLA BREACH DETECTION
# =============================================================================

class TestSlaBreachSweep:
    """Monotonic flag, exactly one escalation."""

    def test_breach_flagged_and_escalated_once(self, scheduler, service, custody_data, clock, repo, attach_required):
        sm = service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id)
        sm.submit_for_approval(txn.id)
        clock.advance(hours=5)  # breakdown approval window is 4h

        first = scheduler.run(["sla_breach_detection"])
        second = scheduler.run(["sla_breach_detection"])

        assert repo.get_transaction(txn.id).sla_breached is True
        assert first["results"][0]["count"] == 1
        assert second["results"][0]["count"] == 0
        assert len(_notifications(repo, txn.id, "sla_breach")) == 1

    def test_within_window_is_not_breached(self, scheduler, service, custody_data, clock, repo, attach_required):
        sm = service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id)
        sm.submit_for_approval(txn.id)
        clock.advance(hours=3)

        scheduler.run(["sla_breach_detection"])

        assert repo.get_transaction(txn.id).sla_breached is False

    def test_terminal_custodies_are_ignored(self, scheduler, service, custody_data, clock, repo, attach_required):
        sm = service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id)
        sm.submit_for_approval(txn.id)
        sm.void(txn.id, "duplicate", "admin_1")
        clock.advance(days=2)

        scheduler.run(["sla_breach_detection"])

        assert repo.get_transaction(txn.id).sla_breached is False


# =============================================================================
# TEST: DOCUMENT EXPIRY
# =============================================================================

class TestDocumentExpirySweep:
    """Expiring-soon then expired, each notice once."""

    def test_expiring_then_expired(self, scheduler, service, make_active, clock, repo):
        txn = make_active()
        service.add_document(txn.id, "insurance_docs", "policy.pdf", expires_on=clock.now + timedelta(days=5))
        service.add_document(txn.id, "photos", "front.jpg", expires_on=clock.now + timedelta(days=20))

        assert scheduler.run(["document_expiry_check"])["results"][0]["count"] == 1
        assert scheduler.run(["document_expiry_check"])["results"][0]["count"] == 0
        assert len(_notifications(repo, txn.id, "document_expiring_soon")) == 1

        clock.advance(days=6)
        assert scheduler.run(["document_expiry_check"])["results"][0]["count"] == 1
        assert len(_notifications(repo, txn.id, "document_expired")) == 1

    def test_documents_on_closed_custodies_are_ignored(self, scheduler, service, make_active, clock):
        txn = make_active()
        service.add_document(txn.id, "insurance_docs", "policy.pdf", expires_on=clock.now + timedelta(days=2))
        service.state_machine.close(txn.id, "operator_1")

        assert scheduler.run(["document_expiry_check"])["results"][0]["count"] == 0


# =============================================================================
# TEST: OVERDUE REMINDERS
# =============================================================================

class TestOverdueSweep:
    """Weekly milestones only."""

    def test_reminders_at_weekly_milestones(self, scheduler, make_active, clock, repo):
        txn = make_active()  # expected back 2025-01-15
        clock.now = datetime(2025, 1, 20, 9, 0)  # 5 days overdue

        assert scheduler.run(["overdue_custodies_check"])["results"][0]["count"] == 0

        clock.now = datetime(2025, 1, 23, 9, 0)  # day 8
        assert scheduler.run(["overdue_custodies_check"])["results"][0]["count"] == 1
        assert scheduler.run(["overdue_custodies_check"])["results"][0]["count"] == 0

        clock.now = datetime(2025, 1, 29, 9, 0)  # day 14
        assert scheduler.run(["overdue_custodies_check"])["results"][0]["count"] == 1

        reminders = _notifications(repo, txn.id, "custody_overdue")
        assert sorted(e.payload["metadata"]["milestone_day"] for e in reminders) == [7, 7, 14, 14]
        assert repo.get_transaction(txn.id).last_overdue_reminder_day == 14

    def test_returned_custody_is_not_reminded(self, scheduler, service, make_active, clock):
        txn = make_active()
        service.state_machine.record_return(txn.id, datetime(2025, 1, 16))
        clock.now = datetime(2025, 2, 1)

        assert scheduler.run(["overdue_custodies_check"])["results"][0]["count"] == 0


# =============================================================================
# TEST: WEBHOOK RETRY
# =============================================================================

class TestWebhookRetrySweep:
    """Retry cap per lineage and age limit."""

    def _failed_fleet_call(self, service, make_active, webhook_client, repo):
        webhook_client.status_code = 502
        service.update_integration_setting("fleet", is_enabled=True, endpoint_url="https://fleet.example.com/hook")
        txn = make_active()
        (root,) = [e for e in repo.list_webhook_logs(txn.id) if e.webhook_type == "fleet"]
        return root

    def test_retries_stop_at_cap(self, scheduler, service, make_active, webhook_client, repo, settings):
        root = self._failed_fleet_call(service, make_active, webhook_client, repo)

        for _ in range(settings.webhook_max_retries + 2):
            scheduler.run(["webhook_retry"])

        attempts = [e for e in repo.list_webhook_logs(limit=200) if e.retry_of_id == root.id]
        stored_root = next(e for e in repo.list_webhook_logs(limit=200) if e.id == root.id)
        assert len(attempts) == settings.webhook_max_retries
        assert stored_root.retry_count == settings.webhook_max_retries
        assert stored_root.last_retry_at is not None

    def test_successful_retry_ends_lineage(self, scheduler, service, make_active, webhook_client, repo):
        root = self._failed_fleet_call(service, make_active, webhook_client, repo)

        webhook_client.status_code = 200
        assert scheduler.run(["webhook_retry"])["results"][0]["count"] == 1
        assert scheduler.run(["webhook_retry"])["results"][0]["count"] == 0

        attempts = [e for e in repo.list_webhook_logs(limit=200) if e.retry_of_id == root.id]
        assert [a.success for a in attempts] == [True]

    def test_old_failures_are_not_retried(self, scheduler, service, make_active, webhook_client, repo, clock):
        self._failed_fleet_call(service, make_active, webhook_client, repo)
        clock.advance(hours=25)

        assert scheduler.run(["webhook_retry"])["results"][0]["count"] == 0


# =============================================================================
# TEST: AUTO-CLOSE
# =============================================================================

class TestAutoCloseSweep:
    """Only custodies overdue beyond the threshold are force-closed."""

    def test_threshold_boundary(self, scheduler, make_active, clock, repo, sender):
        from custody_engine.models.db_models import CustodyStatus

        abandoned = make_active(
            effective_from=clock.now - timedelta(days=120),
            expected_return_date=clock.now - timedelta(days=91),
        )
        recent = make_active(
            effective_from=clock.now - timedelta(days=120),
            expected_return_date=clock.now - timedelta(days=89),
        )

        report = scheduler.run(["auto_close_expired"])

        assert report["results"][0]["count"] == 1
        closed = repo.get_transaction(abandoned.id)
        assert closed.status == CustodyStatus.CLOSED
        assert closed.closed_by == "system"
        assert "Auto-closed" in closed.notes
        assert repo.get_transaction(recent.id).status == CustodyStatus.ACTIVE
        assert sorted(sender.recipients_for("auto_closed")) == ["cust-100", "operator_1"]

    def test_non_active_custodies_are_untouched(self, scheduler, service, custody_data, clock, repo):
        from custody_engine.models.db_models import CustodyStatus

        txn = service.state_machine.create(custody_data(
            effective_from=clock.now - timedelta(days=200),
            expected_return_date=clock.now - timedelta(days=150),
        ))

        scheduler.run(["auto_close_expired"])

        assert repo.get_transaction(txn.id).status == CustodyStatus.DRAFT
