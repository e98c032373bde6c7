"""
Tests for the SQLAlchemy custody store.

Runs against an in-memory SQLite database with a single shared connection,
so the optimistic version check, the retry-eligibility query and the
document/transaction join are exercised as real SQL.
"""
from datetime import datetime, timedelta
from uuid import uuid4

import pytest


@pytest.fixture
def db_session():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from custody_engine.database import Base
    from custody_engine.models import db_models  # noqa: F401

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def sql_repo(db_session):
    from custody_engine.services.custody.repository import SqlAlchemyCustodyRepository

    return SqlAlchemyCustodyRepository(db_session)


@pytest.fixture
def sql_service(sql_repo, settings, sender, webhook_client, clock):
    from custody_engine.services.custody.custody_service import CustodyService

    return CustodyService(sql_repo, settings, sender=sender, webhook_client=webhook_client, clock=clock)


def _log(**fields):
    from custody_engine.models.db_models import WebhookLogDB

    values = {
        "id": str(uuid4()),
        "custody_id": "c-1",
        "event_type": "handover",
        "webhook_type": "fleet",
        "endpoint": "https://fleet.example.com/hook",
        "payload": {"action": "update_vehicle_status"},
        "success": False,
        "retry_count": 0,
        "created_at": datetime(2025, 1, 1, 8, 0),
    }
    values.update(fields)
    return WebhookLogDB(**values)


# =============================================================================
# TEST: TRANSACTIONS
# =============================================================================

class TestTransactionStore:
    """Sequence, lookup and the version guard."""

    def test_custody_numbers_are_sequential(self, sql_repo):
        first = sql_repo.next_custody_no()
        second = sql_repo.next_custody_no()

        assert first.startswith("CUS-")
        assert first.endswith("-000001")
        assert second.endswith("-000002")

    def test_deleted_draft_does_not_free_its_number(self, sql_service, custody_data):
        sm = sql_service.state_machine
        first = sm.create(custody_data())
        first_no = first.custody_no
        sm.delete(first.id)

        second = sm.create(custody_data())
        assert second.custody_no != first_no
        assert second.custody_no.endswith("-000002")

    def test_unknown_id_raises_not_found(self, sql_repo):
        from custody_engine.services.custody.exceptions import CustodyNotFoundError

        with pytest.raises(CustodyNotFoundError):
            sql_repo.get_transaction("missing")

    def test_stale_version_is_refused(self, sql_service, sql_repo, db_session, custody_data):
        """A row bumped by another writer fails the versioned UPDATE."""
        from sqlalchemy import text

        from custody_engine.services.custody.exceptions import ConcurrentModificationError

        txn = sql_service.state_machine.create(custody_data())
        loaded = sql_repo.get_transaction(txn.id)
        expected = loaded.version

        db_session.execute(text("UPDATE custody_transactions SET version = 9 WHERE id = :id"), {"id": txn.id})
        loaded.notes = "late edit"

        with pytest.raises(ConcurrentModificationError):
            sql_repo.save_transaction(loaded, expected)

    def test_version_increments_on_every_write(self, sql_service, custody_data, attach_required):
        sm = sql_service.state_machine
        txn = sm.create(custody_data())
        assert txn.version == 1

        attach_required(txn.id, sql_service)
        sm.submit_for_approval(txn.id)
        after_first = sm.approve(txn.id, "sup_1")

        assert after_first.version == 3

    def test_partial_approval_at_same_instant_is_persisted(self, sql_service, sql_repo, db_session, custody_data,
                                                          attach_required):
        """A write that only records an approval still bumps the stored row."""
        from sqlalchemy import text

        from custody_engine.models.db_models import ApprovalStatus

        sm = sql_service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id, sql_service)
        submitted = sm.submit_for_approval(txn.id)
        submitted_at = submitted.updated_at

        sm.approve(txn.id, "sup_1")

        db_session.expire_all()
        stored = db_session.execute(
            text("SELECT version FROM custody_transactions WHERE id = :id"), {"id": txn.id}
        ).one()
        assert stored.version == 3
        assert sql_repo.get_transaction(txn.id).updated_at == submitted_at
        statuses = {a.approver_id: a.status for a in sql_service.list_approvals(txn.id)}
        assert statuses == {"sup_1": ApprovalStatus.APPROVED, "sup_2": ApprovalStatus.PENDING}

    def test_refused_submit_leaves_no_pending_changes(self, sql_service, sql_repo, custody_data, settings, clock,
                                                      attach_required):
        """A submit refused for missing approvers does not leak its SLA stamp into the next write."""
        from custody_engine.models.db_models import CustodyStatus
        from custody_engine.services.custody.exceptions import PreconditionError

        sm = sql_service.state_machine
        txn = sm.create(custody_data())
        attach_required(txn.id, sql_service)

        settings.approvers = []
        with pytest.raises(PreconditionError):
            sm.submit_for_approval(txn.id)

        draft = sql_repo.get_transaction(txn.id)
        assert draft.status == CustodyStatus.DRAFT
        assert draft.sla_target_approve_by is None
        assert draft.version == 1

        settings.approvers = ["sup_1", "sup_2"]
        clock.advance(hours=3)
        submitted = sm.submit_for_approval(txn.id)

        assert submitted.sla_target_approve_by == clock.now + timedelta(hours=4)
        assert all(a.due_by == clock.now + timedelta(hours=4) for a in sql_service.list_approvals(txn.id))


# =============================================================================
# TEST: LISTING AND FILTERS
# =============================================================================

class TestListing:
    """Pagination, ordering and filters as SQL."""

    @pytest.fixture
    def three_custodies(self, sql_service, custody_data, clock):
        sm = sql_service.state_machine
        rows = []
        for customer, reason, name in [
            ("cust-1", "breakdown", "Alex Driver"),
            ("cust-2", "accident", "Sam Courier"),
            ("cust-3", "accident", "Alex Courier"),
        ]:
            rows.append(sm.create(custody_data(customer_id=customer, reason_code=reason, custodian_name=name)))
            clock.advance(minutes=10)
        return rows

    def test_pagination_newest_first(self, sql_service, three_custodies):
        page = sql_service.list_custodies(page=1, page_size=2)

        assert page.total_count == 3
        assert page.total_pages == 2
        assert [t.customer_id for t in page.data] == ["cust-3", "cust-2"]

        last = sql_service.list_custodies(page=2, page_size=2)
        assert [t.customer_id for t in last.data] == ["cust-1"]

    def test_filters(self, sql_service, three_custodies):
        from custody_engine.models.db_models import CustodyStatus, ReasonCode
        from custody_engine.services.custody.repository import CustodyFilters

        accidents = sql_service.list_custodies(CustodyFilters(reason_code=[ReasonCode.ACCIDENT]))
        assert {t.customer_id for t in accidents.data} == {"cust-2", "cust-3"}

        alex = sql_service.list_custodies(CustodyFilters(search="alex"))
        assert {t.customer_id for t in alex.data} == {"cust-1", "cust-3"}

        one = sql_service.list_custodies(CustodyFilters(customer_id="cust-2", status=[CustodyStatus.DRAFT]))
        assert one.total_count == 1

        assert sql_service.list_custodies(CustodyFilters(sla_breached=True)).total_count == 0

    def test_page_size_is_capped(self, sql_service):
        from custody_engine.services.custody.exceptions import ValidationError

        with pytest.raises(ValidationError):
            sql_service.list_custodies(page_size=101)


# =============================================================================
# TEST: STATISTICS
# =============================================================================

class TestStatistics:
    """Dashboard aggregates over the SQL store."""

    def test_counts_duration_and_compliance(self, sql_service, custody_data, clock, attach_required):
        sm = sql_service.state_machine

        pending = sm.create(custody_data())
        attach_required(pending.id, sql_service)
        sm.submit_for_approval(pending.id)

        closed = sm.create(custody_data(replacement_vehicle_id="veh-2"))
        attach_required(closed.id, sql_service)
        sm.submit_for_approval(closed.id)
        sm.approve(closed.id, "sup_1")
        sm.approve(closed.id, "sup_2")
        sm.activate(closed.id)

        clock.now = datetime(2025, 1, 3)
        sm.close(closed.id, "operator_1")

        stats = sql_service.get_statistics()

        assert stats["pending_approvals"] == 1
        assert stats["active_custodies"] == 0
        assert stats["closed_this_period"] == 1
        assert stats["avg_duration_days"] == 2.0
        assert stats["sla_breaches"] == 0
        assert stats["sla_compliance_pct"] == 100.0
        assert stats["unposted_charges"] == 0

    def test_unposted_charges_counted_in_sql(self, sql_service, custody_data):
        from custody_engine.models.db_models import ChargeStatus

        txn = sql_service.state_machine.create(custody_data())
        dent = sql_service.add_charge(txn.id, "damage", "Dent", unit_price=50)
        sql_service.add_charge(txn.id, "admin_fee", "Fee", unit_price=10)

        sql_service.post_charges(txn.id, [dent.id], "billing_clerk")

        assert sql_service.get_statistics()["unposted_charges"] == 1
        stored = {c.description: c.status for c in sql_service.list_charges(txn.id)}
        assert stored == {"Dent": ChargeStatus.POSTED, "Fee": ChargeStatus.DRAFT}

    def test_empty_store(self, sql_service):
        stats = sql_service.get_statistics()

        assert stats["closed_this_period"] == 0
        assert stats["avg_duration_days"] == 0.0
        assert stats["sla_compliance_pct"] == 100.0


# =============================================================================
# TEST: WEBHOOK LOG QUERIES
# =============================================================================

class TestRetryableWebhookLogs:
    """Only young, failed lineage roots below the cap are eligible."""

    def test_eligibility(self, sql_repo):
        since = datetime(2025, 1, 1, 0, 0)

        eligible = _log()
        too_old = _log(created_at=datetime(2024, 12, 30))
        capped = _log(retry_count=3)
        recovered = _log()
        recovered_retry = _log(retry_of_id=recovered.id, success=True)
        delivered = _log(success=True)
        failed_retry = _log(retry_of_id=eligible.id)

        for entry in (eligible, too_old, capped, recovered, recovered_retry, delivered, failed_retry):
            sql_repo.add_webhook_log(entry)

        ids = [e.id for e in sql_repo.list_retryable_webhook_logs(since, 3)]

        assert ids == [eligible.id]

    def test_annotate_retry_updates_root(self, sql_repo):
        root = sql_repo.add_webhook_log(_log())

        sql_repo.annotate_webhook_retry(root.id, 2, datetime(2025, 1, 1, 10, 0))

        stored = sql_repo.list_webhook_logs("c-1")[0]
        assert stored.retry_count == 2
        assert stored.last_retry_at == datetime(2025, 1, 1, 10, 0)


# =============================================================================
# TEST: DOCUMENTS
# =============================================================================

class TestDocumentsExpiring:
    """Join of documents to their custody status."""

    def test_only_documents_on_requested_statuses(self, sql_service, sql_repo, custody_data, clock, attach_required):
        from custody_engine.models.db_models import CustodyStatus

        sm = sql_service.state_machine
        draft = sm.create(custody_data())
        active = sm.create(custody_data(replacement_vehicle_id="veh-2"))
        attach_required(active.id, sql_service)
        sm.submit_for_approval(active.id)
        sm.approve(active.id, "sup_1")
        sm.approve(active.id, "sup_2")
        sm.activate(active.id)

        soon = clock.now + timedelta(days=3)
        sql_service.add_document(draft.id, "insurance_docs", "draft-policy.pdf", expires_on=soon)
        sql_service.add_document(active.id, "insurance_docs", "policy.pdf", expires_on=soon)
        sql_service.add_document(active.id, "photos", "later.jpg", expires_on=clock.now + timedelta(days=60))
        sql_service.add_document(active.id, "signature", "sig.png")

        rows = sql_repo.list_documents_expiring(clock.now + timedelta(days=30), [CustodyStatus.ACTIVE])

        assert [(doc.file_name, txn.id) for doc, txn in rows] == [("policy.pdf", active.id)]


# =============================================================================
# TEST: END-TO-END OVER SQL
# =============================================================================

class TestWorkflowOverSql:
    """The whole lifecycle persisted through the SQLAlchemy store."""

    def test_full_lifecycle(self, sql_service, custody_data, clock, sender, attach_required):
        from custody_engine.models.db_models import ApprovalStatus, CustodyStatus

        sm = sql_service.state_machine
        txn = sm.create(custody_data(replacement_vehicle_id="veh-repl"), created_by="operator_1")
        attach_required(txn.id, sql_service)
        sm.submit_for_approval(txn.id, "operator_1")
        clock.advance(hours=1)
        sm.approve(txn.id, "sup_1", "ok")
        sm.approve(txn.id, "sup_2")
        clock.advance(hours=1)
        sm.activate(txn.id, "operator_1")
        clock.advance(days=10)
        sm.record_return(txn.id, clock.now - timedelta(hours=2))
        closed = sm.close(txn.id, "operator_1", "returned clean")

        assert closed.status == CustodyStatus.CLOSED
        assert closed.closed_by == "operator_1"
        assert closed.notes == "returned clean"

        approvals = sql_service.list_approvals(txn.id)
        assert [a.status for a in approvals] == [ApprovalStatus.APPROVED, ApprovalStatus.APPROVED]
        assert approvals[0].notes == "ok"

        triggers = sorted(entry.trigger for entry in sql_service.get_audit_log(txn.id))
        assert triggers == sorted([
            "created", "submitted", "approval_recorded", "approved",
            "handover", "return_recorded", "closed",
        ])

        logs = sql_service.list_webhook_logs(txn.id)
        assert {e.event_type for e in logs} >= {"submitted", "approved", "handover", "closed"}
        assert sender.recipients_for("handover") == ["cust-100"]
