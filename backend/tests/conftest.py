"""
Shared fixtures for the custody workflow tests.

Everything runs against the in-memory repository with a controllable clock
and recording transports; the SQLAlchemy repository has its own tests on an
in-memory SQLite database.
"""
import os

# Keep module-level engine creation off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402


START = datetime(2025, 1, 1, 9, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """NotificationSender that records calls and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_notification(self, recipient, event_type, payload):
        if self.fail:
            raise ConnectionError("smtp relay unavailable")
        self.sent.append((recipient, event_type, payload))

    def recipients_for(self, event_type):
        return [recipient for recipient, event, _ in self.sent if event == event_type]


class FakeWebhookClient:
    """WebhookClient returning a fixed status code, or raising `error`."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.error = None
        self.calls = []

    def call_webhook(self, endpoint, payload, headers=None):
        from custody_engine.services.custody.transports import WebhookResponse

        self.calls.append((endpoint, payload, headers or {}))
        if self.error is not None:
            raise self.error
        return WebhookResponse(status_code=self.status_code, body={"received": True})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    from custody_engine.config import CustodySettings

    return CustodySettings(approvers=["sup_1", "sup_2"], escalation_recipients=["ops_manager"])


@pytest.fixture
def repo():
    from custody_engine.services.custody.repository import InMemoryCustodyRepository

    return InMemoryCustodyRepository()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def webhook_client():
    return FakeWebhookClient()


@pytest.fixture
def service(repo, settings, sender, webhook_client, clock):
    from custody_engine.services.custody.custody_service import CustodyService

    return CustodyService(repo, settings, sender=sender, webhook_client=webhook_client, clock=clock)


@pytest.fixture
def custody_data():
    """Valid create payload for a breakdown custody starting 2025-01-01."""
    def build(**overrides):
        data = {
            "agreement_id": "agr-100",
            "customer_id": "cust-100",
            "original_vehicle_id": "veh-orig",
            "custodian_name": "Dana Example",
            "custodian_type": "customer",
            "reason_code": "breakdown",
            "incident_narrative": "Engine failure on the highway",
            "incident_date": datetime(2024, 12, 31, 18, 0),
            "effective_from": datetime(2025, 1, 1),
            "expected_return_date": datetime(2025, 1, 15),
        }
        data.update(overrides)
        return data
    return build


@pytest.fixture
def attach_required(service):
    """Attach the one required document a draft needs before submission."""
    def attach(custody_id, via=None):
        return (via or service).add_document(
            custody_id, "police_report", "police-report.pdf", document_category="required"
        )
    return attach


@pytest.fixture
def make_active(service, custody_data, attach_required):
    """Drive a new custody all the way to active."""
    def build(created_by="operator_1", **overrides):
        sm = service.state_machine
        txn = sm.create(custody_data(replacement_vehicle_id="veh-repl", **overrides), created_by=created_by)
        attach_required(txn.id)
        sm.submit_for_approval(txn.id, created_by)
        sm.approve(txn.id, "sup_1")
        sm.approve(txn.id, "sup_2")
        return sm.activate(txn.id, created_by)
    return build
