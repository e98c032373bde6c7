"""
Custody Workflow Services

Custody / vehicle-replacement workflow: explicit state machine, SLA
deadlines, multi-approver gating, notification and partner webhook
dispatch, and the reconciliation scheduler that keeps it all consistent.
"""

from .exceptions import (
    CustodyError,
    ValidationError,
    CustodyNotFoundError,
    InvalidTransitionError,
    PreconditionError,
    DuplicateDecisionError,
    ConcurrentModificationError,
    ImmutableStateError,
    IntegrationDispatchError,
    SchedulerTaskError,
)
from .repository import (
    CustodyRepository,
    SqlAlchemyCustodyRepository,
    InMemoryCustodyRepository,
    CustodyFilters,
    PaginatedResult,
)
from .sla_engine import SLACalculator
from .approval_gate import ApprovalGate, QuorumRule, GateOutcome
from .transports import (
    NotificationSender,
    WebhookClient,
    WebhookResponse,
    LoggingNotificationSender,
    HttpxWebhookClient,
)
from .integration_dispatcher import IntegrationDispatcher, CustodyEvent, EventRegistry, build_default_registry
from .state_machine import CustodyStateMachine, CustodyCreateData, STATE_CONFIG
from .custody_service import CustodyService, compute_charge_amounts
from .reconciliation_scheduler import CustodyReconciliationScheduler, SWEEP_ORDER

__all__ = [
    # Errors
    'CustodyError',
    'ValidationError',
    'CustodyNotFoundError',
    'InvalidTransitionError',
    'PreconditionError',
    'DuplicateDecisionError',
    'ConcurrentModificationError',
    'ImmutableStateError',
    'IntegrationDispatchError',
    'SchedulerTaskError',
    # Store
    'CustodyRepository',
    'SqlAlchemyCustodyRepository',
    'InMemoryCustodyRepository',
    'CustodyFilters',
    'PaginatedResult',
    # Workflow
    'SLACalculator',
    'ApprovalGate',
    'QuorumRule',
    'GateOutcome',
    'CustodyStateMachine',
    'CustodyCreateData',
    'STATE_CONFIG',
    'CustodyService',
    'compute_charge_amounts',
    # Dispatch
    'NotificationSender',
    'WebhookClient',
    'WebhookResponse',
    'LoggingNotificationSender',
    'HttpxWebhookClient',
    'IntegrationDispatcher',
    'CustodyEvent',
    'EventRegistry',
    'build_default_registry',
    # Scheduler
    'CustodyReconciliationScheduler',
    'SWEEP_ORDER',
]
