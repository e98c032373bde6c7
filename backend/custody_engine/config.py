"""
Custody Engine - Workflow Configuration

All tunables of the custody workflow: SLA windows, approver sets, quorum
rule, scheduler thresholds, webhook delivery limits and the default charge
tax rate. Values come from
environment variables so they can be changed per deployment without code
changes.
"""
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


# =============================================================================
# DEFAULTS
# =============================================================================

# Hours from submission, keyed by reason code.
# Accidents get the tightest window: a customer is usually stranded.
DEFAULT_SLA_WINDOWS: Dict[str, Dict[str, int]] = {
    "accident": {"approve_hours": 2, "handover_hours": 4},
    "breakdown": {"approve_hours": 4, "handover_hours": 8},
    "damage": {"approve_hours": 8, "handover_hours": 24},
    "maintenance": {"approve_hours": 24, "handover_hours": 48},
    "other": {"approve_hours": 8, "handover_hours": 24},
}

DEFAULT_APPROVERS = ["ops_supervisor"]

DOCUMENT_EXPIRY_HORIZON_DAYS = 30
DOCUMENT_WARNING_DAYS = 7
OVERDUE_REMINDER_INTERVAL_DAYS = 7
AUTO_CLOSE_DAYS = 90
WEBHOOK_MAX_AGE_HOURS = 24
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_TIMEOUT_SECONDS = 10.0
SCHEDULER_MAX_WORKERS = 5
CHARGE_TAX_RATE = 5.0  # Percent, applied when a charge line gives none


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_json(name: str, default):
    raw = os.getenv(name)
    if not raw:
        return default
    return json.loads(raw)


@dataclass
class CustodySettings:
    """Runtime configuration for the custody workflow."""

    sla_windows: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_SLA_WINDOWS.items()}
    )
    # {branch_id: {reason_code: {"approve_hours": h, "handover_hours": h}}}
    branch_sla_windows: Dict[str, Dict[str, Dict[str, int]]] = field(default_factory=dict)

    approvers: List[str] = field(default_factory=lambda: list(DEFAULT_APPROVERS))
    # {reason_code: [approver_id, ...]}
    reason_approvers: Dict[str, List[str]] = field(default_factory=dict)
    quorum_rule: str = "unanimous"

    escalation_recipients: List[str] = field(default_factory=list)

    document_expiry_horizon_days: int = DOCUMENT_EXPIRY_HORIZON_DAYS
    document_warning_days: int = DOCUMENT_WARNING_DAYS
    overdue_reminder_interval_days: int = OVERDUE_REMINDER_INTERVAL_DAYS
    auto_close_days: int = AUTO_CLOSE_DAYS
    webhook_max_age_hours: int = WEBHOOK_MAX_AGE_HOURS
    webhook_max_retries: int = WEBHOOK_MAX_RETRIES
    webhook_timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS
    scheduler_max_workers: int = SCHEDULER_MAX_WORKERS
    charge_tax_rate: float = CHARGE_TAX_RATE

    def approvers_for(self, reason_code: Optional[str]) -> List[str]:
        """Approver set for a reason code, falling back to the default set."""
        if reason_code and reason_code in self.reason_approvers:
            return list(self.reason_approvers[reason_code])
        return list(self.approvers)

    @classmethod
    def from_env(cls) -> "CustodySettings":
        """Build settings from CUSTODY_* environment variables."""
        sla_windows = {k: dict(v) for k, v in DEFAULT_SLA_WINDOWS.items()}
        sla_windows.update(_env_json("CUSTODY_SLA_WINDOWS", {}))

        return cls(
            sla_windows=sla_windows,
            branch_sla_windows=_env_json("CUSTODY_BRANCH_SLA_WINDOWS", {}),
            approvers=_env_list("CUSTODY_APPROVERS", DEFAULT_APPROVERS),
            reason_approvers=_env_json("CUSTODY_REASON_APPROVERS", {}),
            quorum_rule=os.getenv("CUSTODY_QUORUM_RULE", "unanimous"),
            escalation_recipients=_env_list("CUSTODY_ESCALATION_RECIPIENTS", []),
            document_expiry_horizon_days=int(os.getenv("CUSTODY_DOCUMENT_EXPIRY_HORIZON_DAYS", DOCUMENT_EXPIRY_HORIZON_DAYS)),
            document_warning_days=int(os.getenv("CUSTODY_DOCUMENT_WARNING_DAYS", DOCUMENT_WARNING_DAYS)),
            overdue_reminder_interval_days=int(os.getenv("CUSTODY_OVERDUE_REMINDER_INTERVAL_DAYS", OVERDUE_REMINDER_INTERVAL_DAYS)),
            auto_close_days=int(os.getenv("CUSTODY_AUTO_CLOSE_DAYS", AUTO_CLOSE_DAYS)),
            webhook_max_age_hours=int(os.getenv("CUSTODY_WEBHOOK_MAX_AGE_HOURS", WEBHOOK_MAX_AGE_HOURS)),
            webhook_max_retries=int(os.getenv("CUSTODY_WEBHOOK_MAX_RETRIES", WEBHOOK_MAX_RETRIES)),
            webhook_timeout_seconds=float(os.getenv("CUSTODY_WEBHOOK_TIMEOUT_SECONDS", WEBHOOK_TIMEOUT_SECONDS)),
            scheduler_max_workers=int(os.getenv("CUSTODY_SCHEDULER_MAX_WORKERS", SCHEDULER_MAX_WORKERS)),
            charge_tax_rate=float(os.getenv("CUSTODY_CHARGE_TAX_RATE", CHARGE_TAX_RATE)),
        )


_settings: Optional[CustodySettings] = None


def get_settings() -> CustodySettings:
    """Process-wide settings, read from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = CustodySettings.from_env()
    return _settings
