"""
Reconciliation Scheduler

Periodic job runner that keeps custody state consistent without manual
intervention.

Sweeps:
1. sla_breach_detection     - flag newly breached transactions, escalate once
2. document_expiry_check    - warn about documents on active custodies
3. overdue_custodies_check  - weekly reminders for overdue returns
4. webhook_retry            - redeliver failed notifications and webhooks
5. auto_close_expired       - force-close custodies abandoned past the threshold

AUTHORITY: SYSTEM - invoked by an external timer, no user confirmation.

Sweeps run concurrently and are isolated from each other: a failing sweep
is reported in its task result and never prevents the others from running.
Each sweep is single-flight; a trigger that arrives while the same sweep is
still running reports it as skipped. The run is safe to invoke more often
than strictly necessary because every sweep is idempotent.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...config import CustodySettings
from ...models.db_models import CustodyStatus, ExpiryNotice
from .exceptions import SchedulerTaskError
from .integration_dispatcher import CustodyEvent
from .repository import utc_now
from .state_machine import OPEN_STATUSES


logger = logging.getLogger(__name__)

SWEEP_ORDER = [
    "sla_breach_detection",
    "document_expiry_check",
    "overdue_custodies_check",
    "webhook_retry",
    "auto_close_expired",
]

# Ordering of notices so a document never steps back from expired to expiring
_NOTICE_RANK = {ExpiryNotice.NONE: 0, ExpiryNotice.EXPIRING_SOON: 1, ExpiryNotice.EXPIRED: 2}


class CustodyReconciliationScheduler:
    """
    Runs the reconciliation sweeps.

    Usage:
        scheduler = CustodyReconciliationScheduler(service_factory, settings)
        report = scheduler.run()

    `service_factory` returns a fresh CustodyService per sweep, so each
    sweep works on its own repository (one database session per thread).
    """

    def __init__(
        self,
        service_factory: Callable[[], Any],
        settings: CustodySettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.service_factory = service_factory
        self.settings = settings
        self.clock = clock
        self._locks = {name: threading.Lock() for name in SWEEP_ORDER}
        self._sweeps = {
            "sla_breach_detection": self.sweep_sla_breaches,
            "document_expiry_check": self.sweep_document_expiry,
            "overdue_custodies_check": self.sweep_overdue_custodies,
            "webhook_retry": self.sweep_webhook_retries,
            "auto_close_expired": self.sweep_auto_close,
        }

    # =========================================================================
    # RUNNER
    # =========================================================================

    def run(self, tasks: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Run the requested sweeps (all by default) concurrently.

        Returns a structured report; never raises for a failing sweep.
        """
        names = tasks or SWEEP_ORDER
        unknown = [name for name in names if name not in self._sweeps]
        if unknown:
            raise ValueError(f"Unknown scheduler task(s): {', '.join(unknown)}")

        now = self.clock()
        logger.info(f"Custody scheduler run started at {now.isoformat()}: {', '.join(names)}")

        with ThreadPoolExecutor(max_workers=max(1, self.settings.scheduler_max_workers)) as executor:
            futures = [executor.submit(self.run_task, name, now) for name in names]
            results = [future.result() for future in futures]

        successful = sum(1 for r in results if r["success"])
        report = {
            "success": successful == len(results),
            "summary": {
                "total_tasks": len(results),
                "successful": successful,
                "failed": len(results) - successful,
            },
            "results": results,
            "timestamp": now.isoformat(),
        }
        logger.info(f"Custody scheduler run finished: {successful}/{len(results)} tasks succeeded")
        return report

    def run_task(self, name: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one sweep with single-flight and error isolation."""
        now = now or self.clock()
        lock = self._locks[name]

        if not lock.acquire(blocking=False):
            logger.info(f"Sweep {name} is still running, skipping")
            return {"task": name, "success": True, "count": 0, "skipped": True}

        try:
            service = self.service_factory()
            try:
                count, errors = self._sweeps[name](service, now)
            finally:
                service.close()
        except Exception as e:
            failure = SchedulerTaskError(name, str(e) or type(e).__name__)
            logger.error(f"Sweep {name} failed: {failure.message}", exc_info=True)
            return {"task": name, "success": False, "count": 0, "error": failure.message}
        finally:
            lock.release()

        if errors:
            failure = SchedulerTaskError(name, f"{len(errors)} item(s) failed: {errors[0]}")
            logger.error(f"Sweep {name} failed: {failure.message}")
            return {"task": name, "success": False, "count": count, "error": failure.message}

        logger.info(f"Sweep {name} complete: {count} processed")
        return {"task": name, "success": True, "count": count}

    # =========================================================================
    # SWEEPS
    # =========================================================================
    #
    # Each sweep returns (count, errors). Per-item failures are collected so
    # one bad transaction does not stop the rest of the sweep.
    #
    # =========================================================================

    def sweep_sla_breaches(self, service, now: datetime) -> Tuple[int, List[str]]:
        """Flip sla_breached on newly breached transactions and escalate each once."""
        count = 0
        errors = []

        for txn in service.repository.list_transactions_by_status(OPEN_STATUSES):
            if txn.sla_breached:
                continue
            try:
                is_breached, breach_info = service.sla.check_breach(txn, now)
                if not is_breached:
                    continue
                if service.state_machine.mark_sla_breached(txn.id, breach_info):
                    self._dispatch(service, txn.id, CustodyEvent.SLA_BREACH, breach_info)
                    count += 1
            except Exception as e:
                errors.append(f"{txn.custody_no}: {e}")

        return count, errors

    def sweep_document_expiry(self, service, now: datetime) -> Tuple[int, List[str]]:
        """Warn about documents on active custodies that expire soon or have expired."""
        count = 0
        errors = []
        horizon = now + timedelta(days=self.settings.document_expiry_horizon_days)
        warning_cutoff = now + timedelta(days=self.settings.document_warning_days)

        for document, txn in service.repository.list_documents_expiring(horizon, [CustodyStatus.ACTIVE]):
            if document.expires_on <= now:
                notice, event = ExpiryNotice.EXPIRED, CustodyEvent.DOCUMENT_EXPIRED
            elif document.expires_on <= warning_cutoff:
                notice, event = ExpiryNotice.EXPIRING_SOON, CustodyEvent.DOCUMENT_EXPIRING_SOON
            else:
                continue

            current = document.expiry_notice or ExpiryNotice.NONE
            if _NOTICE_RANK[current] >= _NOTICE_RANK[notice]:
                continue

            try:
                document.expiry_notice = notice
                service.repository.save_document(document)
                self._dispatch(service, txn.id, event, {
                    "document_id": document.id,
                    "document_type": getattr(document.document_type, "value", document.document_type),
                    "expires_on": document.expires_on.isoformat(),
                    "days_until_expiry": (document.expires_on - now).days,
                })
                count += 1
            except Exception as e:
                errors.append(f"{txn.custody_no}/{document.id}: {e}")

        return count, errors

    def sweep_overdue_custodies(self, service, now: datetime) -> Tuple[int, List[str]]:
        """Remind about overdue returns on day 7, 14, 21... of being overdue."""
        count = 0
        errors = []
        interval = max(1, self.settings.overdue_reminder_interval_days)

        for txn in service.repository.list_transactions_by_status([CustodyStatus.ACTIVE]):
            if txn.expected_return_date is None or txn.actual_return_date is not None:
                continue
            if txn.expected_return_date >= now:
                continue

            days_overdue = (now - txn.expected_return_date).days
            milestone = (days_overdue // interval) * interval
            if milestone < interval:
                continue

            try:
                if service.state_machine.record_overdue_reminder(txn.id, milestone):
                    self._dispatch(service, txn.id, CustodyEvent.CUSTODY_OVERDUE, {
                        "days_overdue": days_overdue,
                        "milestone_day": milestone,
                        "expected_return_date": txn.expected_return_date.isoformat(),
                    })
                    count += 1
            except Exception as e:
                errors.append(f"{txn.custody_no}: {e}")

        return count, errors

    def sweep_webhook_retries(self, service, now: datetime) -> Tuple[int, List[str]]:
        """Redeliver failed deliveries that are young enough and below the retry cap."""
        count = 0
        errors = []
        since = now - timedelta(hours=self.settings.webhook_max_age_hours)
        max_retries = self.settings.webhook_max_retries

        for entry in service.repository.list_retryable_webhook_logs(since, max_retries):
            attempt = (entry.retry_count or 0) + 1
            try:
                # Count the attempt before making it so a crash cannot exceed the cap
                service.repository.annotate_webhook_retry(entry.id, attempt, now)
                retried = service.dispatcher.redeliver(entry, attempt)
                count += 1
                if not retried.success:
                    logger.warning(
                        f"Retry {attempt}/{max_retries} of {entry.webhook_type} {entry.event_type} "
                        f"for custody {entry.custody_id} failed: {retried.error_message}"
                    )
            except Exception as e:
                errors.append(f"{entry.id}: {e}")

        return count, errors

    def sweep_auto_close(self, service, now: datetime) -> Tuple[int, List[str]]:
        """Force-close active custodies overdue beyond the auto-close threshold."""
        count = 0
        errors = []
        threshold = now - timedelta(days=self.settings.auto_close_days)

        for txn in service.repository.list_transactions_by_status([CustodyStatus.ACTIVE]):
            if txn.expected_return_date is None or txn.expected_return_date >= threshold:
                continue
            try:
                service.state_machine.auto_close(txn.id, (now - txn.expected_return_date).days)
                count += 1
            except Exception as e:
                errors.append(f"{txn.custody_no}: {e}")

        return count, errors

    @staticmethod
    def _dispatch(service, custody_id: str, event: CustodyEvent, metadata: Dict[str, Any]) -> None:
        try:
            service.dispatcher.dispatch(custody_id, event, metadata)
        except Exception as e:
            # State is already committed; undelivered events surface in the webhook log
            logger.error(f"Dispatch of {event.value} for custody {custody_id} failed: {e}")
