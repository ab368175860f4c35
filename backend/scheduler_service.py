"""
Scheduler for RepairDesk CRM background jobs
- Nightly lead <-> invoice link reconciliation (02:30)
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import config
from services.errors import CRMError
from services.event_logger import log_activity
from services.invoice_generator import reconcile_invoice_links
from services.store import Store

logger = logging.getLogger("scheduler")

RECONCILE_HOUR = 2
RECONCILE_MINUTE = 30


class TaskScheduler:
    """Scheduled jobs manager"""

    def __init__(self, store: Store = None, timezone: str = "Asia/Kolkata"):
        self.scheduler = AsyncIOScheduler(timezone=timezone)
        self.store = store

    def _get_store(self) -> Store:
        if self.store is None:
            self.store = Store(config.db)
        return self.store

    def start(self):
        """Starts the scheduler with every job"""
        self.scheduler.add_job(
            self.reconcile_links,
            CronTrigger(hour=RECONCILE_HOUR, minute=RECONCILE_MINUTE),
            id="reconcile_invoice_links",
            name="Reconcile lead/invoice links",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("[SCHEDULER] Started: reconcile_invoice_links at %02d:%02d", RECONCILE_HOUR, RECONCILE_MINUTE)

    def stop(self):
        """Stops the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("[SCHEDULER] Stopped")

    # ==================== SCHEDULED JOBS ====================

    async def reconcile_links(self):
        """Relink invoices whose lead back-link was lost; report what cannot be fixed."""
        store = self._get_store()
        try:
            report = await reconcile_invoice_links(store)
        except CRMError as e:
            logger.error(f"[RECONCILE] Nightly run failed: {e.message}")
            await log_activity(
                store, "reconcile_failed", "system",
                metadata={"error": e.message},
            )
            return None

        logger.info(f"[RECONCILE] Nightly run: checked={report['checked']} repaired={report['repaired']}")
        return report


# Instance globale
task_scheduler = TaskScheduler()
