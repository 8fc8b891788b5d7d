import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import ProcessResult, RecurringEngine


logger = logging.getLogger(__name__)


def run_sweep(source: str = "manual") -> ProcessResult:
    logger.info(f"ledger_sweep: source={source}")
    with session_scope() as session:
        result = RecurringEngine(session).process_all_due()
    logger.info(
        f"ledger_sweep: source={source} created={result.created} "
        f"errors={len(result.errors)}"
    )
    return result


# (job id, trigger, misfire grace seconds)
SWEEP_JOBS = (
    ("ledger_sweep_daily", CronTrigger(hour=3, minute=15), 3600),
    ("ledger_sweep_hourly", IntervalTrigger(hours=1), 300),
)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        try:
            run_sweep(source)
        except Exception:
            logger.exception(f"ledger_sweep_failed: source={source}")

    def start(self) -> None:
        if not self.enabled:
            logger.info("ledger_sweep_disabled: templates post only on request")
            return

        self._run_job("startup")
        for job_id, trigger, grace in SWEEP_JOBS:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )
        self.scheduler.start()
        logger.info(f"ledger_sweep_scheduled: jobs={','.join(j[0] for j in SWEEP_JOBS)}")

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("ledger_sweep_unscheduled")


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    outcome = run_sweep("cron")
    for message in outcome.errors:
        logger.warning(message)
