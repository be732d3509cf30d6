import time

from apscheduler.schedulers.background import BackgroundScheduler

from ..logging_setup import log_event
from .retry_sweeper import RetrySweeper

SWEEP_JOB_ID = "post_queue_sweep"

def run_sweep_job(sweeper: RetrySweeper):
    """Execution wrapper for the background sweep; a bad tick must not kill the scheduler."""
    t0 = time.time()
    try:
        result = sweeper.run_once()
    except Exception as e:
        log_event("queue_sweep_crashed", level="error", error=repr(e))
        return None
    log_event("queue_sweep_tick", level="debug", duration_seconds=round(time.time() - t0, 4))
    return result

def start_scheduler(sweeper: RetrySweeper, interval_minutes: int = 5) -> BackgroundScheduler:
    """
    Start a BackgroundScheduler that sweeps the queue every interval_minutes.
    max_instances=1 keeps a slow tick from overlapping the next one.
    """
    sched = BackgroundScheduler(timezone="UTC")
    sched.add_job(
        run_sweep_job,
        trigger="interval",
        minutes=interval_minutes,
        args=[sweeper],
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    sched.start()
    log_event("queue_sweep_scheduled", interval_minutes=interval_minutes)
    return sched
