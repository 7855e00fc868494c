"""
Relance - Periodic Worker
Runs the batch (dispatch, cleanup, progression) and then the delivery
pass on a fixed interval. Designed to run as a separate worker process
alongside the API server, or to be replaced by an external cron hitting
POST /api/followups/trigger.
"""
import logging
import time
import signal
import sys
from relance.models import SessionLocal
from relance.pipeline import FollowUpPipeline
from relance.config import SCHEMA_VERSION, SCHEDULER_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

# Graceful shutdown flag
_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info(f"Received signal {signum}. Shutting down gracefully...")
    _shutdown = True


def run_cycle(pipeline: FollowUpPipeline) -> dict:
    """One worker cycle: batch run followed by delivery, in a fresh session."""
    db = SessionLocal()
    try:
        batch = pipeline.run_batch(db)
        delivery = pipeline.deliver_due(db, request_id=batch["request_id"])
        return {"batch": batch, "delivery": delivery["results"]}
    finally:
        db.close()


def run_worker(poll_interval: int = SCHEDULER_INTERVAL_SECONDS, pipeline: FollowUpPipeline = None):
    """
    Worker loop: run a cycle, sleep, repeat until SIGTERM/SIGINT.

    Args:
        poll_interval: Seconds between cycles (default: SCHEDULER_INTERVAL_SECONDS)
    """
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    pipeline = pipeline or FollowUpPipeline()
    pipeline.initialize()

    logger.info(
        f"Relance worker started. Schema: {SCHEMA_VERSION}. "
        f"Running every {poll_interval}s with sink '{pipeline.sink.name}'."
    )

    while not _shutdown:
        try:
            results = run_cycle(pipeline)
            logger.info(f"Cycle results: {results}")
        except Exception as e:
            # Next cycle picks up whatever this one left behind
            logger.error(f"Worker error: {e}", exc_info=True)

        # Sleep in small increments to allow graceful shutdown
        for _ in range(poll_interval):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Worker shutdown complete.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    interval = int(sys.argv[1]) if len(sys.argv) > 1 else SCHEDULER_INTERVAL_SECONDS
    run_worker(poll_interval=interval)
