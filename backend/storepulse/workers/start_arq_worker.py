#!/usr/bin/env python3
"""Start the ARQ worker for queued backfills.

USAGE:
    python -m storepulse.workers.start_arq_worker

    Or directly:
    arq storepulse.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    from storepulse.telemetry import init_observability
    from storepulse.workers.arq_worker import WorkerSettings

    init_observability()
    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
