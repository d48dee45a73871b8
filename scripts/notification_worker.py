from __future__ import annotations

from arq import run_worker

from apptnotify.core.logging import configure_logging
from apptnotify.workers.notification_worker import WorkerSettings


def main() -> None:
    # Runs the cron-driven processor, producers and webhook reconciler in one arq worker.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
