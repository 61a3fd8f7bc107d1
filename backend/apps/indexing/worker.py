"""
Ingestion worker - drains the ingestion queue.

This worker:
1. Claims due jobs atomically from the job backend
2. Runs each through the ingestion pipeline on a fixed-size thread pool
3. Lets the queue settle completion, retry with backoff, or failure
4. Periodically requeues jobs whose lease was not renewed (crashed worker)

Run as: python manage.py run_worker
"""
import time
import signal
import logging
import threading
from pathlib import Path
from typing import List, Optional

from django.conf import settings

from apps.indexing.jobs import Job
from apps.indexing.queue import DEFAULT_STALE_AFTER, IngestionQueue, QueueBackendUnavailable

logger = logging.getLogger(__name__)

# Configuration
POLL_INTERVAL = 2  # seconds between job checks
MAX_CONSECUTIVE_ERRORS = 5  # Stop a thread after this many backend errors in a row
STALE_CHECK_INTERVAL = 60  # seconds between orphaned-job sweeps
HEARTBEAT_FILE = '/tmp/worker_heartbeat'


def touch_heartbeat(path: str = HEARTBEAT_FILE):
    """Touch heartbeat file for health checks."""
    try:
        Path(path).touch()
    except OSError as e:
        logger.warning(f"Failed to update heartbeat: {e}")


class IndexingWorker:
    """
    Worker pool that processes ingestion jobs.

    Every thread claims and runs jobs independently; the backend's claim
    guarantees each job is handed to exactly one thread.
    """

    def __init__(
        self,
        queue: IngestionQueue,
        concurrency: Optional[int] = None,
        poll_interval: float = POLL_INTERVAL,
        heartbeat_file: Optional[str] = HEARTBEAT_FILE,
    ):
        self.queue = queue
        self.concurrency = concurrency or getattr(settings, 'INGESTION_WORKERS', 2)
        self.poll_interval = poll_interval
        self.heartbeat_file = heartbeat_file
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._last_stale_check = 0.0

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def run_once(self) -> Optional[Job]:
        """
        Try to claim and process one job.

        Returns:
            The settled job, or None if no job was due
        """
        job = self.queue.run_next()
        if self.heartbeat_file:
            touch_heartbeat(self.heartbeat_file)
        return job

    def _maybe_recover_stale(self):
        now = time.monotonic()
        if now - self._last_stale_check < STALE_CHECK_INTERVAL:
            return
        self._last_stale_check = now
        self.queue.recover_stale(getattr(settings, 'INGESTION_LEASE_TIMEOUT', DEFAULT_STALE_AFTER))

    def _loop(self, name: str):
        consecutive_errors = 0
        logger.info(f"Worker thread {name} started")

        while not self._stop.is_set():
            try:
                self._maybe_recover_stale()
                job = self.run_once()
                consecutive_errors = 0
                if job is None:
                    # No jobs, wait before polling again
                    self._stop.wait(self.poll_interval)

            except QueueBackendUnavailable as e:
                consecutive_errors += 1
                logger.error(f"Worker thread {name} cannot reach job backend: {e}")
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.error(f"Too many consecutive errors, stopping worker thread {name}")
                    break
                self._stop.wait(self.poll_interval * 2)

            except Exception as e:
                # A job must never take the worker down
                logger.exception(f"Error in worker loop {name}: {e}")
                self._stop.wait(self.poll_interval)

        logger.info(f"Worker thread {name} stopped")

    def start(self):
        """Start the worker threads in the background."""
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.concurrency):
            thread = threading.Thread(
                target=self._loop,
                args=(f"ingest-{i}",),
                name=f"ingest-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.concurrency} ingestion worker threads")

    def stop(self, timeout: Optional[float] = None):
        """Signal threads to stop and wait for in-flight jobs to settle."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def run(self):
        """
        Main worker loop.

        Starts the pool and blocks until SIGTERM/SIGINT.
        """
        logger.info("Starting ingestion worker...")

        embedder = getattr(self.queue.executor, 'embedder', None)
        if embedder is not None and not embedder.ping():
            logger.error("Cannot reach the embedding provider. Jobs will retry with backoff.")

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._stop.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        self.start()
        while not self._stop.is_set():
            if self.heartbeat_file:
                touch_heartbeat(self.heartbeat_file)
            if not any(thread.is_alive() for thread in self._threads):
                logger.error("All worker threads exited, stopping")
                break
            self._stop.wait(self.poll_interval)

        self.stop()
        logger.info("Worker stopped")


def main():
    """Entry point for the worker."""
    import os
    import django

    logging.basicConfig(
        level=logging.INFO,
        format='%(levelname)s %(asctime)s %(name)s: %(message)s'
    )

    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
    django.setup()

    from apps.indexing.services import get_ingestion_queue

    IndexingWorker(get_ingestion_queue()).run()


if __name__ == '__main__':
    main()
