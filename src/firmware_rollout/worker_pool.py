"""Thread pool running plan executions in the background."""

import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import WorkerStatus, utc_now_iso


@dataclass
class WorkItem:
    """Work item for the queue."""
    work_id: str
    label: str
    work_func: Callable
    args: tuple = ()
    kwargs: Dict = field(default_factory=dict)


class WorkerThread(threading.Thread):
    """Worker thread that processes work items from the queue."""

    def __init__(self, worker_id: int, work_queue: queue.Queue,
                 status_callback: Optional[Callable] = None):
        """
        Initialize worker thread.

        Args:
            worker_id: Unique worker identifier
            work_queue: Queue to pull work items from
            status_callback: Callback function to report status changes
        """
        super().__init__(daemon=True, name=f"Worker-{worker_id}")
        self.worker_id = worker_id
        self.work_queue = work_queue
        self.status_callback = status_callback
        self.logger = get_logger(f"firmware_rollout.worker.{worker_id}")
        self._stop_event = threading.Event()
        self._status = WorkerStatus(worker_id=worker_id, status="idle")

    def run(self):
        """Main worker loop."""
        self.logger.info(f"Worker {self.worker_id} started")
        self._update_status("idle")

        while not self._stop_event.is_set():
            # Timeout lets the loop notice the stop event
            try:
                work_item = self.work_queue.get(timeout=1.0)
            except queue.Empty:
                continue

            if work_item is None:  # Poison pill
                self.work_queue.task_done()
                break

            self._update_status("busy", work_item.work_id, work_item.label)
            self.logger.info(f"Worker {self.worker_id} processing {work_item.work_id} ({work_item.label})")

            try:
                work_item.work_func(*work_item.args, **work_item.kwargs)
            except Exception as e:
                self.logger.error(
                    f"Worker {self.worker_id} error processing {work_item.work_id}: {e}",
                    exc_info=True
                )
            finally:
                self.work_queue.task_done()
                self._update_status("idle")

        self.logger.info(f"Worker {self.worker_id} stopped")

    def stop(self):
        """Stop the worker thread."""
        self._stop_event.set()

    def _update_status(self, status: str, work_id: str = "", label: str = ""):
        self._status.status = status
        self._status.current_work_id = work_id
        self._status.current_label = label
        self._status.last_updated = utc_now_iso()

        if self.status_callback:
            try:
                self.status_callback(self._status)
            except Exception as e:
                self.logger.error(f"Error in status callback: {e}")

    @property
    def status(self) -> WorkerStatus:
        """Get current worker status."""
        return self._status


class WorkerPool:
    """Manages a pool of worker threads for concurrent processing."""

    def __init__(self, num_workers: int, max_queue_size: int = 1000):
        """
        Initialize worker pool.

        Args:
            num_workers: Number of worker threads
            max_queue_size: Maximum queue size
        """
        self.num_workers = num_workers
        self.work_queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self.workers: List[WorkerThread] = []
        self.logger = get_logger("firmware_rollout.worker_pool")
        self._lock = threading.Lock()
        self._running = False

    def start(self, status_callback: Optional[Callable] = None):
        """
        Start all worker threads.

        Args:
            status_callback: Callback function for worker status updates
        """
        with self._lock:
            if self._running:
                self.logger.warning("Worker pool already running")
                return

            self.logger.info(f"Starting worker pool with {self.num_workers} workers")
            for i in range(self.num_workers):
                worker = WorkerThread(i, self.work_queue, status_callback)
                worker.start()
                self.workers.append(worker)

            self._running = True

    def stop(self, timeout: float = 30.0):
        """
        Stop all worker threads.

        Args:
            timeout: Maximum time to wait for workers to finish
        """
        with self._lock:
            if not self._running:
                return

            self.logger.info("Stopping worker pool")
            for worker in self.workers:
                worker.stop()

            # Poison pills wake up workers blocked on the queue
            for _ in range(len(self.workers)):
                try:
                    self.work_queue.put(None, block=False)
                except queue.Full:
                    pass

            for worker in self.workers:
                worker.join(timeout=timeout / len(self.workers))
                if worker.is_alive():
                    self.logger.warning(f"Worker {worker.worker_id} did not stop gracefully")

            self.workers.clear()
            self._running = False
            self.logger.info("Worker pool stopped")

    def submit(self, work_id: str, label: str, work_func: Callable, *args, **kwargs) -> bool:
        """
        Submit work to the pool.

        Args:
            work_id: Work identifier (plan id)
            label: Human readable description
            work_func: Function to execute
            *args: Positional arguments for work_func
            **kwargs: Keyword arguments for work_func

        Returns:
            True if work was queued, False if the pool is stopped or the queue is full
        """
        if not self._running:
            self.logger.error(f"Cannot submit {work_id}: worker pool not running")
            return False

        work_item = WorkItem(work_id=work_id, label=label, work_func=work_func, args=args, kwargs=kwargs)
        try:
            self.work_queue.put(work_item, block=False)
            self.logger.debug(f"Submitted {work_id} ({label})")
            return True
        except queue.Full:
            self.logger.error(f"Work queue full, cannot submit {work_id}")
            return False

    def wait(self) -> None:
        """Block until every queued work item has been processed."""
        self.work_queue.join()

    def get_queue_size(self) -> int:
        """Get current queue size."""
        return self.work_queue.qsize()

    def get_worker_statuses(self) -> List[WorkerStatus]:
        """Get status of all workers."""
        return [worker.status for worker in self.workers]

    @property
    def is_running(self) -> bool:
        """Check if worker pool is running."""
        return self._running
