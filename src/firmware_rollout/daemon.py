"""Daemon service running plans and processing queued operator commands."""

import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from firmware_rollout import constants
from firmware_rollout.config import Config, get_config
from firmware_rollout.exceptions import FirmwareRolloutError
from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import (
    DaemonStatus, PlanStatus, Strategy, WorkerStatus, parse_timestamp, utc_now, utc_now_iso
)
from firmware_rollout.service import FirmwareRolloutService
from firmware_rollout.utils.file_ops import atomic_write_json, read_json
from firmware_rollout.worker_pool import WorkerPool


# How often scheduled plans and status files are refreshed, in seconds
SCHEDULER_INTERVAL = 30
STATUS_INTERVAL = 5


class CommandQueueHandler(FileSystemEventHandler):
    """Handler for command queue directory monitoring."""

    def __init__(self, daemon: 'RolloutDaemon'):
        """
        Initialize handler.

        Args:
            daemon: Reference to daemon instance
        """
        self.daemon = daemon
        self.logger = get_logger("firmware_rollout.command_queue")

    def on_created(self, event: FileSystemEvent):
        """Handle file creation in command queue."""
        if event.is_directory:
            return

        file_path = Path(event.src_path)
        if file_path.suffix == '.json' and not file_path.name.startswith('.'):
            self.logger.info(f"New command file detected: {file_path.name}")
            self.daemon.process_command(file_path)


class RolloutDaemon:
    """
    Long-running service.

    Executes plans on the worker pool, reacts to command files dropped in
    ``commands/incoming`` (written by ``firmware-rollout`` CLI commands),
    starts ``scheduled`` plans when their start time arrives and resumes
    plans a previous process left running.
    """

    def __init__(self, config: Optional[Config] = None, service: Optional[FirmwareRolloutService] = None):
        """
        Initialize daemon.

        Args:
            config: Configuration instance
            service: Service facade (built from config when omitted)
        """
        self.config = config or get_config()
        self.logger = get_logger("firmware_rollout.daemon")

        self.worker_pool = WorkerPool(
            num_workers=self.config.max_workers,
            max_queue_size=self.config.get("workers.queue_size", 1000)
        )
        self.service = service or FirmwareRolloutService.from_config(self.config, self.worker_pool)
        self.service.worker_pool = self.worker_pool

        self._running = False
        self._stop_event = threading.Event()
        self._status_lock = threading.Lock()
        self._daemon_status = DaemonStatus(running=False, workers=self.config.max_workers)
        self._observer: Optional[Observer] = None

        self._handlers = {
            "execute_plan": lambda cmd: self.service.execute_plan(cmd["plan_id"]),
            "approve_plan": lambda cmd: self.service.approve_plan(cmd["plan_id"]),
            "pause_plan": lambda cmd: self.service.pause_plan(cmd["plan_id"]),
            "resume_plan": lambda cmd: self.service.resume_plan(cmd["plan_id"]),
            "cancel_plan": lambda cmd: self.service.cancel_plan(cmd["plan_id"]),
            "cancel_job": lambda cmd: self.service.cancel_job(cmd["job_id"]),
        }

    def install_signal_handlers(self):
        """Stop cleanly on SIGTERM/SIGINT."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def start(self, block: bool = True):
        """
        Start the daemon service.

        Args:
            block: Run the main loop until stopped
        """
        if self._running:
            self.logger.warning("Daemon already running")
            return

        self.logger.info("Starting firmware rollout daemon")
        self._running = True
        self._daemon_status.running = True
        self._daemon_status.started_at = utc_now_iso()

        self.worker_pool.start(status_callback=self._worker_status_callback)
        self.service.recover_interrupted_plans()
        self._start_command_queue_monitor()

        self._scheduler_thread = threading.Thread(
            target=self._scheduler_loop, daemon=True, name="PlanScheduler"
        )
        self._scheduler_thread.start()
        self._status_updater_thread = threading.Thread(
            target=self._update_status_loop, daemon=True, name="StatusUpdater"
        )
        self._status_updater_thread.start()

        self._save_daemon_status()
        self.logger.info("Daemon started successfully")

        if not block:
            return
        try:
            while not self._stop_event.is_set():
                time.sleep(1)
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            self.stop()

    def stop(self):
        """Stop the daemon service."""
        if not self._running:
            return

        self.logger.info("Stopping firmware rollout daemon")
        self._running = False
        self._stop_event.set()

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)

        # Running plans stay "running" on disk and are resumed on next start
        self.worker_pool.stop(timeout=30)

        self._daemon_status.running = False
        self._save_daemon_status()
        self.logger.info("Daemon stopped")

    def _signal_handler(self, signum, frame):
        """Handle termination signals."""
        self.logger.info(f"Received signal {signum}")
        self.stop()
        sys.exit(0)

    def _start_command_queue_monitor(self):
        """Start monitoring the command queue directory."""
        command_dir = self.config.get_path(constants.DIR_COMMANDS_INCOMING)
        command_dir.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Starting command queue monitor: {command_dir}")

        self._observer = Observer()
        self._observer.schedule(CommandQueueHandler(self), str(command_dir), recursive=False)
        self._observer.start()

        # Commands written while the daemon was down
        for file_path in sorted(command_dir.glob("*.json")):
            if not file_path.name.startswith('.'):
                self.process_command(file_path)

    def process_command(self, command_file: Path):
        """
        Process a command from the queue.

        The file is moved to ``commands/processed`` with the outcome recorded.

        Args:
            command_file: Path to command file
        """
        try:
            command = read_json(command_file)
        except (OSError, ValueError) as e:
            self.logger.error(f"Cannot read command {command_file}: {e}")
            return

        command_type = command.get("command")
        handler = self._handlers.get(command_type)
        self.logger.info(f"Processing command: {command_type}")

        if handler is None:
            command["result"] = "rejected"
            command["error"] = f"unknown command {command_type}"
            self.logger.warning(f"Unknown command type: {command_type}")
        else:
            try:
                handler(command)
                command["result"] = "accepted"
            except (FirmwareRolloutError, KeyError) as e:
                command["result"] = "rejected"
                command["error"] = str(e)
                self.logger.error(f"Command {command_type} rejected: {e}")

        command["processed_at"] = utc_now_iso()
        processed_file = self.config.get_path(constants.DIR_COMMANDS_PROCESSED) / command_file.name
        try:
            atomic_write_json(processed_file, command)
            command_file.unlink()
        except OSError as e:
            self.logger.error(f"Cannot archive command {command_file}: {e}")

    def start_due_plans(self):
        """Start approved ``scheduled`` plans whose start time has arrived."""
        now = utc_now()
        for plan in self.service.list_plans(PlanStatus.APPROVED.value):
            config = plan.config
            if config.strategy != Strategy.SCHEDULED.value or not config.scheduled_start:
                continue
            if parse_timestamp(config.scheduled_start) <= now:
                self.logger.info(f"Starting scheduled plan {plan.id}")
                self.service.execute_plan(plan.id)

    def _scheduler_loop(self):
        while not self._stop_event.is_set():
            try:
                self.start_due_plans()
            except Exception as e:
                self.logger.error(f"Error starting scheduled plans: {e}", exc_info=True)
            self._stop_event.wait(SCHEDULER_INTERVAL)

    def _update_status_loop(self):
        """Periodically update daemon status."""
        while not self._stop_event.is_set():
            try:
                with self._status_lock:
                    self._daemon_status.running_plans = len(self.service.executor.running_plan_ids())
                    self._daemon_status.last_updated = utc_now_iso()
                self._save_daemon_status()
                self._save_worker_statuses()
            except Exception as e:
                self.logger.error(f"Error updating status: {e}", exc_info=True)
            self._stop_event.wait(STATUS_INTERVAL)

    def _save_daemon_status(self):
        """Save daemon status to file."""
        status_file = self.config.get_path(constants.STATUS_DAEMON_FILE)
        with self._status_lock:
            atomic_write_json(status_file, self._daemon_status.to_dict())

    def _save_worker_statuses(self):
        """Save worker statuses to file."""
        status_file = self.config.get_path(constants.STATUS_WORKERS_FILE)
        statuses = [ws.to_dict() for ws in self.worker_pool.get_worker_statuses()]
        atomic_write_json(status_file, {"workers": statuses})

    def _worker_status_callback(self, worker_status: WorkerStatus):
        """Callback for worker status updates."""
        # Called on every work item; the status thread persists periodically
        self.logger.debug(f"Worker {worker_status.worker_id}: {worker_status.status}")


def run_daemon(config: Optional[Config] = None):
    """Run the daemon service."""
    daemon = RolloutDaemon(config)
    daemon.install_signal_handlers()
    daemon.start()
