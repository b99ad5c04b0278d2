"""Maintenance window calendar."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from firmware_rollout.exceptions import ConfigurationError, MaintenanceWindowViolationError
from firmware_rollout.models import MaintenanceWindow, parse_timestamp, utc_now


class MaintenanceCalendar:
    """Maintenance windows per cluster. Clusters without a window are unrestricted."""

    def __init__(self, windows: Optional[Iterable[MaintenanceWindow]] = None):
        self._windows: Dict[str, List[MaintenanceWindow]] = {}
        for window in windows or []:
            self.add(window)

    @classmethod
    def from_config(cls, entries: List[Dict[str, Any]]) -> "MaintenanceCalendar":
        """
        Build a calendar from configuration entries.

        Args:
            entries: Dicts with ``cluster_name``, ``start`` (ISO-8601),
                ``duration_minutes`` and optional ``recurrence_days``

        Raises:
            ConfigurationError: If an entry is malformed
        """
        windows = []
        for entry in entries:
            try:
                window = MaintenanceWindow(
                    cluster_name=str(entry["cluster_name"]),
                    start=str(entry["start"]),
                    duration_minutes=int(entry["duration_minutes"]),
                    recurrence_days=int(entry.get("recurrence_days", 0) or 0),
                )
                parse_timestamp(window.start)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid maintenance window {entry!r}: {e}") from e
            if window.duration_minutes <= 0:
                raise ConfigurationError(f"Maintenance window for {window.cluster_name} has no duration")
            windows.append(window)
        return cls(windows)

    def add(self, window: MaintenanceWindow) -> None:
        """Register a window."""
        self._windows.setdefault(window.cluster_name, []).append(window)

    def windows_for(self, cluster_name: str) -> List[MaintenanceWindow]:
        """Windows registered for a cluster."""
        return list(self._windows.get(cluster_name, []))

    def is_open(self, cluster_name: str, at: Optional[datetime] = None) -> bool:
        """Whether disruptive work may run on a cluster at ``at`` (default now)."""
        windows = self._windows.get(cluster_name)
        if not windows:
            return True
        at = at or utc_now()
        return any(w.contains(at) for w in windows)

    def earliest_start(self, cluster_name: str, at: datetime) -> datetime:
        """
        Earliest time at or after ``at`` when the cluster's window is open.

        Args:
            cluster_name: Cluster name
            at: Desired start time

        Returns:
            ``at`` itself when allowed, otherwise the next window opening

        Raises:
            MaintenanceWindowViolationError: If no window will open again
        """
        if self.is_open(cluster_name, at):
            return at

        upcoming = [
            start for start in (w.next_occurrence(at) for w in self._windows[cluster_name])
            if start is not None
        ]
        if not upcoming:
            raise MaintenanceWindowViolationError(
                cluster_name, f"no maintenance window opens after {at.isoformat()}"
            )
        return min(upcoming)
