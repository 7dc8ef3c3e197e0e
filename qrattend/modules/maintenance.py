"""
Maintenance Module - QR Attendance Gate

Periodic housekeeping run on a background scheduler: sessions whose expiry
lies beyond the retention horizon are deleted (attendance outcomes are kept)
and activity events older than the retention window are purged.
"""

import atexit
import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from qrattend.modules.activity_log import ActivityLog
from qrattend.modules.session_registry import SessionRegistry


class MaintenanceScheduler:
    """
    Runs ``run_maintenance`` on a fixed interval.
    """

    JOB_ID = 'qrattend_maintenance'

    def __init__(self, session_registry: SessionRegistry, activity_log: ActivityLog,
                 notifier=None, session_retention_minutes: int = 60,
                 activity_retention_days: int = 90, interval_minutes: int = 5):
        """
        Initialize the maintenance scheduler.

        Args:
            session_registry (SessionRegistry): Owner of the sessions table
            activity_log (ActivityLog): Owner of the audit trail
            notifier: Optional AlertNotifier receiving a summary of each run
            session_retention_minutes (int): Keep sessions this long past expiry
            activity_retention_days (int): Keep activity events this long
            interval_minutes (int): Minutes between runs
        """
        self.registry = session_registry
        self.activity_log = activity_log
        self.notifier = notifier
        self.session_retention_minutes = session_retention_minutes
        self.activity_retention_days = activity_retention_days
        self.interval_minutes = interval_minutes
        self.logger = logging.getLogger(__name__)
        self.scheduler: Optional[BackgroundScheduler] = None

    def run_maintenance(self) -> Dict[str, Any]:
        """
        Purge expired sessions and stale activity events once.

        Returns:
            Dict[str, Any]: Number of sessions and events removed
        """
        summary = {
            'sessions_purged': self.registry.purge_expired_sessions(self.session_retention_minutes),
            'events_purged': self.activity_log.purge_older_than(self.activity_retention_days)
        }

        if summary['sessions_purged'] or summary['events_purged']:
            self.logger.info(
                f"Maintenance removed {summary['sessions_purged']} session(s) "
                f"and {summary['events_purged']} activity event(s)"
            )
            if self.notifier is not None:
                self.notifier.send_maintenance_alert(summary)
        return summary

    def start(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            return

        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            func=self.run_maintenance,
            trigger='interval',
            minutes=self.interval_minutes,
            id=self.JOB_ID,
            name='Purge expired sessions and stale activity',
            replace_existing=True
        )
        self.scheduler.start()
        atexit.register(self.shutdown)
        self.logger.info(f"Maintenance scheduler started (every {self.interval_minutes} minutes)")

    def shutdown(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Maintenance scheduler stopped")
