"""
Abuse Monitor Module - QR Attendance Gate

Screens admission attempts against stored history. The checks are plain
predicate functions over the attendance table so each can be exercised on
its own; ``AbuseMonitor`` composes them, owns the risk tiers and writes the
flagged audit events that operators review.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.database_manager import to_db_timestamp

RISK_INVALID_TOKEN = 70
RISK_COHORT_MISMATCH = 90
RISK_VELOCITY = 60
RISK_INTERNAL_ERROR = 50

FLAG_SUSPICIOUS_DEVICE = 'suspicious_device'


def find_recent_admission(db, student_id: int, device_fingerprint: str,
                          since: datetime) -> Optional[Dict[str, Any]]:
    """Latest scanned outcome by this student on this device at or after ``since``."""
    return db.execute_query(
        """SELECT id, session_id, marked_at, status FROM attendance
           WHERE student_id = ? AND device_fingerprint = ? AND marked_at >= ?
             AND status != 'excused'
           ORDER BY marked_at DESC LIMIT 1""",
        (student_id, device_fingerprint, to_db_timestamp(since)),
        fetch_all=False
    )


def find_device_reuse(db, device_fingerprint: str, student_id: int,
                      since: datetime) -> List[Dict[str, Any]]:
    """Students other than ``student_id`` who scanned from this device since ``since``."""
    return db.execute_query(
        """SELECT DISTINCT student_id FROM attendance
           WHERE device_fingerprint = ? AND student_id != ? AND marked_at >= ?
             AND status != 'excused'""",
        (device_fingerprint, student_id, to_db_timestamp(since))
    )


def cohort_matches(student, configuration: Dict[str, Any]) -> bool:
    """A student may only check in to sessions for their own department and batch."""
    return (student.department == configuration['department']
            and student.batch == configuration['batch'])


class AbuseMonitor:
    """
    Composes abuse predicates and records flagged events.
    """

    def __init__(self, database_manager, activity_log: ActivityLog,
                 notifier=None, cooldown_minutes: int = 5):
        self.db = database_manager
        self.activity_log = activity_log
        self.notifier = notifier
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.logger = logging.getLogger(__name__)

    def last_admission_within_cooldown(self, student_id: int, device_fingerprint: str,
                                       now: datetime) -> Optional[Dict[str, Any]]:
        return find_recent_admission(self.db, student_id, device_fingerprint, now - self.cooldown)

    def check_velocity(self, student_id: int, device_fingerprint: str, now: datetime) -> bool:
        """True when this student and device were admitted inside the cooldown window."""
        return self.last_admission_within_cooldown(student_id, device_fingerprint, now) is not None

    def check_cohort(self, student, configuration: Dict[str, Any]) -> bool:
        return cohort_matches(student, configuration)

    def verification_flags(self, student_id: int, device_fingerprint: str,
                           now: datetime) -> List[str]:
        """Flags attached to an accepted outcome; they never cause a rejection."""
        flags = []
        if not device_fingerprint or device_fingerprint == 'unknown':
            flags.append(FLAG_SUSPICIOUS_DEVICE)
        elif find_device_reuse(self.db, device_fingerprint, student_id, now - self.cooldown):
            flags.append(FLAG_SUSPICIOUS_DEVICE)
        return flags

    def flag(self, user_id: Optional[int], reason: str, risk_score: int,
             request: Optional[RequestContext] = None,
             details: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Record one suspicious activity event and alert operators.

        Returns:
            int: Activity event ID
        """
        request = request or RequestContext()
        event_details = {'reason': reason}
        event_details.update(details or {})

        event_id = self.activity_log.record(
            user_id,
            ActivityLog.ACTION_SUSPICIOUS,
            request=request,
            details=event_details,
            suspicious=True,
            risk_score=risk_score
        )
        self.logger.warning(f"Suspicious activity flagged for user {user_id}: {reason} (risk {risk_score})")

        if self.notifier is not None:
            self.notifier.send_suspicious_activity_alert({
                'event_id': event_id,
                'user_id': user_id,
                'reason': reason,
                'risk_score': risk_score,
                'ip_address': request.ip_address,
                'device_fingerprint': request.device_fingerprint,
                'details': details or {}
            })
        return event_id

    def get_flagged_events(self, since: Optional[datetime] = None, min_risk: int = 0,
                           limit: int = 50) -> List[Dict[str, Any]]:
        """Suspicious events for operator review, most recent first."""
        try:
            return self.activity_log.get_events(
                suspicious_only=True, min_risk=min_risk, since=since, limit=limit
            )
        except Exception as e:
            self.logger.error(f"Failed to get flagged events: {str(e)}")
            return []
