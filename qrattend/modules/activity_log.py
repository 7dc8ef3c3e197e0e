"""
Activity Log Module - QR Attendance Gate

Append-only audit trail of security-relevant events: session creation,
admissions and rejections, suspicious activity with a risk score, logins
and class configuration changes. Events are never updated; they are purged
once they fall outside the retention window.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from qrattend.modules.database_manager import to_db_timestamp


@dataclass
class RequestContext:
    """Per-request client information derived at the HTTP boundary."""
    device_fingerprint: str = 'unknown'
    ip_address: str = 'unknown'
    user_agent: Optional[str] = None


class ActivityLog:
    """Writes and reads activity events."""

    ACTION_LOGIN = 'login'
    ACTION_LOGOUT = 'logout'
    ACTION_FAILED_LOGIN = 'failed_login'
    ACTION_QR_GENERATED = 'qr_generated'
    ACTION_SESSION_CLOSED = 'session_closed'
    ACTION_ATTENDANCE_MARKED = 'attendance_marked'
    ACTION_ATTENDANCE_EXCUSED = 'attendance_excused'
    ACTION_ATTENDANCE_REJECTED = 'attendance_rejected'
    ACTION_PRESET_CREATED = 'preset_created'
    ACTION_PRESET_UPDATED = 'preset_updated'
    ACTION_PRESET_DELETED = 'preset_deleted'
    ACTION_SUSPICIOUS = 'suspicious_activity'

    def __init__(self, database_manager, clock):
        self.db = database_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def record(self, user_id: Optional[int], action: str,
               request: Optional[RequestContext] = None,
               details: Optional[Dict[str, Any]] = None,
               suspicious: bool = False, risk_score: int = 0) -> Optional[int]:
        """
        Append one event.

        Returns:
            int: Event ID, or None if the write failed
        """
        request = request or RequestContext()
        try:
            return self.db.execute_update(
                """INSERT INTO activity_logs
                   (user_id, action, details, ip_address, device_fingerprint,
                    user_agent, suspicious_flag, risk_score, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, action, json.dumps(details or {}, default=str),
                 request.ip_address, request.device_fingerprint, request.user_agent,
                 1 if suspicious else 0, max(0, min(100, int(risk_score))),
                 to_db_timestamp(self.clock.now()))
            )
        except Exception as e:
            self.logger.error(f"Failed to record activity '{action}' for user {user_id}: {str(e)}")
            return None

    def get_events(self, user_id: Optional[int] = None, action: Optional[str] = None,
                   suspicious_only: bool = False, min_risk: int = 0,
                   since: Optional[datetime] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events first, filtered by the given criteria."""
        clauses = ["risk_score >= ?"]
        params: List[Any] = [min_risk]
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        if suspicious_only:
            clauses.append("suspicious_flag = 1")
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_db_timestamp(since))
        params.append(limit)

        rows = self.db.execute_query(
            f"""SELECT * FROM activity_logs
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, id DESC
                LIMIT ?""",
            tuple(params)
        )
        for row in rows:
            row['details'] = json.loads(row['details'] or '{}')
            row['suspicious_flag'] = bool(row['suspicious_flag'])
        return rows

    def purge_older_than(self, days: int) -> int:
        """Delete events older than the retention window."""
        cutoff = self.clock.now() - timedelta(days=days)
        try:
            removed = self.db.execute_update(
                "DELETE FROM activity_logs WHERE created_at < ?",
                (to_db_timestamp(cutoff),)
            )
            if removed:
                self.logger.info(f"Purged {removed} activity event(s) older than {days} days")
            return removed
        except Exception as e:
            self.logger.error(f"Failed to purge activity events: {str(e)}")
            return 0
