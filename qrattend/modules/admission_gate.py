"""
Admission Gate Module - QR Attendance Gate

This module turns a scanned session token into at most one attendance
outcome per (session, student). Each attempt runs a fixed sequence of
checks and stops at the first failure:

1. token validity
2. live session resolution
3. cohort match (department and batch)
4. duplicate admission
5. device velocity (cooldown across sessions)
6. commit with on-time / late classification

Every attempt, accepted or rejected, leaves exactly one activity event.
Security-relevant rejections carry a risk score. Nothing raises out of
``admit``; callers always receive an ``AdmissionResult``.

Features:
- Fail-fast admission state machine
- Race-safe commit backed by a unique (session, student) constraint
- Lateness measured from session creation, independent of token TTL
- Excused outcomes recorded by the session owner
- Attendance history with aggregate statistics
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from qrattend.modules.abuse_monitor import (
    AbuseMonitor, RISK_COHORT_MISMATCH, RISK_INTERNAL_ERROR, RISK_INVALID_TOKEN, RISK_VELOCITY
)
from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.auth_manager import StudentContext
from qrattend.modules.database_manager import from_db_timestamp, to_db_timestamp
from qrattend.modules.errors import (
    AlreadyMarkedError, AttendanceError, AuthorizationError, InternalError,
    InvalidTokenError, NotFoundError, RateExceeded, ValidationError
)
from qrattend.modules.session_registry import SessionRegistry
from qrattend.modules.token_codec import TokenCodec

STATUS_PRESENT = 'present'
STATUS_LATE = 'late'
STATUS_EXCUSED = 'excused'


def _escape_like(text: str) -> str:
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


@dataclass
class AdmissionResult:
    """Outcome of one admission attempt."""
    accepted: bool
    status: Optional[str] = None
    message: str = ''
    error: Optional[AttendanceError] = None
    record: Dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> Optional[str]:
        return self.error.error_type if self.error else None

    @property
    def http_status(self) -> int:
        return 200 if self.accepted else self.error.status_code

    def to_dict(self) -> Dict[str, Any]:
        if not self.accepted:
            return self.error.to_dict()
        return {
            'success': True,
            'message': self.message,
            'data': {'attendance_record': self.record}
        }


class AdmissionGate:
    """
    Admission state machine and attendance history.
    """

    HISTORY_COLUMNS = (
        'id, session_id, configuration_id, student_name, student_number, department, '
        'batch, section, course, marked_at, status, latitude, longitude, accuracy, '
        'is_verified, verification_flags, notes'
    )

    def __init__(self, database_manager, token_codec: TokenCodec, session_registry: SessionRegistry,
                 abuse_monitor: AbuseMonitor, activity_log: ActivityLog, clock,
                 late_threshold_minutes: int = 15):
        """
        Initialize the admission gate.

        Args:
            database_manager: Database manager instance
            token_codec (TokenCodec): Verifies scanned tokens
            session_registry (SessionRegistry): Resolves live sessions and keeps counters
            abuse_monitor (AbuseMonitor): Cohort and velocity screening
            activity_log (ActivityLog): Audit trail
            clock: Object with a ``now()`` method
            late_threshold_minutes (int): Session age from which admissions count as late
        """
        self.db = database_manager
        self.codec = token_codec
        self.registry = session_registry
        self.monitor = abuse_monitor
        self.activity_log = activity_log
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.late_threshold_minutes = late_threshold_minutes
        self._load_system_settings()

    def _load_system_settings(self):
        """Apply a runtime override of the late threshold, if one is stored."""
        try:
            late_threshold = self.db.get_system_setting('late_threshold_minutes')
            if late_threshold is not None:
                self.late_threshold_minutes = int(late_threshold)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Ignoring invalid late threshold setting: {str(e)}")

    @property
    def late_threshold(self) -> timedelta:
        return timedelta(minutes=self.late_threshold_minutes)

    def classify(self, session_created_at: datetime, admitted_at: datetime) -> str:
        """On time strictly before the late threshold, late from it onwards."""
        if admitted_at - session_created_at >= self.late_threshold:
            return STATUS_LATE
        return STATUS_PRESENT

    def admit(self, token: str, student: StudentContext,
              request: Optional[RequestContext] = None,
              location: Optional[Dict[str, Any]] = None) -> AdmissionResult:
        """
        Process one scanned token for a student.

        Args:
            token (str): Token read from the QR code
            student (StudentContext): Authenticated student
            request (RequestContext): Device fingerprint, IP address, user agent
            location (dict): Optional latitude, longitude, accuracy

        Returns:
            AdmissionResult: Accepted with a status, or rejected with an error
        """
        request = request or RequestContext()
        try:
            return self._admit(token, student, request, location)
        except Exception as e:
            self.logger.error(f"Attendance admission failed for student {student.id}: {str(e)}", exc_info=True)
            self.monitor.flag(
                student.id, 'attendance_marking_error', RISK_INTERNAL_ERROR,
                request=request, details={'error': str(e)}
            )
            return self._reject(InternalError('Server error while marking attendance'))

    def _admit(self, token, student, request, location):
        if not token or not isinstance(token, str):
            return self._rejected_with_audit(
                student, request, ValidationError('QR token is required'), {'reason': 'missing_token'}
            )
        try:
            location = self._validate_location(location)
        except ValidationError as e:
            return self._rejected_with_audit(student, request, e, {'reason': 'invalid_location'})

        # 1. Token validity
        verification = self.codec.verify(token)
        if not verification.valid:
            self.monitor.flag(
                student.id, 'invalid_qr_token', RISK_INVALID_TOKEN,
                request=request, details={'error': verification.reason}
            )
            return self._reject(InvalidTokenError())
        claim = verification.claim

        # 2. Session resolution
        try:
            session = self.registry.resolve_claim(claim, token)
        except NotFoundError:
            return self._rejected_with_audit(
                student, request, InvalidTokenError(),
                {'reason': 'session_not_found', 'session_id': claim.session_id}
            )
        self.registry.record_scan(session['id'])
        configuration = session['configuration']

        # 3. Cohort match
        if not self.monitor.check_cohort(student, configuration):
            self.monitor.flag(
                student.id, 'wrong_department_batch', RISK_COHORT_MISMATCH, request=request,
                details={'student_department': student.department, 'student_batch': student.batch,
                         'class_department': configuration['department'],
                         'class_batch': configuration['batch'], 'session_id': session['id']}
            )
            return self._reject(AuthorizationError('You are not authorized to mark attendance for this class'))

        # 4. Duplicate admission
        existing = self._find_outcome(session['id'], student.id)
        if existing:
            return self._already_marked(existing, student, request)

        # 5. Velocity
        now = self.clock.now()
        recent = self.monitor.last_admission_within_cooldown(student.id, request.device_fingerprint, now)
        if recent:
            if recent['session_id'] == session['id']:
                # Concurrent attempt for this same session committed first
                return self._already_marked(self._find_outcome(session['id'], student.id),
                                            student, request)
            self.monitor.flag(
                student.id, 'rapid_scanning', RISK_VELOCITY, request=request,
                details={'last_scan': recent['marked_at'], 'session_id': session['id']}
            )
            return self._reject(RateExceeded('Please wait before scanning another QR code'))

        # 6. Commit
        status = self.classify(from_db_timestamp(session['created_at']), now)
        flags = self.monitor.verification_flags(student.id, request.device_fingerprint, now)
        try:
            record_id = self._insert_outcome(session, student, status, now, request,
                                             location=location, flags=flags)
        except sqlite3.IntegrityError:
            return self._already_marked(self._find_outcome(session['id'], student.id),
                                        student, request)

        self.registry.record_attendee(session['id'])
        elapsed_minutes = round((now - from_db_timestamp(session['created_at'])).total_seconds() / 60)
        self.activity_log.record(
            student.id, ActivityLog.ACTION_ATTENDANCE_MARKED, request=request,
            details={'session_id': session['id'], 'configuration_id': configuration['id'],
                     'course': configuration['course'], 'status': status,
                     'time_difference': elapsed_minutes, 'verification_flags': flags}
        )
        self.logger.info(f"Attendance recorded: student {student.id}, session {session['id']}, status {status}")

        return AdmissionResult(
            accepted=True,
            status=status,
            message=f"Attendance marked successfully as {status}",
            record={
                'id': record_id,
                'session_id': session['id'],
                'course': configuration['course'],
                'department': configuration['department'],
                'batch': configuration['batch'],
                'status': status,
                'marked_at': to_db_timestamp(now),
                'verification_flags': flags
            }
        )

    def excuse(self, session_id: str, student: StudentContext, owner_id: int,
               note: Optional[str] = None, request: Optional[RequestContext] = None) -> AdmissionResult:
        """
        Record an excused outcome for a student of the session's cohort.

        Raises:
            NotFoundError: Unknown session or not owned by the caller
            ValidationError: Student outside the session's cohort
        """
        request = request or RequestContext()
        session = self.registry.get_owned_session(session_id, owner_id)
        configuration = session['configuration']
        if not self.monitor.check_cohort(student, configuration):
            raise ValidationError('Student does not belong to this class')

        now = self.clock.now()
        try:
            record_id = self._insert_outcome(session, student, STATUS_EXCUSED, now, request, note=note)
        except sqlite3.IntegrityError:
            existing = self._find_outcome(session_id, student.id)
            raise AlreadyMarkedError(payload={'marked_at': existing['marked_at'],
                                              'status': existing['status']})

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_ATTENDANCE_EXCUSED, request=request,
            details={'session_id': session_id, 'student_id': student.id, 'note': note}
        )
        return AdmissionResult(
            accepted=True,
            status=STATUS_EXCUSED,
            message=f"{student.name} excused for this session",
            record={'id': record_id, 'session_id': session_id, 'status': STATUS_EXCUSED,
                    'marked_at': to_db_timestamp(now)}
        )

    def get_history(self, student_id: int, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Attendance history for a student with aggregate statistics.

        Args:
            student_id (int): Student user ID
            filters (dict): start_date / end_date (YYYY-MM-DD), course (substring),
                limit, offset, sort_order ('asc' or 'desc')

        Returns:
            Dict[str, Any]: records, statistics, course_stats, pagination

        Raises:
            ValidationError: Malformed filter values
        """
        filters = filters or {}
        clauses = ["student_id = ?"]
        params: List[Any] = [student_id]

        start_date = self._parse_date(filters.get('start_date'), 'start_date')
        end_date = self._parse_date(filters.get('end_date'), 'end_date')
        if start_date:
            clauses.append("marked_at >= ?")
            params.append(to_db_timestamp(start_date))
        if end_date:
            clauses.append("marked_at < ?")
            params.append(to_db_timestamp(end_date + timedelta(days=1)))
        if filters.get('course'):
            clauses.append("course LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(str(filters['course']))}%")

        try:
            limit = min(max(int(filters.get('limit', 20)), 1), 100)
            offset = max(int(filters.get('offset', 0)), 0)
        except (TypeError, ValueError):
            raise ValidationError('limit and offset must be integers')
        order = 'ASC' if str(filters.get('sort_order', 'desc')).lower() == 'asc' else 'DESC'
        where = ' AND '.join(clauses)

        records = self.db.execute_query(
            f"""SELECT {self.HISTORY_COLUMNS} FROM attendance
                WHERE {where}
                ORDER BY marked_at {order}, id {order}
                LIMIT ? OFFSET ?""",
            tuple(params + [limit, offset])
        )
        for record in records:
            record['is_verified'] = bool(record['is_verified'])
            record['verification_flags'] = json.loads(record['verification_flags'] or '[]')

        totals = self.db.execute_query(
            f"""SELECT status, COUNT(*) AS count FROM attendance
                WHERE {where} GROUP BY status""",
            tuple(params)
        )
        course_rows = self.db.execute_query(
            f"""SELECT course,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status = 'present' THEN 1 ELSE 0 END) AS present,
                       SUM(CASE WHEN status = 'late' THEN 1 ELSE 0 END) AS late,
                       SUM(CASE WHEN status = 'excused' THEN 1 ELSE 0 END) AS excused
                FROM attendance
                WHERE {where}
                GROUP BY course
                ORDER BY course""",
            tuple(params)
        )

        counts = {row['status']: row['count'] for row in totals}
        statistics = self._statistics(
            counts.get(STATUS_PRESENT, 0), counts.get(STATUS_LATE, 0), counts.get(STATUS_EXCUSED, 0)
        )
        course_stats = []
        for row in course_rows:
            entry = {'course': row['course']}
            entry.update(self._statistics(row['present'], row['late'], row['excused']))
            course_stats.append(entry)

        return {
            'records': records,
            'statistics': statistics,
            'course_stats': course_stats,
            'pagination': {'limit': limit, 'offset': offset, 'total': statistics['total']}
        }

    @staticmethod
    def _statistics(present: int, late: int, excused: int) -> Dict[str, Any]:
        total = present + late + excused
        rate = round((present + excused) / total * 100, 2) if total else 0
        return {'total': total, 'present': present, 'late': late, 'excused': excused,
                'attendance_rate': rate}

    @staticmethod
    def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.strptime(value, '%Y-%m-%d')
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be a date in YYYY-MM-DD format")

    @staticmethod
    def _validate_location(location: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
        if location is None:
            return None
        if not isinstance(location, dict):
            raise ValidationError('Location must be an object')
        try:
            latitude = float(location['latitude'])
            longitude = float(location['longitude'])
            accuracy = location.get('accuracy')
            accuracy = float(accuracy) if accuracy is not None else None
        except (KeyError, TypeError, ValueError):
            raise ValidationError('Location requires numeric latitude and longitude')
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise ValidationError('Location coordinates are out of range')
        if accuracy is not None and accuracy < 0:
            raise ValidationError('Location accuracy cannot be negative')
        return {'latitude': latitude, 'longitude': longitude, 'accuracy': accuracy}

    def _find_outcome(self, session_id: str, student_id: int) -> Optional[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT id, marked_at, status FROM attendance WHERE session_id = ? AND student_id = ?",
            (session_id, student_id),
            fetch_all=False
        )

    def _insert_outcome(self, session, student, status, now, request,
                        location=None, flags=None, note=None) -> int:
        configuration = session['configuration']
        location = location or {}
        flags = flags or []
        return self.db.execute_update(
            """INSERT INTO attendance
               (session_id, configuration_id, student_id, student_name, student_email,
                student_number, department, batch, section, course, marked_at, status,
                device_fingerprint, ip_address, latitude, longitude, accuracy,
                is_verified, verification_flags, notes)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (session['id'], configuration['id'], student.id, student.name, student.email,
             student.student_number, student.department, student.batch,
             configuration['section'], configuration['course'], to_db_timestamp(now), status,
             request.device_fingerprint, request.ip_address,
             location.get('latitude'), location.get('longitude'), location.get('accuracy'),
             0 if flags else 1, json.dumps(flags), note)
        )

    def _already_marked(self, existing, student, request) -> AdmissionResult:
        payload = {'marked_at': existing['marked_at'], 'status': existing['status']}
        self.activity_log.record(
            student.id, ActivityLog.ACTION_ATTENDANCE_REJECTED, request=request,
            details={'reason': 'already_marked', 'attendance_id': existing['id']}
        )
        return self._reject(AlreadyMarkedError(payload=payload))

    def _rejected_with_audit(self, student, request, error, details) -> AdmissionResult:
        self.activity_log.record(
            student.id, ActivityLog.ACTION_ATTENDANCE_REJECTED, request=request, details=details
        )
        return self._reject(error)

    @staticmethod
    def _reject(error: AttendanceError) -> AdmissionResult:
        return AdmissionResult(accepted=False, message=error.message, error=error)
