"""
Session Registry Module - QR Attendance Gate

This module tracks attendance sessions: the short validity windows opened
against a class configuration and displayed to students as a QR code. It
guarantees that a configuration never has two live sessions at once, even
when several server processes receive "open session" requests for the same
class simultaneously, by leaning on the database's partial unique index
rather than any in-process cache.

Features:
- Idempotent session opening (a live session is reused, not re-minted)
- Token-to-session resolution with a wall-clock expiry re-check
- Early closing by the session owner
- Scan and attendee counters
- Live session statistics for the owner's screen
- Purging of sessions past the retention horizon
"""

import hmac
import logging
import math
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.database_manager import to_db_timestamp, from_db_timestamp
from qrattend.modules.errors import ConflictError, InvalidTokenError, NotFoundError
from qrattend.modules.token_codec import SessionClaim, TokenCodec, new_session_id


class SessionRegistry:
    """
    Storage-backed registry of attendance sessions.
    """

    def __init__(self, database_manager, token_codec: TokenCodec, configuration_manager,
                 activity_log: ActivityLog, clock, recent_attendees_limit: int = 10):
        """
        Initialize the session registry.

        Args:
            database_manager: Database manager instance
            token_codec (TokenCodec): Issues the token embedded in each session
            configuration_manager: Resolves and authorizes class configurations
            activity_log (ActivityLog): Audit trail
            clock: Object with a ``now()`` method
            recent_attendees_limit (int): Attendees listed in session statistics
        """
        self.db = database_manager
        self.codec = token_codec
        self.configurations = configuration_manager
        self.activity_log = activity_log
        self.clock = clock
        self.recent_attendees_limit = recent_attendees_limit
        self.logger = logging.getLogger(__name__)

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.codec.ttl_seconds)

    def open_session(self, configuration_id: int, owner_id: int,
                     request: Optional[RequestContext] = None) -> Dict[str, Any]:
        """
        Return the live session for a configuration, creating one if needed.

        Args:
            configuration_id (int): Class configuration to open
            owner_id (int): Requesting teacher, must own the configuration

        Returns:
            Dict[str, Any]: session, token, remaining_seconds, reused, configuration

        Raises:
            NotFoundError: Unknown, foreign or deactivated configuration
        """
        configuration = self.configurations.get_configuration(
            configuration_id, owner_id=owner_id, active_only=True
        )
        now = self.clock.now()

        live = self._find_live_session(configuration_id, now)
        if live:
            self.logger.info(f"Reusing live session {live['id']} for configuration {configuration_id}")
            return self._describe(live, configuration, now, reused=True)

        session_id = new_session_id()
        token = self.codec.issue(session_id, configuration_id, owner_id, issued_at=now)
        created_at = to_db_timestamp(now)
        # Token claims carry whole seconds; the stored expiry must match them
        expires_at = datetime.fromtimestamp(int(now.timestamp()), tz=timezone.utc) + self.ttl

        try:
            with self.db.transaction() as conn:
                # Expired sessions still flagged active would block the unique index
                conn.execute(
                    """UPDATE sessions SET is_active = 0
                       WHERE configuration_id = ? AND is_active = 1 AND expires_at <= ?""",
                    (configuration_id, created_at)
                )
                conn.execute(
                    """INSERT INTO sessions (id, configuration_id, owner_id, token,
                                             created_at, expires_at, is_active)
                       VALUES (?, ?, ?, ?, ?, ?, 1)""",
                    (session_id, configuration_id, owner_id, token, created_at,
                     to_db_timestamp(expires_at))
                )
                conn.execute(
                    """UPDATE class_configurations
                       SET total_sessions = total_sessions + 1, last_used_at = ?
                       WHERE id = ?""",
                    (created_at, configuration_id)
                )
        except sqlite3.IntegrityError:
            # Another request opened a session first
            live = self._find_live_session(configuration_id, now)
            if live:
                return self._describe(live, configuration, now, reused=True)
            raise ConflictError('A session is already being opened for this class, please retry')

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_QR_GENERATED, request=request,
            details={'configuration_id': configuration_id, 'session_id': session_id,
                     'course': configuration['course'], 'department': configuration['department'],
                     'batch': configuration['batch']}
        )
        self.logger.info(f"Session {session_id} opened for configuration {configuration_id}")

        session = self._get_session(session_id)
        return self._describe(session, configuration, now, reused=False)

    def resolve(self, token: str) -> Dict[str, Any]:
        """
        Map a token to its live session.

        Raises:
            InvalidTokenError: Token fails verification
            NotFoundError: No active, unexpired session matches the token
        """
        verification = self.codec.verify(token)
        if not verification.valid:
            raise InvalidTokenError()
        return self.resolve_claim(verification.claim, token)

    def resolve_claim(self, claim: SessionClaim, token: str) -> Dict[str, Any]:
        """
        Look up the live session named by a verified claim.

        The expiry stored with the session is checked against the clock again
        because an owner can close a session before its token expires.

        Returns:
            Dict[str, Any]: Session row with a nested ``configuration`` dict

        Raises:
            NotFoundError: No matching live session
        """
        now = self.clock.now()
        row = self.db.execute_query(
            """SELECT s.*, c.department, c.batch, c.course, c.class_type, c.section,
                      c.is_active AS configuration_active
               FROM sessions s
               JOIN class_configurations c ON c.id = s.configuration_id
               WHERE s.id = ? AND s.configuration_id = ? AND s.is_active = 1
                 AND s.expires_at > ?""",
            (claim.session_id, claim.configuration_id, to_db_timestamp(now)),
            fetch_all=False
        )

        if not row or not row['configuration_active']:
            raise NotFoundError('Session not found or no longer active')
        if not hmac.compare_digest(row['token'], token):
            raise NotFoundError('Session not found or no longer active')

        session = {key: row[key] for key in (
            'id', 'configuration_id', 'owner_id', 'created_at', 'expires_at',
            'total_scans', 'unique_attendees'
        )}
        session['configuration'] = {
            'id': row['configuration_id'],
            'owner_id': row['owner_id'],
            'department': row['department'],
            'batch': row['batch'],
            'course': row['course'],
            'class_type': row['class_type'],
            'section': row['section'] or None
        }
        return session

    def get_owned_session(self, session_id: str, owner_id: int) -> Dict[str, Any]:
        """
        Session with its configuration, live or not, for its owner.

        Raises:
            NotFoundError: Unknown session or not owned by the caller
        """
        row = self.db.execute_query(
            """SELECT s.*, c.department, c.batch, c.course, c.class_type, c.section
               FROM sessions s
               JOIN class_configurations c ON c.id = s.configuration_id
               WHERE s.id = ? AND s.owner_id = ?""",
            (session_id, owner_id),
            fetch_all=False
        )
        if not row:
            raise NotFoundError('Session not found')

        session = self._public_session({key: row[key] for key in (
            'id', 'configuration_id', 'owner_id', 'created_at', 'expires_at',
            'is_active', 'total_scans', 'unique_attendees'
        )})
        session['configuration'] = {
            'id': row['configuration_id'],
            'department': row['department'],
            'batch': row['batch'],
            'course': row['course'],
            'class_type': row['class_type'],
            'section': row['section'] or None
        }
        return session

    def record_scan(self, session_id: str) -> None:
        self._increment(session_id, 'total_scans')

    def record_attendee(self, session_id: str) -> None:
        self._increment(session_id, 'unique_attendees')

    def close_session(self, session_id: str, owner_id: int,
                      request: Optional[RequestContext] = None) -> bool:
        """
        Deactivate a session before its expiry.

        Raises:
            NotFoundError: Unknown session or not owned by the caller
        """
        affected = self.db.execute_update(
            "UPDATE sessions SET is_active = 0 WHERE id = ? AND owner_id = ?",
            (session_id, owner_id)
        )
        if not affected:
            raise NotFoundError('Session not found')

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_SESSION_CLOSED, request=request,
            details={'session_id': session_id}
        )
        self.logger.info(f"Session {session_id} closed by user {owner_id}")
        return True

    def get_session_stats(self, session_id: str, owner_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Live statistics for a session.

        Raises:
            NotFoundError: Unknown session or not owned by the caller
        """
        session = self._get_session(session_id)
        if not session or (owner_id is not None and session['owner_id'] != owner_id):
            raise NotFoundError('Session not found')

        now = self.clock.now()
        attendance_count = self.db.execute_query(
            "SELECT COUNT(*) AS count FROM attendance WHERE session_id = ?",
            (session_id,),
            fetch_all=False
        )['count']

        recent_attendees = self.db.execute_query(
            """SELECT student_name, student_number, marked_at, status
               FROM attendance WHERE session_id = ?
               ORDER BY marked_at DESC, id DESC LIMIT ?""",
            (session_id, self.recent_attendees_limit)
        )

        return {
            'session': self._public_session(session),
            'attendance_count': attendance_count,
            'recent_attendees': recent_attendees,
            'total_scans': session['total_scans'],
            'unique_attendees': session['unique_attendees'],
            'is_active': self._is_live(session, now),
            'remaining_seconds': self._remaining_seconds(session, now)
        }

    def purge_expired_sessions(self, retention_minutes: int = 60) -> int:
        """Delete sessions that expired longer ago than the retention horizon."""
        cutoff = self.clock.now() - timedelta(minutes=retention_minutes)
        try:
            removed = self.db.execute_update(
                "DELETE FROM sessions WHERE expires_at < ?",
                (to_db_timestamp(cutoff),)
            )
            if removed:
                self.logger.info(f"Purged {removed} expired session(s)")
            return removed
        except Exception as e:
            self.logger.error(f"Failed to purge expired sessions: {str(e)}")
            return 0

    def _find_live_session(self, configuration_id: int, now: datetime) -> Optional[Dict[str, Any]]:
        return self.db.execute_query(
            """SELECT * FROM sessions
               WHERE configuration_id = ? AND is_active = 1 AND expires_at > ?""",
            (configuration_id, to_db_timestamp(now)),
            fetch_all=False
        )

    def _get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT * FROM sessions WHERE id = ?",
            (session_id,),
            fetch_all=False
        )

    def _increment(self, session_id: str, column: str) -> None:
        try:
            self.db.execute_update(
                f"UPDATE sessions SET {column} = {column} + 1 WHERE id = ?",
                (session_id,)
            )
        except Exception as e:
            self.logger.error(f"Failed to update {column} for session {session_id}: {str(e)}")

    def _is_live(self, session: Dict[str, Any], now: datetime) -> bool:
        return bool(session['is_active']) and from_db_timestamp(session['expires_at']) > now

    def _remaining_seconds(self, session: Dict[str, Any], now: datetime) -> int:
        if not session['is_active']:
            return 0
        remaining = (from_db_timestamp(session['expires_at']) - now).total_seconds()
        return max(0, math.floor(remaining))

    @staticmethod
    def _public_session(session: Dict[str, Any]) -> Dict[str, Any]:
        public = {k: v for k, v in session.items() if k != 'token'}
        public['is_active'] = bool(public['is_active'])
        return public

    def _describe(self, session: Dict[str, Any], configuration: Dict[str, Any],
                  now: datetime, reused: bool) -> Dict[str, Any]:
        return {
            'session': self._public_session(session),
            'token': session['token'],
            'remaining_seconds': self._remaining_seconds(session, now),
            'reused': reused,
            'configuration': {
                'course': configuration['course'],
                'department': configuration['department'],
                'batch': configuration['batch'],
                'section': configuration['section'],
                'class_type': configuration['class_type']
            }
        }
