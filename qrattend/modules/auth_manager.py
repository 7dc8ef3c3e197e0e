"""
Authentication Manager Module - QR Attendance Gate

This module supplies the authenticated identity that accompanies every
attendance request: account creation, password checks and the identity
snapshot (role, cohort, student number) that the admission gate matches
against a class configuration. Login outcomes are written to the activity
log.
"""

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from werkzeug.security import generate_password_hash, check_password_hash

from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.errors import ConflictError, NotFoundError, ValidationError


@dataclass
class StudentContext:
    """Identity attached to an authenticated request."""
    id: int
    name: str
    email: str
    role: str
    department: Optional[str] = None
    batch: Optional[str] = None
    section: Optional[str] = None
    student_number: Optional[str] = None


def derive_device_fingerprint(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """
    Hash the stable request headers and client address into a device ID.

    Returns:
        str: SHA-256 hex digest, or 'unknown' when nothing identifies the client
    """
    fingerprint = {
        'userAgent': headers.get('User-Agent', ''),
        'acceptLanguage': headers.get('Accept-Language', ''),
        'acceptEncoding': headers.get('Accept-Encoding', ''),
        'connection': headers.get('Connection', ''),
        'ipAddress': remote_addr or '',
        'dnt': headers.get('DNT', ''),
        'upgradeInsecureRequests': headers.get('Upgrade-Insecure-Requests', '')
    }
    if not any(fingerprint.values()):
        return 'unknown'
    return hashlib.sha256(json.dumps(fingerprint, sort_keys=True).encode('utf-8')).hexdigest()


class AuthManager:
    """
    Account storage and password authentication.
    """

    ROLES = ('student', 'teacher', 'admin')

    def __init__(self, database_manager, activity_log: ActivityLog):
        self.db = database_manager
        self.activity_log = activity_log
        self.logger = logging.getLogger(__name__)

    def create_user(self, email: str, password: str, full_name: str, role: str = 'student',
                    department: str = None, batch: str = None, section: str = None,
                    student_number: str = None) -> StudentContext:
        """
        Create an account.

        Raises:
            ValidationError: Missing fields, unknown role or incomplete student cohort
            ConflictError: E-mail already registered
        """
        email = (email or '').strip().lower()
        if not email or not password or not full_name:
            raise ValidationError('E-mail, password and full name are required')
        if role not in self.ROLES:
            raise ValidationError(f"Unknown role: {role}")
        if role == 'student' and not (department and batch and student_number):
            raise ValidationError('Students require department, batch and student number')

        try:
            user_id = self.db.execute_update(
                """INSERT INTO users (email, password_hash, full_name, role, department,
                                      batch, section, student_number)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (email, generate_password_hash(password), full_name, role,
                 department, batch, section, student_number)
            )
        except sqlite3.IntegrityError:
            raise ConflictError('An account with this e-mail already exists')

        self.logger.info(f"User created: {email} ({role})")
        return self.get_user_context(user_id)

    def authenticate_user(self, email: str, password: str,
                          request: Optional[RequestContext] = None) -> Optional[StudentContext]:
        """
        Check credentials.

        Returns:
            StudentContext: The authenticated identity, or None
        """
        email = (email or '').strip().lower()
        user = self.db.execute_query(
            "SELECT * FROM users WHERE email = ? AND is_active = 1",
            (email,),
            fetch_all=False
        )

        if not user or not check_password_hash(user['password_hash'], password or ''):
            self.activity_log.record(
                user['id'] if user else None,
                ActivityLog.ACTION_FAILED_LOGIN,
                request=request,
                details={'email': email}
            )
            self.logger.warning(f"Failed login attempt for {email}")
            return None

        self.activity_log.record(user['id'], ActivityLog.ACTION_LOGIN, request=request)
        self.logger.info(f"User {email} logged in successfully")
        return self._to_context(user)

    def get_user_context(self, user_id: int) -> StudentContext:
        user = self.db.execute_query(
            "SELECT * FROM users WHERE id = ? AND is_active = 1",
            (user_id,),
            fetch_all=False
        )
        if not user:
            raise NotFoundError('User not found')
        return self._to_context(user)

    @staticmethod
    def _to_context(user: Dict[str, Any]) -> StudentContext:
        return StudentContext(
            id=user['id'],
            name=user['full_name'],
            email=user['email'],
            role=user['role'],
            department=user['department'],
            batch=user['batch'],
            section=user['section'],
            student_number=user['student_number']
        )
