"""
Configuration Manager Module - QR Attendance Gate

This module manages class configurations: the reusable (teacher, course,
cohort) templates that attendance sessions are opened against. A
configuration is owned by the teacher who created it and is only ever
soft-deleted, so that historical attendance keeps pointing at a valid row.

Features:
- Configuration creation with duplicate detection
- Owner-scoped lookup and listing
- Whitelisted updates
- Soft deletion (closes any open session)
- Activity logging of every change
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.database_manager import to_db_timestamp
from qrattend.modules.errors import ConflictError, NotFoundError, ValidationError


class ConfigurationManager:
    """
    Class configuration management for session owners.
    """

    CLASS_TYPES = ('theory', 'lab', 'tutorial', 'seminar')
    SECTIONS = ('A', 'B', 'C', 'D')
    UPDATABLE_FIELDS = ('department', 'batch', 'course', 'class_type', 'section')

    def __init__(self, database_manager, activity_log: ActivityLog, clock):
        self.db = database_manager
        self.activity_log = activity_log
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def create_configuration(self, owner_id: int, department: str, batch: str, course: str,
                             class_type: str, section: Optional[str] = None,
                             request: Optional[RequestContext] = None) -> Dict[str, Any]:
        """
        Create a class configuration.

        Args:
            owner_id (int): Teacher creating the configuration
            department (str): Cohort department
            batch (str): Cohort batch
            course (str): Course name
            class_type (str): One of CLASS_TYPES
            section (str): Optional section, one of SECTIONS

        Returns:
            Dict[str, Any]: The stored configuration

        Raises:
            ValidationError: Missing or invalid fields
            ConflictError: Same configuration already exists for this owner
        """
        fields = self._validate({
            'department': department,
            'batch': batch,
            'course': course,
            'class_type': class_type,
            'section': section
        })
        now = to_db_timestamp(self.clock.now())

        try:
            configuration_id = self.db.execute_update(
                """INSERT INTO class_configurations
                   (owner_id, department, batch, course, class_type, section, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (owner_id, fields['department'], fields['batch'], fields['course'],
                 fields['class_type'], fields['section'], now, now)
            )
        except sqlite3.IntegrityError:
            raise ConflictError('A configuration with these details already exists')

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_PRESET_CREATED, request=request,
            details={'configuration_id': configuration_id, 'course': fields['course'],
                     'department': fields['department'], 'batch': fields['batch']}
        )
        self.logger.info(f"Configuration {configuration_id} created by user {owner_id}")
        return self.get_configuration(configuration_id)

    def get_configuration(self, configuration_id: int, owner_id: Optional[int] = None,
                          active_only: bool = False) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: Unknown, foreign or (with active_only) deactivated configuration
        """
        query = "SELECT * FROM class_configurations WHERE id = ?"
        params: List[Any] = [configuration_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if active_only:
            query += " AND is_active = 1"

        configuration = self.db.execute_query(query, tuple(params), fetch_all=False)
        if not configuration:
            raise NotFoundError('Configuration not found')
        return self._to_dict(configuration)

    def get_configurations_for_owner(self, owner_id: int) -> List[Dict[str, Any]]:
        """Active configurations, most recently used first."""
        try:
            rows = self.db.execute_query(
                """SELECT * FROM class_configurations
                   WHERE owner_id = ? AND is_active = 1
                   ORDER BY last_used_at IS NULL, last_used_at DESC, created_at DESC""",
                (owner_id,)
            )
            return [self._to_dict(row) for row in rows]
        except Exception as e:
            self.logger.error(f"Failed to get configurations for owner {owner_id}: {str(e)}")
            return []

    def update_configuration(self, configuration_id: int, owner_id: int, updates: Dict[str, Any],
                             request: Optional[RequestContext] = None) -> Dict[str, Any]:
        current = self.get_configuration(configuration_id, owner_id=owner_id, active_only=True)

        changes = {k: v for k, v in (updates or {}).items() if k in self.UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError('No updatable fields provided')

        merged = {field: current[field] for field in self.UPDATABLE_FIELDS}
        merged.update(changes)
        fields = self._validate(merged)

        try:
            self.db.execute_update(
                """UPDATE class_configurations
                   SET department = ?, batch = ?, course = ?, class_type = ?, section = ?,
                       updated_at = ?
                   WHERE id = ?""",
                (fields['department'], fields['batch'], fields['course'], fields['class_type'],
                 fields['section'], to_db_timestamp(self.clock.now()), configuration_id)
            )
        except sqlite3.IntegrityError:
            raise ConflictError('A configuration with these details already exists')

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_PRESET_UPDATED, request=request,
            details={'configuration_id': configuration_id, 'updates': changes}
        )
        return self.get_configuration(configuration_id)

    def deactivate_configuration(self, configuration_id: int, owner_id: int,
                                 request: Optional[RequestContext] = None) -> bool:
        """Soft delete a configuration and close its open session, if any."""
        self.get_configuration(configuration_id, owner_id=owner_id)

        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE class_configurations SET is_active = 0, updated_at = ? WHERE id = ?",
                (to_db_timestamp(self.clock.now()), configuration_id)
            )
            conn.execute(
                "UPDATE sessions SET is_active = 0 WHERE configuration_id = ? AND is_active = 1",
                (configuration_id,)
            )

        self.activity_log.record(
            owner_id, ActivityLog.ACTION_PRESET_DELETED, request=request,
            details={'configuration_id': configuration_id}
        )
        self.logger.info(f"Configuration {configuration_id} deactivated by user {owner_id}")
        return True

    def _validate(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {}
        for name in ('department', 'batch', 'course'):
            value = self._text(fields, name)
            if not value:
                raise ValidationError(f"{name.capitalize()} is required")
            cleaned[name] = value

        class_type = self._text(fields, 'class_type').lower()
        if class_type not in self.CLASS_TYPES:
            raise ValidationError(f"Class type must be one of: {', '.join(self.CLASS_TYPES)}")
        cleaned['class_type'] = class_type

        section = self._text(fields, 'section').upper()
        if section and section not in self.SECTIONS:
            raise ValidationError(f"Section must be one of: {', '.join(self.SECTIONS)}")
        cleaned['section'] = section
        return cleaned

    @staticmethod
    def _text(fields: Dict[str, Any], name: str) -> str:
        """Stripped text value; numbers such as a batch year are accepted."""
        value = fields.get(name)
        if value is None:
            return ''
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValidationError(f"{name.replace('_', ' ').capitalize()} must be text")
        return str(value).strip()

    @staticmethod
    def _to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row['section'] = row['section'] or None
        row['is_active'] = bool(row['is_active'])
        return row
