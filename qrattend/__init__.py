# QR Attendance Gate - Package
"""
Server-side core of a QR-code classroom attendance system.
Teachers open short-lived attendance sessions shown as QR codes; students
scan them and are admitted at most once per session.
"""

__version__ = "1.0.0"
__description__ = "Replay-resistant QR attendance sessions with audited admission"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.token_codec import TokenCodec
from .modules.session_registry import SessionRegistry
from .modules.admission_gate import AdmissionGate, AdmissionResult
from .modules.abuse_monitor import AbuseMonitor
from .modules.activity_log import ActivityLog, RequestContext
from .modules.configuration_manager import ConfigurationManager
from .modules.auth_manager import AuthManager, StudentContext
from .modules.alert_notifier import AlertNotifier
from .modules.maintenance import MaintenanceScheduler

__all__ = [
    'DatabaseManager',
    'TokenCodec',
    'SessionRegistry',
    'AdmissionGate',
    'AdmissionResult',
    'AbuseMonitor',
    'ActivityLog',
    'RequestContext',
    'ConfigurationManager',
    'AuthManager',
    'StudentContext',
    'AlertNotifier',
    'MaintenanceScheduler'
]
