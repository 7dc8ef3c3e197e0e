# QR Attendance Gate - Modules Package
"""
Core business logic modules for the QR Attendance Gate.
"""

__version__ = "1.0.0"
__description__ = "Core modules for QR attendance session and admission handling"

# Module descriptions
MODULES = {
    'database_manager': 'Database connections, schema and uniqueness constraints',
    'token_codec': 'Signed session token issuance, verification and QR rendering',
    'session_registry': 'Attendance session lifecycle and statistics',
    'admission_gate': 'Admission state machine and attendance history',
    'abuse_monitor': 'Cohort and velocity screening with risk-scored flags',
    'activity_log': 'Append-only audit trail',
    'configuration_manager': 'Class configuration management',
    'auth_manager': 'Authentication and request identity',
    'alert_notifier': 'Operator alerts for suspicious activity',
    'maintenance': 'Scheduled purging of expired sessions and old events'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
