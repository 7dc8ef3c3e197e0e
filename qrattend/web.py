"""
QR Attendance Gate - HTTP Application

Flask application factory wiring the attendance managers to a JSON API.
Teachers manage class configurations and open attendance sessions; students
scan the displayed QR code and read their history; admins review flagged
activity and operator alerts.

Features:
- Session-cookie login with role-based route protection
- Rate limiting of scan and session-open routes
- Device fingerprinting of every request
- Uniform JSON error responses
- Background maintenance scheduler
"""

from datetime import timedelta
from functools import wraps

from flask import Flask, jsonify, request, session, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from qrattend.config import get_config, configure_logging
from qrattend.modules.abuse_monitor import AbuseMonitor
from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.admission_gate import AdmissionGate
from qrattend.modules.alert_notifier import AlertNotifier
from qrattend.modules.auth_manager import AuthManager, derive_device_fingerprint
from qrattend.modules.clock import SystemClock
from qrattend.modules.configuration_manager import ConfigurationManager
from qrattend.modules.database_manager import DatabaseManager
from qrattend.modules.errors import (
    AttendanceError, AuthenticationError, AuthorizationError, InternalError, NotFoundError,
    ValidationError
)
from qrattend.modules.maintenance import MaintenanceScheduler
from qrattend.modules.session_registry import SessionRegistry
from qrattend.modules.token_codec import TokenCodec

# Widest look-back accepted by the flagged activity view
MAX_FLAGGED_HOURS = 24 * 366


def create_app(config_name=None, overrides=None, clock=None):
    """
    Build the Flask application.

    Args:
        config_name (str): 'development', 'testing' or 'production'
        overrides (dict): Extra configuration values applied last
        clock: Object with a ``now()`` method, defaults to the system clock

    Returns:
        Flask: Configured application; components live in ``app.extensions['qrattend']``
    """
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if overrides:
        app.config.update(overrides)

    configure_logging(app)
    logger = app.logger

    # Initialize system components
    clock = clock or SystemClock()
    db_manager = DatabaseManager(app.config['DATABASE_PATH'], app.config.get('ADMIN_DEFAULT_PASSWORD'))
    activity_log = ActivityLog(db_manager, clock)
    notifier = AlertNotifier(
        email_config={
            'smtp_server': app.config['MAIL_SERVER'],
            'smtp_port': app.config['MAIL_PORT'],
            'username': app.config['MAIL_USERNAME'],
            'password': app.config['MAIL_PASSWORD'],
            'use_tls': app.config['MAIL_USE_TLS'],
            'recipient': app.config['ALERT_RECIPIENT']
        },
        async_delivery=app.config['ALERTS_ASYNC']
    )
    token_codec = TokenCodec(
        app.config['QR_SECRET'], clock,
        ttl_seconds=app.config['TOKEN_TTL_SECONDS'],
        issuer=app.config['TOKEN_ISSUER'],
        audience=app.config['TOKEN_AUDIENCE']
    )
    auth_manager = AuthManager(db_manager, activity_log)
    configuration_manager = ConfigurationManager(db_manager, activity_log, clock)
    session_registry = SessionRegistry(
        db_manager, token_codec, configuration_manager, activity_log, clock,
        recent_attendees_limit=app.config['RECENT_ATTENDEES_LIMIT']
    )
    abuse_monitor = AbuseMonitor(
        db_manager, activity_log, notifier,
        cooldown_minutes=app.config['VELOCITY_COOLDOWN_MINUTES']
    )
    admission_gate = AdmissionGate(
        db_manager, token_codec, session_registry, abuse_monitor, activity_log, clock,
        late_threshold_minutes=app.config['LATE_THRESHOLD_MINUTES']
    )
    maintenance = MaintenanceScheduler(
        session_registry, activity_log, notifier,
        session_retention_minutes=app.config['SESSION_RETENTION_MINUTES'],
        activity_retention_days=app.config['ACTIVITY_RETENTION_DAYS'],
        interval_minutes=app.config['MAINTENANCE_INTERVAL_MINUTES']
    )

    app.extensions['qrattend'] = {
        'clock': clock,
        'db': db_manager,
        'activity_log': activity_log,
        'notifier': notifier,
        'token_codec': token_codec,
        'auth': auth_manager,
        'configurations': configuration_manager,
        'sessions': session_registry,
        'monitor': abuse_monitor,
        'gate': admission_gate,
        'maintenance': maintenance
    }

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[app.config['RATE_LIMIT_DEFAULT']],
        storage_uri=app.config['RATELIMIT_STORAGE_URI']
    )
    # Flask-Limiter holds the instance weakly
    app.extensions['qrattend']['limiter'] = limiter

    if app.config['SCHEDULER_ENABLED']:
        maintenance.start()

    def request_context():
        """Client information attached to audit events."""
        return RequestContext(
            device_fingerprint=derive_device_fingerprint(request.headers, request.remote_addr),
            ip_address=request.remote_addr or 'unknown',
            user_agent=request.headers.get('User-Agent')
        )

    def json_body():
        """Request body as a dict, empty unless a JSON object was sent"""
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def text_field(data, name):
        value = data.get(name)
        if value is None:
            return ''
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        return value

    def login_required(f):
        """Decorator to require login for protected routes"""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                raise AuthenticationError('Please log in to access this resource')
            try:
                g.user = auth_manager.get_user_context(session['user_id'])
            except NotFoundError:
                session.clear()
                raise AuthenticationError('Please log in to access this resource')
            return f(*args, **kwargs)
        return decorated_function

    def role_required(*roles):
        """Decorator to restrict a route to the given roles"""
        def decorator(f):
            @wraps(f)
            @login_required
            def decorated_function(*args, **kwargs):
                if g.user.role not in roles:
                    raise AuthorizationError(f"This action requires one of: {', '.join(roles)}")
                return f(*args, **kwargs)
            return decorated_function
        return decorator

    @app.errorhandler(AttendanceError)
    def handle_attendance_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(429)
    def handle_rate_limit(error):
        return jsonify({
            'success': False,
            'message': 'Too many requests, please slow down',
            'error_type': 'rate_limited'
        }), 429

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'success': False, 'message': 'Resource not found', 'error_type': 'not_found'}), 404

    @app.errorhandler(500)
    def handle_server_error(error):
        logger.error(f"Unhandled server error: {str(error)}")
        return jsonify(InternalError().to_dict()), 500

    @app.route('/login', methods=['POST'])
    @limiter.limit(lambda: app.config['RATE_LIMIT_LOGIN'])
    def login():
        """Authenticate and start a cookie session"""
        data = json_body()
        email = text_field(data, 'email').strip()
        password = text_field(data, 'password')
        if not email or not password:
            raise ValidationError('Please provide both e-mail and password')

        user = auth_manager.authenticate_user(email, password, request=request_context())
        if not user:
            raise AuthenticationError('Invalid e-mail or password')

        session.clear()
        session['user_id'] = user.id
        session['role'] = user.role
        return jsonify({
            'success': True,
            'message': f"Welcome back, {user.name}!",
            'data': {'user': {'id': user.id, 'name': user.name, 'email': user.email, 'role': user.role,
                              'department': user.department, 'batch': user.batch}}
        })

    @app.route('/logout', methods=['POST'])
    @login_required
    def logout():
        activity_log.record(g.user.id, ActivityLog.ACTION_LOGOUT, request=request_context())
        session.clear()
        return jsonify({'success': True, 'message': 'You have been logged out successfully'})

    @app.route('/api/configurations', methods=['GET'])
    @role_required('teacher')
    def list_configurations():
        configurations = configuration_manager.get_configurations_for_owner(g.user.id)
        return jsonify({'success': True, 'data': {'configurations': configurations}})

    @app.route('/api/configurations', methods=['POST'])
    @role_required('teacher')
    def create_configuration():
        data = json_body()
        configuration = configuration_manager.create_configuration(
            g.user.id,
            department=data.get('department'),
            batch=data.get('batch'),
            course=data.get('course'),
            class_type=data.get('class_type'),
            section=data.get('section'),
            request=request_context()
        )
        return jsonify({'success': True, 'message': 'Configuration created',
                        'data': {'configuration': configuration}}), 201

    @app.route('/api/configurations/<int:configuration_id>', methods=['PUT'])
    @role_required('teacher')
    def update_configuration(configuration_id):
        configuration = configuration_manager.update_configuration(
            configuration_id, g.user.id, json_body(), request=request_context()
        )
        return jsonify({'success': True, 'message': 'Configuration updated',
                        'data': {'configuration': configuration}})

    @app.route('/api/configurations/<int:configuration_id>', methods=['DELETE'])
    @role_required('teacher')
    def delete_configuration(configuration_id):
        configuration_manager.deactivate_configuration(configuration_id, g.user.id, request=request_context())
        return jsonify({'success': True, 'message': 'Configuration deleted'})

    @app.route('/api/configurations/<int:configuration_id>/session', methods=['POST'])
    @role_required('teacher')
    @limiter.limit(lambda: app.config['RATE_LIMIT_SESSION_OPEN'])
    def open_session(configuration_id):
        """Open (or reuse) the live session and return its QR code"""
        opened = session_registry.open_session(configuration_id, g.user.id, request=request_context())
        opened['qr_code'] = f"data:image/png;base64,{token_codec.render_qr(opened['token'])}"
        message = 'Active session reused' if opened['reused'] else 'Session opened'
        return jsonify({'success': True, 'message': message, 'data': opened}), 200 if opened['reused'] else 201

    @app.route('/api/sessions/<session_id>/stats', methods=['GET'])
    @role_required('teacher', 'admin')
    def session_stats(session_id):
        owner_id = None if g.user.role == 'admin' else g.user.id
        stats = session_registry.get_session_stats(session_id, owner_id=owner_id)
        return jsonify({'success': True, 'data': stats})

    @app.route('/api/sessions/<session_id>/close', methods=['POST'])
    @role_required('teacher')
    def close_session(session_id):
        session_registry.close_session(session_id, g.user.id, request=request_context())
        return jsonify({'success': True, 'message': 'Session closed'})

    @app.route('/api/sessions/<session_id>/excuse', methods=['POST'])
    @role_required('teacher')
    def excuse_student(session_id):
        data = json_body()
        try:
            student_id = int(data.get('student_id'))
        except (TypeError, ValueError):
            raise ValidationError('student_id is required')

        student = auth_manager.get_user_context(student_id)
        if student.role != 'student':
            raise ValidationError('Only students can be excused')

        result = admission_gate.excuse(session_id, student, g.user.id,
                                       note=data.get('note'), request=request_context())
        return jsonify(result.to_dict()), 201

    @app.route('/api/attendance/scan', methods=['POST'])
    @role_required('student')
    @limiter.limit(lambda: app.config['RATE_LIMIT_SCAN'])
    def scan():
        """Process a scanned QR token and record attendance"""
        data = json_body()
        result = admission_gate.admit(
            data.get('qr_token'), g.user, request=request_context(), location=data.get('location')
        )
        return jsonify(result.to_dict()), result.http_status

    @app.route('/api/attendance/history', methods=['GET'])
    @role_required('student')
    def attendance_history():
        history = admission_gate.get_history(g.user.id, request.args.to_dict())
        return jsonify({'success': True, 'data': history})

    @app.route('/api/admin/flagged', methods=['GET'])
    @role_required('admin')
    def flagged_activity():
        try:
            hours = min(max(int(request.args.get('hours', 24)), 1), MAX_FLAGGED_HOURS)
            min_risk = min(max(int(request.args.get('min_risk', 0)), 0), 100)
            limit = min(max(int(request.args.get('limit', 50)), 1), 200)
        except ValueError:
            raise ValidationError('hours, min_risk and limit must be integers')

        events = abuse_monitor.get_flagged_events(
            since=clock.now() - timedelta(hours=hours), min_risk=min_risk, limit=limit
        )
        return jsonify({'success': True, 'data': {'events': events}})

    @app.route('/api/admin/alerts', methods=['GET'])
    @role_required('admin')
    def recent_alerts():
        try:
            limit = min(max(int(request.args.get('limit', 20)), 1), 200)
        except ValueError:
            raise ValidationError('limit must be an integer')
        alerts = notifier.get_recent_alerts(limit=limit, min_severity=request.args.get('severity'))
        return jsonify({'success': True, 'data': {'alerts': alerts}})

    logger.info(f"QR Attendance Gate initialized ({get_config(config_name).__name__})")
    return app
