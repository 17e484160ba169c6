"""
QR Attendance Verification Engine - Main Application

This module serves as the HTTP entry point for the attendance engine.
It builds the Flask application, wires the engine components together with
an explicit database handle and exposes a thin JSON API over them.

Features:
- Attendance session creation, token refresh and completion
- QR code rendering of the current session token
- Scan verification with location and device context
- Manual attendance correction and audit listings
- Suspicious activity notifications for session owners
"""

import logging
import os
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, current_app, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from config import get_config, validate_config
from qr_attendance.modules.anomaly_detector import AnomalyDetector
from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.device_identity import DeviceIdentityResolver, signals_from_headers
from qr_attendance.modules.errors import (
    AttendanceError,
    InvalidState,
    NotFound,
    RejectionReason,
    Unauthenticated,
    ValidationError,
)
from qr_attendance.modules.geofence import Geofence, parse_coordinate
from qr_attendance.modules.notification_system import NotificationSystem
from qr_attendance.modules.qr_generator import QRGenerator
from qr_attendance.modules.scan_verifier import ScanVerifier
from qr_attendance.modules.session_manager import STATUS_ACTIVE, STATUS_SCHEDULED, SessionManager
from qr_attendance.modules.token_codec import TokenCodec

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'qr_attendance'


def create_app(config_name=None, clock=None, **overrides):
    """
    Application factory.

    Args:
        config_name (str): 'development', 'testing' or 'production'
        clock: Callable returning the current timezone-aware datetime,
            shared by every component
        **overrides: Configuration values that win over the config class

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config.update(overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    errors = validate_config(app.config)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)

    app.extensions[EXTENSION_KEY] = build_components(app.config, clock)
    register_error_handlers(app)
    register_routes(app)

    logger.info(f"Attendance engine initialized ({config_class.__name__})")
    return app


def build_components(settings, clock=None):
    """Construct the engine components around one database handle."""
    db_manager = DatabaseManager(settings['DATABASE_PATH'], timeout=settings['DATABASE_TIMEOUT'])
    token_codec = TokenCodec(settings['QR_TOKEN_SECRET'])
    session_manager = SessionManager(
        db_manager,
        token_codec,
        token_ttl_minutes=settings['QR_TOKEN_TTL_MINUTES'],
        default_radius_meters=settings['GEOFENCE_DEFAULT_RADIUS_METERS'],
        clock=clock
    )
    device_resolver = DeviceIdentityResolver(db_manager, clock=clock)
    anomaly_detector = AnomalyDetector(
        db_manager,
        window_seconds=settings['ANOMALY_WINDOW_SECONDS'],
        threshold=settings['ANOMALY_SCAN_THRESHOLD'],
        clock=clock
    )
    notification_system = NotificationSystem(
        db_manager,
        clock=clock
    )
    scan_verifier = ScanVerifier(
        db_manager,
        token_codec,
        session_manager,
        device_resolver,
        anomaly_detector,
        notification_system,
        late_threshold_minutes=settings['ATTENDANCE_LATE_THRESHOLD_MINUTES'],
        allow_superseded_tokens=settings['QR_TOKEN_GRACE_ON_REFRESH'],
        clock=clock
    )
    qr_generator = QRGenerator(
        box_size=settings['QR_CODE_BOX_SIZE'],
        border=settings['QR_CODE_BORDER'],
        error_correction=settings['QR_CODE_ERROR_CORRECT']
    )

    return {
        'db_manager': db_manager,
        'session_manager': session_manager,
        'device_resolver': device_resolver,
        'anomaly_detector': anomaly_detector,
        'notification_system': notification_system,
        'scan_verifier': scan_verifier,
        'qr_generator': qr_generator
    }


def component(name):
    return current_app.extensions[EXTENSION_KEY][name]


def login_required(f):
    """Decorator to require an authenticated user for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = session.get('user_id')
        if not user_id:
            raise Unauthenticated()
        g.user_id = str(user_id)
        return f(*args, **kwargs)
    return decorated_function


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _parse_datetime(value, field_name):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_geofence(value):
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("geofence must be an object with lat, lng and radius_meters")

    center = parse_coordinate(value.get('lat'), value.get('lng'))
    if center is None:
        raise ValidationError("geofence requires lat and lng")

    radius = value.get('radius_meters')
    if radius is not None:
        try:
            radius = float(radius)
        except (TypeError, ValueError):
            raise ValidationError("radius_meters must be numeric")
    return Geofence(center=center, radius_meters=radius)


def register_error_handlers(app):
    @app.errorhandler(AttendanceError)
    def handle_attendance_error(error):
        if error.http_status >= 500:
            logger.error(f"{error.error_type}: {error.message}")
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({
            'success': False,
            'error_type': 'http_error',
            'message': error.description
        }), error.code


def register_routes(app):
    @app.route('/health')
    def health():
        """Liveness and database check"""
        component('db_manager').execute_scalar("SELECT 1")
        return jsonify({'status': 'healthy'})

    @app.route('/api/sessions', methods=['POST'])
    @login_required
    def create_session():
        """Create an attendance session owned by the caller"""
        data = _json_body()
        session_manager = component('session_manager')

        roster = data.get('roster')
        if roster is not None and not isinstance(roster, list):
            raise ValidationError("roster must be a list of user ids")

        attendance_session = session_manager.create_session(
            owner_id=g.user_id,
            subject_id=data.get('subject_id'),
            starts_at=_parse_datetime(data.get('starts_at'), 'starts_at'),
            expires_at=_parse_datetime(data.get('expires_at'), 'expires_at'),
            ends_at=_parse_datetime(data.get('ends_at'), 'ends_at'),
            geofence=_parse_geofence(data.get('geofence')),
            enrollment_target=data.get('enrollment_target'),
            roster=roster
        )
        token = session_manager.issue_token(attendance_session)

        return jsonify({
            'success': True,
            'session': attendance_session.to_dict(),
            'token': token.value,
            'token_expires_at': token.expires_at
        }), 201

    @app.route('/api/sessions/<session_id>')
    @login_required
    def get_session(session_id):
        attendance_session = component('session_manager').get_session(session_id)
        return jsonify({'success': True, 'session': attendance_session.to_dict()})

    @app.route('/api/sessions/<session_id>/refresh', methods=['POST'])
    @login_required
    def refresh_session_token(session_id):
        """Rotate the token shown on the instructor's screen"""
        token = component('session_manager').refresh_token(session_id, g.user_id)
        return jsonify({
            'success': True,
            'token': token.value,
            'token_expires_at': token.expires_at
        })

    @app.route('/api/sessions/<session_id>/qr')
    @login_required
    def session_qr_code(session_id):
        """Current token rendered as a base64 PNG"""
        session_manager = component('session_manager')
        attendance_session = session_manager.get_owned_session(session_id, g.user_id)
        if attendance_session.status not in (STATUS_SCHEDULED, STATUS_ACTIVE):
            raise InvalidState(f"Session is {attendance_session.status} and not accepting scans")

        token = session_manager.issue_token(attendance_session)
        rendered = component('qr_generator').render_token(
            token.value,
            caption=request.args.get('caption')
        )
        return jsonify({
            'success': True,
            'session_id': attendance_session.id,
            'token_expires_at': token.expires_at,
            'qr_data': rendered['qr_data'],
            'image_base64': rendered['image_base64'],
            'image_size': list(rendered['image_size']),
            'format': rendered['format']
        })

    @app.route('/api/sessions/<session_id>/complete', methods=['POST'])
    @login_required
    def complete_session(session_id):
        summary = component('session_manager').complete(session_id, g.user_id)
        return jsonify({
            'success': True,
            'session': summary['session'].to_dict(),
            'absent_backfilled': summary['absent_backfilled']
        })

    @app.route('/api/sessions/<session_id>/corrections', methods=['POST'])
    @login_required
    def correct_attendance(session_id):
        """Owner's manual correction of one attendee"""
        data = _json_body()
        attendance_session = component('session_manager').correct_attendance(
            session_id,
            g.user_id,
            user_id=data.get('user_id'),
            status=data.get('status'),
            notes=data.get('notes')
        )
        return jsonify({'success': True, 'session': attendance_session.to_dict()})

    @app.route('/api/sessions/<session_id>/attendance')
    @login_required
    def session_attendance(session_id):
        session_manager = component('session_manager')
        records = session_manager.get_session_attendance(session_id, g.user_id)
        response = {'success': True, 'session_id': session_id, 'records': records}
        if request.args.get('include_attempts', '').lower() in ['true', '1']:
            response['scan_attempts'] = session_manager.get_scan_attempts(session_id, g.user_id)
        return jsonify(response)

    @app.route('/api/scan', methods=['POST'])
    @login_required
    def process_scan():
        """Verify a scanned token and record attendance"""
        data = _json_body()

        token = data.get('token') or data.get('qr_code')
        if not isinstance(token, str):
            token = ''

        coordinate = parse_coordinate(
            data.get('latitude'),
            data.get('longitude'),
            data.get('accuracy')
        )

        signals = signals_from_headers(request.headers)
        if isinstance(data.get('device_signals'), dict):
            signals.update(data['device_signals'])

        fingerprint = data.get('device_fingerprint') or request.headers.get('X-Device-Fingerprint')
        if not isinstance(fingerprint, str):
            fingerprint = None

        result = component('scan_verifier').verify_scan(
            token,
            g.user_id,
            coordinate=coordinate,
            device_signals=signals,
            device_fingerprint=fingerprint
        )

        if result.accepted:
            return jsonify(result.to_dict())
        return jsonify(result.to_dict()), RejectionReason.HTTP_STATUS.get(result.reason, 400)

    @app.route('/api/notifications')
    @login_required
    def notifications():
        try:
            limit = int(request.args.get('limit', 10))
        except ValueError:
            raise ValidationError("limit must be an integer")
        if limit <= 0:
            raise ValidationError("limit must be positive")

        items = component('notification_system').get_recent_notifications(g.user_id, limit=limit)
        return jsonify({'success': True, 'notifications': items})

    @app.route('/api/notifications/<notification_id>/read', methods=['POST'])
    @login_required
    def mark_notification_read(notification_id):
        if not component('notification_system').mark_notification_read(notification_id, g.user_id):
            raise NotFound("Notification not found")
        return jsonify({'success': True})


if __name__ == '__main__':
    app = create_app()
    app.run(debug=app.config['DEBUG'], host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
