"""
Flask QR Check-in Attendance System - Main Application

This module serves as the entry point of the check-in service. It wires the
roster, the attendance store, the payload codec and the resolver together and
exposes them as JSON routes:

- GET  /attendance-check         target of the URL printed in every QR code
- POST /api/scan                 decoded camera frame or manually pasted text
- POST /api/attendance           manual status from the attendance grid
- GET  /api/attendance           records for a day
- GET  /api/qr/<type>/<id>       payload and PNG for a student or staff member
- POST /api/qr/batch             codes for the whole roster

Camera scanning runs as ``python app.py --camera``.

Run with ``flask --app app:create_app run`` or ``python app.py``.
"""

import argparse
import logging
from datetime import date, datetime, timezone

from flask import Flask, current_app, jsonify, request

from checkin.modules.attendance_resolver import AttendanceResolver, ScanOutcome
from checkin.modules.attendance_store import AttendanceStore
from checkin.modules.database_manager import DatabaseManager
from checkin.modules.errors import (
    AmbiguousNameMatch,
    CheckInError,
    DecodeError,
    PersonNotFound,
    SinkError,
    ValidationError,
)
from checkin.modules.identity import PersonKind
from checkin.modules.qr_codec import QRPayloadCodec
from checkin.modules.qr_generator import QRGenerator
from checkin.modules.roster_manager import RosterManager
from checkin.modules.scan_session import OpenCVCamera, ScanGuard, ScanningSession
from config import init_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    DecodeError: 400,
    ValidationError: 400,
    PersonNotFound: 404,
    AmbiguousNameMatch: 409,
    SinkError: 503,
}


def _status_code_for(error: CheckInError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            return status_code
    return 500


def _components():
    return current_app.extensions['checkin']


def _parse_date(value, field='date'):
    if not value:
        return datetime.now(timezone.utc).date()
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r} (expected YYYY-MM-DD)", field=field)


def _context_label(resolved, roster_manager):
    if resolved.kind == PersonKind.STUDENT:
        return roster_manager.get_class_name(resolved.context_id) or 'No class assigned'
    return resolved.context_id or ''


def _run_scan(payload):
    """Guarded decode + check-in shared by the scan routes."""
    components = _components()
    guard = components['scan_guard']

    with guard.claim(payload) as owned:
        if not owned:
            outcome = ScanOutcome(success=False, duplicate=True, payload=payload,
                                  message='This code was just scanned; ignoring repeat')
            return jsonify(outcome.to_dict()), 409

        roster_manager = components['roster_manager']
        outcome = components['resolver'].scan(
            payload, roster_manager.snapshot(), components['attendance_store']
        )

    data = outcome.to_dict()
    data['context'] = _context_label(outcome.person, roster_manager)
    return jsonify(data)


def create_app(config_name=None, database_path=None):
    """
    Build the Flask application.

    Args:
        config_name (str): 'development', 'testing' or 'production'
        database_path (str): Overrides the configured SQLite path

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name)

    db_manager = DatabaseManager(database_path or config_class.DATABASE_PATH)
    codec = QRPayloadCodec.from_config(config_class)
    app.extensions['checkin'] = {
        'config': config_class,
        'db_manager': db_manager,
        'codec': codec,
        'qr_generator': QRGenerator.from_config(config_class),
        'roster_manager': RosterManager(db_manager),
        'attendance_store': AttendanceStore(db_manager),
        'resolver': AttendanceResolver(codec, config_class.PAYLOAD_MAX_AGE_HOURS),
        'scan_guard': ScanGuard(config_class.SCAN_COOLDOWN_SECONDS),
    }

    @app.errorhandler(CheckInError)
    def handle_check_in_error(error):
        status_code = _status_code_for(error)
        if status_code >= 500:
            logger.error(f"{error.error_type}: {error.message}")
        else:
            logger.info(f"{error.error_type}: {error.message}")
        return jsonify(error.to_dict()), status_code

    @app.route(config_class.ATTENDANCE_CHECK_PATH)
    def attendance_check():
        """Check in the person named by the scanned attendance URL"""
        query = request.query_string.decode('utf-8', errors='replace')
        return _run_scan(f"{request.base_url}?{query}")

    @app.route('/api/scan', methods=['POST'])
    def process_scan():
        """Process a decoded QR payload or manually entered text"""
        data = request.get_json(silent=True) or {}
        payload = str(data.get('payload') or data.get('qr_code') or '').strip()

        if not payload:
            return jsonify({
                'success': False,
                'message': 'No QR code data provided',
                'error_type': 'validation_error'
            }), 400

        return _run_scan(payload)

    @app.route('/api/attendance', methods=['POST'])
    def mark_attendance():
        """Record a status chosen from the attendance grid"""
        data = request.get_json(silent=True) or {}
        components = _components()

        record = components['resolver'].manual_mark(
            kind=data.get('type') or '',
            person_id=data.get('id'),
            context_id=data.get('context_id'),
            status=data.get('status') or '',
            on_date=_parse_date(data.get('date')),
            sink=components['attendance_store'],
            custom_label=data.get('custom_label'),
        )
        return jsonify({
            'success': True,
            'message': f"Attendance marked as {record.label}",
            'attendance': record.to_dict()
        })

    @app.route('/api/attendance', methods=['GET'])
    def list_attendance():
        """Attendance records for a day (today by default)"""
        on_date = _parse_date(request.args.get('date'))
        kind = request.args.get('type')
        records = _components()['attendance_store'].list_attendance(
            on_date, PersonKind.parse(kind) if kind else None
        )
        return jsonify({
            'success': True,
            'date': on_date.isoformat(),
            'records': [record.to_dict() for record in records]
        })

    @app.route('/api/qr/<kind>/<person_id>')
    def person_qr_code(kind, person_id):
        """Payload URL and PNG for one student or staff member"""
        components = _components()
        roster_manager = components['roster_manager']
        kind = PersonKind.parse(kind)

        roster = roster_manager.snapshot()
        person = next((p for p in roster.people(kind) if p.id == person_id), None)
        if person is None:
            raise PersonNotFound(person_id, None, kind.value,
                                 len(roster.students), len(roster.staff))

        if kind == PersonKind.STUDENT:
            label = roster_manager.get_class_name(person.class_id) or ''
        else:
            label = person.department or ''

        result = components['qr_generator'].generate_person_qr_code(
            kind, person.id, person.full_name, label
        )
        result['success'] = True
        return jsonify(result)

    @app.route('/api/qr/batch', methods=['POST'])
    def batch_qr_codes():
        """QR codes for the whole roster, optionally written to QR_CODES_FOLDER"""
        data = request.get_json(silent=True) or {}
        components = _components()
        roster_manager = components['roster_manager']
        generator = components['qr_generator']

        class_names = {c['id']: c['name'] for c in roster_manager.list_classes()}
        results = generator.batch_generate(
            roster_manager.snapshot(), class_names,
            with_caption=bool(data.get('with_caption', True))
        )

        if data.get('save'):
            output_dir = components['config'].QR_CODES_FOLDER
            for result in results['results']:
                result['file_path'] = generator.save_qr_code_image(
                    result['image_base64'], result['filename'], output_dir
                )

        results['success'] = True
        return jsonify(results)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    return app


def run_camera_scanner(app):
    """Check people in from the configured camera until interrupted."""
    components = app.extensions['checkin']

    def report(outcome):
        level = logging.INFO if outcome.success else logging.WARNING
        logger.log(level, outcome.message)

    session = ScanningSession(
        components['resolver'],
        components['roster_manager'].snapshot,
        components['attendance_store'],
        OpenCVCamera.from_config(components['config']),
        guard=components['scan_guard'],
        on_result=report,
    )
    with session:
        try:
            session.run()
        except KeyboardInterrupt:
            logger.info("Camera scanning stopped")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="QR check-in attendance service")
    parser.add_argument('--config', help="development, testing or production (default: FLASK_ENV)")
    parser.add_argument('--camera', action='store_true',
                        help="scan from the local camera instead of serving HTTP")
    args = parser.parse_args()

    application = create_app(args.config)
    if args.camera:
        run_camera_scanner(application)
    else:
        application.run(debug=application.config.get('DEBUG', False), host='0.0.0.0', port=5000)
