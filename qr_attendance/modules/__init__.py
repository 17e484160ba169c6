# QR Attendance Verification Engine - Modules Package
"""
Core components of the attendance verification engine.
Each module holds one component; persistence is passed in explicitly.
"""

MODULES = {
    'errors': 'Error taxonomy and scan rejection reasons',
    'database_manager': 'SQLite schema, connections and transactions',
    'token_codec': 'Attendance token minting and verification',
    'geofence': 'Great-circle distance and containment',
    'device_identity': 'Device fingerprinting and registry',
    'session_manager': 'Attendance session lifecycle and aggregates',
    'scan_verifier': 'Ordered scan checks and attendance commit',
    'anomaly_detector': 'Rapid-scan detection per device',
    'notification_system': 'Alert sink for session owners',
    'qr_generator': 'QR image rendering for tokens'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
