# QR Attendance Verification Engine - Package
"""
QR attendance verification engine.
Issues time-boxed attendance tokens, verifies scans against expiry, location
and duplicate constraints, and flags rapid scanning from a single device.
"""

__version__ = "1.0.0"
__description__ = "Time-boxed QR attendance tokens with tamper-evident verification"

from .modules.database_manager import DatabaseManager
from .modules.token_codec import TokenCodec
from .modules.device_identity import DeviceIdentityResolver
from .modules.anomaly_detector import AnomalyDetector
from .modules.session_manager import AttendanceSession, SessionManager
from .modules.scan_verifier import ScanResult, ScanVerifier
from .modules.notification_system import NotificationSystem
from .modules.qr_generator import QRGenerator

__all__ = [
    'DatabaseManager',
    'TokenCodec',
    'DeviceIdentityResolver',
    'AnomalyDetector',
    'AttendanceSession',
    'SessionManager',
    'ScanResult',
    'ScanVerifier',
    'NotificationSystem',
    'QRGenerator'
]
