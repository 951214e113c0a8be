"""
Check-in Scanner Package

Event registration and QR attendance tracking on top of a document store.
Attendees register for an event and receive a QR token; a scanner
validates the token against the stored registration and marks it attended
exactly once, writing an audit record.

Main Components:
- tokens: QR token codec
- models: Registrations, attendance records, scan session state, results
- repositories: Document store adapters (in-memory, Redis)
- services: Registration, attendance validation and attendance commit
- scanner: Scan session state machine and controller
- exceptions: Custom exception classes for error handling
- app: Flask application exposing the scanner over HTTP

Usage:
    from checkin_scanner import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

from .app import create_app, create_development_app, create_production_app
from .models import (
    AttendanceRecord,
    Document,
    Failure,
    Registration,
    ScanPhase,
    ScanSession,
    Success,
)
from .repositories import (
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
    RepositoryFactory,
    Subscription,
)
from .scanner import ScanSessionController, transition
from .services import AttendanceCommitter, AttendanceValidator, RegistrationService
from .exceptions import (
    CheckinScannerException,
    DataValidationException,
    FormatError,
    MismatchError,
    NotFoundError,
    ReplayError,
    StoreError,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'AttendanceRecord',
    'Document',
    'Failure',
    'Registration',
    'ScanPhase',
    'ScanSession',
    'Success',

    # Stores
    'DocumentStore',
    'InMemoryDocumentStore',
    'RedisDocumentStore',
    'RepositoryFactory',
    'Subscription',

    # Services and scanner
    'AttendanceCommitter',
    'AttendanceValidator',
    'RegistrationService',
    'ScanSessionController',
    'transition',

    # Exceptions
    'CheckinScannerException',
    'DataValidationException',
    'FormatError',
    'MismatchError',
    'NotFoundError',
    'ReplayError',
    'StoreError',
]
