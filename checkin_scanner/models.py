"""
Data Models for the Check-in Scanner

This module contains the dataclasses for registrations, attendance audit
records, scan sessions and the result wrapper returned by the services.
Stored documents keep the field names the mobile client writes
(camelCase), the dataclasses expose them in Python style.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")


def utc_now() -> datetime:
    """Current instant, timezone aware"""
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings or None as stored by any backend"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Success(Generic[T]):
    """Successful outcome carrying its payload"""
    data: T = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """
    Failed outcome

    `message` is the human readable reason shown to the scanner operator,
    `error` keeps the exception it was derived from, when there is one.
    """
    message: str
    error: Optional[Exception] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return False


Result = Union[Success, Failure]


@dataclass(frozen=True)
class Document:
    """A stored document: its identifier plus its field mapping"""
    id: str
    data: Dict[str, Any]


@dataclass
class Registration:
    """
    One attendee's signup for one event

    `qr_code_data` is written once at creation and never recomputed.
    `has_attended` only ever moves from False to True, at which point
    `attended_at` is stamped.
    """
    id: str
    event_id: str
    name: str
    email: str
    student_id: str
    qr_code_data: str
    has_attended: bool = False
    created_at: Optional[datetime] = None
    attended_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document: Document) -> 'Registration':
        """
        Create Registration instance from a stored document

        Args:
            document: Document read from the registrations collection

        Returns:
            Registration instance
        """
        data = document.data
        return cls(
            id=document.id,
            event_id=data.get('eventId', ''),
            name=data.get('name', ''),
            email=data.get('email', ''),
            student_id=data.get('studentId', ''),
            qr_code_data=data.get('qrCodeData', ''),
            has_attended=bool(data.get('hasAttended', False)),
            created_at=parse_timestamp(data.get('timestamp')),
            attended_at=parse_timestamp(data.get('attendedAt')),
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert registration to the stored document layout

        Returns:
            Dictionary without the identifier, which lives on the document key
        """
        data = {
            'eventId': self.event_id,
            'name': self.name,
            'email': self.email,
            'studentId': self.student_id,
            'qrCodeData': self.qr_code_data,
            'hasAttended': self.has_attended,
            'timestamp': format_timestamp(self.created_at),
        }
        if self.attended_at is not None:
            data['attendedAt'] = format_timestamp(self.attended_at)
        return data


@dataclass
class AttendanceRecord:
    """
    Audit entry written when a registration is marked attended

    Keyed by the registration id, so rewriting it is harmless.
    """
    registration_id: str
    timestamp: datetime

    @property
    def id(self) -> str:
        return self.registration_id

    @classmethod
    def create_new(cls, registration_id: str, timestamp: Optional[datetime] = None) -> 'AttendanceRecord':
        return cls(registration_id=registration_id, timestamp=timestamp or utc_now())

    @classmethod
    def from_document(cls, document: Document) -> 'AttendanceRecord':
        return cls(
            registration_id=document.data.get('registrationId', document.id),
            timestamp=parse_timestamp(document.data.get('timestamp')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'registrationId': self.registration_id,
            'timestamp': format_timestamp(self.timestamp),
        }


class ScanPhase(Enum):
    """Phases of the scanner screen"""
    IDLE = "idle"
    VALIDATING = "validating"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanSession:
    """
    Snapshot of the scanner screen state

    `generation` increases on every scan and every reset. Work started
    under an older generation no longer owns the session.
    """
    phase: ScanPhase = ScanPhase.IDLE
    scanned_data: Optional[str] = None
    error: Optional[str] = None
    success: bool = False
    generation: int = 0

    @property
    def is_loading(self) -> bool:
        return self.phase is ScanPhase.VALIDATING

    def evolve(self, **changes) -> 'ScanSession':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'scannedData': self.scanned_data,
            'error': self.error,
            'success': self.success,
            'isLoading': self.is_loading,
            'generation': self.generation,
        }
