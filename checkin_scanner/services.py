"""
Business Logic Services for the Check-in Scanner

This module contains the services that implement registration and the
attendance lifecycle: creating a registration with its QR token,
validating a scanned token against stored state, and marking a
registration attended exactly once. Expected failures are returned as
`Failure` values; exceptions stay inside this module.
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Optional

from .exceptions import (
    CheckinScannerException,
    ConflictError,
    DataValidationException,
    FormatError,
    MismatchError,
    NotFoundError,
    ReplayError,
)
from .models import AttendanceRecord, Failure, Registration, Result, Success, utc_now
from .repositories import ATTENDANCE, REGISTRATIONS, DocumentStore, Write
from . import tokens

logger = logging.getLogger(__name__)

MALFORMED_TOKEN = "malformed token"
REGISTRATION_NOT_FOUND = "registration not found"
ALREADY_SCANNED = "already scanned"
TOKEN_MISMATCH = "token mismatch"


def _require(value: str, field_name: str, message: str, blank_ok: bool = False) -> None:
    if not isinstance(value, str):
        raise DataValidationException(field_name, f"{field_name} must be a string")
    if not value if blank_ok else not value.strip():
        raise DataValidationException(field_name, message)


class RegistrationService:
    """
    Handles registration records

    Creates registrations with their QR token and exposes lookups and
    live views over a given event's registrations.
    """

    def __init__(self, store: DocumentStore):
        """
        Initialize registration service

        Args:
            store: Document store holding registrations
        """
        self.store = store

    async def register_for_event(self, event_id: str, name: str, email: str,
                                 student_id: str) -> Result:
        """
        Register an attendee for an event

        The document id is reserved before writing so the token can
        reference the registration it belongs to.

        Returns:
            Success carrying the new registration id, or Failure
        """
        try:
            _require(event_id, "eventId", "Event ID cannot be empty", blank_ok=True)
            _require(name, "name", "Name cannot be blank")
            _require(email, "email", "Email cannot be blank")
            _require(student_id, "studentId", "Student ID cannot be blank")
        except DataValidationException as e:
            return Failure(e.validation_error, e)

        created_at = utc_now()
        registration_id = self.store.new_id(REGISTRATIONS)
        registration = Registration(
            id=registration_id,
            event_id=event_id,
            name=name,
            email=email,
            student_id=student_id,
            qr_code_data=tokens.encode(event_id, registration_id, int(created_at.timestamp() * 1000)),
            has_attended=False,
            created_at=created_at,
        )

        try:
            await self.store.create(REGISTRATIONS, registration.to_dict(), document_id=registration_id)
        except CheckinScannerException as e:
            logger.error("Registration for event %s failed: %s", event_id, e)
            return Failure(f"Registration failed: {e.message}", e)

        logger.info("Registered student %s for event %s as %s", student_id, event_id, registration_id)
        return Success(registration_id)

    async def get_registration(self, registration_id: str) -> Result:
        """
        Get registration by ID

        Returns:
            Success carrying the Registration, or Failure when missing
        """
        if not registration_id:
            return Failure("Registration ID cannot be empty")
        try:
            document = await self.store.get(REGISTRATIONS, registration_id)
        except CheckinScannerException as e:
            return Failure(f"Failed to get registration: {e.message}", e)
        if document is None:
            return Failure("Registration not found", NotFoundError(REGISTRATIONS, registration_id))
        return Success(Registration.from_document(document))

    async def list_registrations(self, event_id: str) -> Result:
        """One-shot read of an event's registrations"""
        try:
            documents = await self.store.query(REGISTRATIONS, eventId=event_id)
        except CheckinScannerException as e:
            return Failure(f"Failed to get registrations: {e.message}", e)
        return Success([Registration.from_document(d) for d in documents])

    async def observe_registrations(self, event_id: str) -> AsyncIterator[Result]:
        """
        Live view of an event's registrations

        Yields Success([Registration, ...]) on every change, Failure on
        backend errors. Closing the generator releases the subscription.
        """
        subscription = self.store.subscribe(REGISTRATIONS, eventId=event_id)
        try:
            async for snapshot in subscription:
                if snapshot.ok:
                    yield Success([Registration.from_document(d) for d in snapshot.data])
                else:
                    yield snapshot
        finally:
            subscription.close()

    async def observe_attendance(self, event_id: str) -> AsyncIterator[Result]:
        """Live count of attended registrations for an event"""
        subscription = self.store.subscribe(REGISTRATIONS, eventId=event_id, hasAttended=True)
        try:
            async for snapshot in subscription:
                yield Success(len(snapshot.data)) if snapshot.ok else snapshot
        finally:
            subscription.close()


class AttendanceValidator:
    """
    Decides whether a scanned token may be checked in

    The checks run in a fixed order: format, existence, replay, then exact
    token equality, so a replayed genuine token reports "already scanned"
    rather than a mismatch.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def validate(self, token: str) -> Result:
        """
        Validate a scanned token

        Args:
            token: Raw scanned payload

        Returns:
            Success carrying the Registration, or Failure with the reason
        """
        try:
            scan = tokens.decode(token)
            if not scan.has_event_prefix:
                raise FormatError(token, f"first field must start with '{tokens.EVENT_PREFIX}'")
        except FormatError as e:
            logger.warning("Rejected scan: %s", e.message)
            return Failure(MALFORMED_TOKEN, e)

        registration_id = scan.registration_id
        try:
            document = await self.store.get(REGISTRATIONS, registration_id) if registration_id else None
        except CheckinScannerException as e:
            logger.error("Lookup of registration %s failed: %s", registration_id, e)
            return Failure(e.message, e)

        if document is None:
            return Failure(REGISTRATION_NOT_FOUND, NotFoundError(REGISTRATIONS, registration_id))

        registration = Registration.from_document(document)
        if registration.has_attended:
            return Failure(ALREADY_SCANNED, ReplayError(registration_id))
        if registration.qr_code_data != token:
            return Failure(TOKEN_MISMATCH, MismatchError(registration_id))

        return Success(registration)


class AttendanceCommitter:
    """
    Marks a registration attended and writes its audit record

    Only call after a fresh successful validation. The registration update
    is conditional on `hasAttended` still being false, so when two scanners
    accept the same token at once only the first commit lands; the second
    reports "already scanned" and leaves `attendedAt` alone.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def commit(self, registration_id: str, attended_at: Optional[datetime] = None) -> Result:
        """
        Mark attendance

        The registration update is ordered before the audit record, so a
        non-atomic backend that fails midway leaves the guard flag set
        and the audit write safe to repeat.

        Returns:
            Success carrying the AttendanceRecord, or Failure
        """
        if not registration_id:
            return Failure("Registration ID cannot be empty")

        record = AttendanceRecord.create_new(registration_id, attended_at)
        writes = [
            Write.update(REGISTRATIONS, registration_id, {
                'hasAttended': True,
                'attendedAt': record.to_dict()['timestamp'],
            }, expected={'hasAttended': False}),
            Write.set(ATTENDANCE, registration_id, record.to_dict()),
        ]
        try:
            await self.store.batch_write(writes)
        except ConflictError:
            logger.warning("Registration %s was checked in concurrently", registration_id)
            return Failure(ALREADY_SCANNED, ReplayError(registration_id))
        except CheckinScannerException as e:
            logger.error("Marking attendance for %s failed: %s", registration_id, e)
            return Failure(f"Failed to mark attendance: {e.message}", e)

        logger.info("Attendance recorded for registration %s", registration_id)
        return Success(record)
