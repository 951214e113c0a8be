import asyncio

import pytest

from checkin_scanner.repositories import REGISTRATIONS, InMemoryDocumentStore
from checkin_scanner.services import AttendanceCommitter, AttendanceValidator, RegistrationService


class GatedStore(InMemoryDocumentStore):
    """In-memory store whose reads wait until the gate is opened"""

    def __init__(self):
        super().__init__()
        self.gate = None

    async def get(self, collection, document_id):
        if self.gate is None:
            self.gate = asyncio.Event()
        await self.gate.wait()
        return await super().get(collection, document_id)

    def open_gate(self):
        if self.gate is None:
            self.gate = asyncio.Event()
        self.gate.set()


async def register(store, event_id="EVT1", student_id="S42", name="Ada Lovelace",
                   email="ada@example.org"):
    """Register an attendee and return (registration_id, token)"""
    result = await RegistrationService(store).register_for_event(event_id, name, email, student_id)
    assert result.ok, result
    document = next(d for d in await store.query(REGISTRATIONS) if d.id == result.data)
    return result.data, document.data["qrCodeData"]


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def registrations(store):
    return RegistrationService(store)


@pytest.fixture
def validator(store):
    return AttendanceValidator(store)


@pytest.fixture
def committer(store):
    return AttendanceCommitter(store)
