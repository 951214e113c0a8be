import asyncio

import pytest

from checkin_scanner.exceptions import (
    DataValidationException,
    FormatError,
    MismatchError,
    NotFoundError,
    ReplayError,
    StoreError,
)
from checkin_scanner.models import Registration
from checkin_scanner.repositories import ATTENDANCE, REGISTRATIONS, RedisDocumentStore
from checkin_scanner.services import (
    ALREADY_SCANNED,
    AttendanceCommitter,
    MALFORMED_TOKEN,
    REGISTRATION_NOT_FOUND,
    TOKEN_MISMATCH,
)

from conftest import register


def test_register_creates_token_bound_to_registration(store, registrations):
    result = asyncio.run(registrations.register_for_event("EVT1", "Ada", "ada@example.org", "S42"))

    assert result.ok
    stored = asyncio.run(registrations.get_registration(result.data)).data
    assert isinstance(stored, Registration)
    assert stored.event_id == "EVT1"
    assert stored.student_id == "S42"
    assert stored.has_attended is False
    assert stored.attended_at is None
    event_field, reg_field, millis = stored.qr_code_data.split("|")
    assert event_field == "event:EVT1"
    assert reg_field == f"reg:{result.data}"
    assert int(millis) == int(stored.created_at.timestamp() * 1000)


@pytest.mark.parametrize(
    "event_id,name,email,student_id,message",
    [
        ("", "Ada", "ada@example.org", "S42", "Event ID cannot be empty"),
        ("EVT1", "  ", "ada@example.org", "S42", "Name cannot be blank"),
        ("EVT1", "Ada", "", "S42", "Email cannot be blank"),
        ("EVT1", "Ada", "ada@example.org", " ", "Student ID cannot be blank"),
    ],
)
def test_register_rejects_missing_fields(store, registrations, event_id, name, email, student_id, message):
    result = asyncio.run(registrations.register_for_event(event_id, name, email, student_id))

    assert not result.ok
    assert result.message == message
    assert isinstance(result.error, DataValidationException)
    assert store.calls == []


@pytest.mark.parametrize("field", ["eventId", "name", "email", "studentId"])
def test_register_rejects_non_string_fields(store, registrations, field):
    values = {"eventId": "EVT1", "name": "Ada", "email": "ada@example.org", "studentId": "S42"}
    values[field] = 5
    result = asyncio.run(registrations.register_for_event(
        values["eventId"], values["name"], values["email"], values["studentId"]))

    assert not result.ok
    assert result.message == f"{field} must be a string"
    assert isinstance(result.error, DataValidationException)
    assert store.calls == []


def test_register_reports_store_failure(store, registrations):
    store.fail("create", "quota exceeded")
    result = asyncio.run(registrations.register_for_event("EVT1", "Ada", "ada@example.org", "S42"))

    assert not result.ok
    assert result.message.startswith("Registration failed:")
    assert "quota exceeded" in result.message


def test_get_registration_missing(registrations):
    result = asyncio.run(registrations.get_registration("nope"))
    assert not result.ok
    assert result.message == "Registration not found"
    assert isinstance(result.error, NotFoundError)


def test_get_registration_requires_id(store, registrations):
    assert asyncio.run(registrations.get_registration("")).message == "Registration ID cannot be empty"
    assert store.calls == []


def test_validate_accepts_fresh_token(store, validator):
    registration_id, token = asyncio.run(register(store))

    result = asyncio.run(validator.validate(token))

    assert result.ok
    assert result.data.id == registration_id


@pytest.mark.parametrize(
    "raw",
    ["garbage", "event:E|reg:R", "event:E|reg:R|1|2", "event:E|id:R|1", "venue:E|reg:R|1"],
)
def test_malformed_tokens_never_touch_the_store(store, validator, raw):
    result = asyncio.run(validator.validate(raw))

    assert not result.ok
    assert result.message == MALFORMED_TOKEN
    assert isinstance(result.error, FormatError)
    assert store.calls == []


def test_unknown_registration(validator):
    result = asyncio.run(validator.validate("event:EVT1|reg:missing|100"))
    assert result.message == REGISTRATION_NOT_FOUND
    assert isinstance(result.error, NotFoundError)


def test_replay_after_commit_is_reported_as_already_scanned(store, validator, committer):
    async def scenario():
        registration_id, token = await register(store)
        first = await validator.validate(token)
        committed = await committer.commit(first.data.id)
        second = await validator.validate(token)
        return first, committed, second

    first, committed, second = asyncio.run(scenario())

    assert first.ok
    assert committed.ok
    assert not second.ok
    assert second.message == ALREADY_SCANNED
    assert isinstance(second.error, ReplayError)


def test_replay_is_checked_before_token_equality(store, validator, committer):
    async def scenario():
        registration_id, token = await register(store)
        await committer.commit(registration_id)
        altered = token.rsplit("|", 1)[0] + "|999"
        return await validator.validate(altered)

    assert asyncio.run(scenario()).message == ALREADY_SCANNED


def test_same_ids_different_timestamp_is_a_mismatch(validator):
    validator.store._collections[REGISTRATIONS] = {
        "R1": {"eventId": "A", "qrCodeData": "event:A|reg:R1|100", "hasAttended": False},
    }

    result = asyncio.run(validator.validate("event:A|reg:R1|999"))

    assert result.message == TOKEN_MISMATCH
    assert isinstance(result.error, MismatchError)


def test_validate_surfaces_store_failure(store, validator):
    store.fail("get", "connection reset")
    result = asyncio.run(validator.validate("event:A|reg:R1|100"))

    assert not result.ok
    assert isinstance(result.error, StoreError)
    assert "connection reset" in result.message


def test_commit_marks_registration_and_writes_audit_record(store, registrations, committer):
    async def scenario():
        registration_id, _ = await register(store)
        result = await committer.commit(registration_id)
        fetched = await registrations.get_registration(registration_id)
        audit = await store.get(ATTENDANCE, registration_id)
        return registration_id, result, fetched.data, audit

    registration_id, result, registration, audit = asyncio.run(scenario())

    assert result.ok
    assert result.data.registration_id == registration_id
    assert registration.has_attended is True
    assert registration.attended_at == result.data.timestamp
    assert audit.id == registration_id
    assert audit.data["registrationId"] == registration_id
    assert audit.data["timestamp"] == registration.to_dict()["attendedAt"]


def test_failed_commit_leaves_registration_unattended(store, registrations, committer):
    async def scenario():
        registration_id, _ = await register(store)
        store.fail("batch_write", "write timeout")
        result = await committer.commit(registration_id)
        store.recover()
        fetched = await registrations.get_registration(registration_id)
        audit = await store.get(ATTENDANCE, registration_id)
        return result, fetched.data, audit

    result, registration, audit = asyncio.run(scenario())

    assert not result.ok
    assert result.message.startswith("Failed to mark attendance:")
    assert registration.has_attended is False
    assert audit is None


def test_second_commit_for_same_registration_is_refused(store, registrations, committer):
    async def scenario():
        registration_id, _ = await register(store)
        first = await committer.commit(registration_id)
        second = await committer.commit(registration_id)
        fetched = await registrations.get_registration(registration_id)
        audit = await store.get(ATTENDANCE, registration_id)
        return first, second, fetched.data, audit

    first, second, registration, audit = asyncio.run(scenario())

    assert first.ok
    assert not second.ok
    assert second.message == ALREADY_SCANNED
    assert isinstance(second.error, ReplayError)
    assert registration.attended_at == first.data.timestamp
    assert audit.data["timestamp"] == registration.to_dict()["attendedAt"]


def test_concurrent_commits_on_redis_land_once():
    fakeredis = pytest.importorskip("fakeredis")

    async def scenario():
        store = RedisDocumentStore(fakeredis.FakeAsyncRedis(decode_responses=True), prefix="test")
        try:
            registration_id, _ = await register(store)
            committer = AttendanceCommitter(store)
            results = await asyncio.gather(committer.commit(registration_id), committer.commit(registration_id))
            stored = await store.get(REGISTRATIONS, registration_id)
            return results, stored
        finally:
            await store.close()

    results, stored = asyncio.run(scenario())

    landed = [r for r in results if r.ok]
    refused = [r for r in results if not r.ok]
    assert len(landed) == 1
    assert [r.message for r in refused] == [ALREADY_SCANNED]
    assert stored.data["attendedAt"] == landed[0].data.to_dict()["timestamp"]


def test_commit_of_missing_registration_writes_nothing(store, committer):
    result = asyncio.run(committer.commit("ghost"))

    assert not result.ok
    assert isinstance(result.error, NotFoundError)
    assert store._collections.get(ATTENDANCE, {}) == {}


def test_commit_requires_id(store, committer):
    assert not asyncio.run(committer.commit("")).ok
    assert store.calls == []


def test_list_registrations_filters_by_event(store, registrations):
    async def scenario():
        await register(store, event_id="EVT1", student_id="S1")
        await register(store, event_id="EVT1", student_id="S2")
        await register(store, event_id="EVT2", student_id="S3")
        return await registrations.list_registrations("EVT1")

    result = asyncio.run(scenario())
    assert sorted(r.student_id for r in result.data) == ["S1", "S2"]


def test_observe_attendance_counts_check_ins(store, registrations, committer):
    async def scenario():
        updates = registrations.observe_attendance("EVT1")
        counts = [(await updates.__anext__()).data]
        registration_id, _ = await register(store)
        await committer.commit(registration_id)
        while counts[-1] != 1:
            counts.append((await asyncio.wait_for(updates.__anext__(), 1)).data)
        await updates.aclose()
        return counts

    counts = asyncio.run(scenario())

    assert counts[0] == 0
    assert counts[-1] == 1
    assert store._subscribers == []


def test_observe_registrations_streams_snapshots(store, registrations):
    async def scenario():
        updates = registrations.observe_registrations("EVT1")
        first = await updates.__anext__()
        await register(store, student_id="S7")
        second = await asyncio.wait_for(updates.__anext__(), 1)
        await updates.aclose()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.data == []
    assert [r.student_id for r in second.data] == ["S7"]
