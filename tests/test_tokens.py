import pytest

from checkin_scanner import tokens
from checkin_scanner.exceptions import FormatError


def test_encode_builds_pipe_separated_token():
    assert tokens.encode("EVT1", "abc123", 1700000000000) == "event:EVT1|reg:abc123|1700000000000"


@pytest.mark.parametrize(
    "event_id,registration_id,rest",
    [
        ("EVT1", "R1", "100"),
        ("spring-gala", "5f2b9c", "1700000000000"),
        ("", "", ""),
    ],
)
def test_decode_recovers_encoded_fields(event_id, registration_id, rest):
    scan = tokens.decode(f"event:{event_id}|reg:{registration_id}|{rest}")
    assert scan.event_id == event_id
    assert scan.registration_id == registration_id
    assert scan.rest == rest
    assert scan.has_event_prefix


@pytest.mark.parametrize(
    "raw",
    [
        "garbage",
        "",
        "event:E|reg:R",
        "event:E|reg:R|1|extra",
        "event:E|registration:R|1",
        "event:E|R|1",
    ],
)
def test_decode_rejects_bad_shape(raw):
    with pytest.raises(FormatError) as excinfo:
        tokens.decode(raw)
    assert excinfo.value.error_code == "FORMAT_ERROR"


def test_decode_does_not_check_event_prefix():
    scan = tokens.decode("party:E|reg:R1|100")
    assert not scan.has_event_prefix
    assert scan.registration_id == "R1"
    assert scan.event_field == "party:E"


def test_decode_rejects_non_strings():
    with pytest.raises(FormatError):
        tokens.decode(None)
