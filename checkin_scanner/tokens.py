"""
QR token codec

A token binds an event, a registration and the instant the registration
was created:

    event:<eventId>|reg:<registrationId>|<creationEpochMillis>

Decoding is a pure parse. It checks the field count and the `reg:` tag
only; the `event:` tag is enforced by the attendance validator.
"""

from dataclasses import dataclass

from .exceptions import FormatError

SEPARATOR = "|"
EVENT_PREFIX = "event:"
REGISTRATION_PREFIX = "reg:"
FIELD_COUNT = 3


@dataclass(frozen=True)
class ScanToken:
    """Decoded token fields, prefixes kept as scanned"""
    event_field: str
    registration_field: str
    rest: str

    @property
    def has_event_prefix(self) -> bool:
        return self.event_field.startswith(EVENT_PREFIX)

    @property
    def event_id(self) -> str:
        if self.has_event_prefix:
            return self.event_field[len(EVENT_PREFIX):]
        return self.event_field

    @property
    def registration_id(self) -> str:
        return self.registration_field[len(REGISTRATION_PREFIX):]


def encode(event_id: str, registration_id: str, created_at_millis: int) -> str:
    """
    Build the token stored on a registration and printed in its QR code

    Args:
        event_id: Identifier of the event
        registration_id: Identifier of the registration document
        created_at_millis: Creation instant in epoch milliseconds

    Returns:
        The pipe separated token
    """
    return SEPARATOR.join((
        f"{EVENT_PREFIX}{event_id}",
        f"{REGISTRATION_PREFIX}{registration_id}",
        str(created_at_millis),
    ))


def decode(token: str) -> ScanToken:
    """
    Split a scanned token into its fields

    Raises:
        FormatError: If there are not exactly three fields or the second
            field lacks the `reg:` tag
    """
    if not isinstance(token, str):
        raise FormatError(repr(token), "token must be a string")

    parts = token.split(SEPARATOR)
    if len(parts) != FIELD_COUNT:
        raise FormatError(token, f"expected {FIELD_COUNT} fields, got {len(parts)}")
    if not parts[1].startswith(REGISTRATION_PREFIX):
        raise FormatError(token, f"second field must start with '{REGISTRATION_PREFIX}'")

    return ScanToken(event_field=parts[0], registration_field=parts[1], rest=parts[2])
