"""Typed events that flow from the transport into the session dispatch loop.

Inbound JSON messages are split into one TransportEvent per recognized key,
so each event is routed to exactly one consumer.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class SessionError(Exception):
    """Base class for voice session errors."""


class TransportError(SessionError):
    """Transport failed to open, closed unexpectedly, or reported an error."""


class DeviceError(SessionError):
    """Microphone or speaker could not be acquired."""


class AudioDecodeError(SessionError):
    """An audio payload could not be decoded."""


class CapabilityDisabled(SessionError):
    """A tool's backing service is not wired up or is switched off."""


class EventKind(Enum):
    AUDIO = auto()            # base64 PCM from the agent
    TRANSCRIPTION = auto()    # text delta for one role
    TURN_COMPLETE = auto()    # agent finished its turn
    INTERRUPTED = auto()      # user barged in
    TOOL_CALL = auto()        # batch of tool-call requests
    GROUNDING = auto()        # search grounding metadata, passed through
    SETUP_COMPLETE = auto()   # handshake acknowledgement
    ERROR = auto()            # protocol-level error from the remote side
    UNKNOWN = auto()          # anything else


@dataclass
class TransportEvent:
    kind: EventKind
    data: Any = None
    raw: dict = field(default_factory=dict, repr=False)


# Key order decides dispatch order when one message carries several keys
_KEY_KINDS = (
    ("setupComplete", EventKind.SETUP_COMPLETE),
    ("error", EventKind.ERROR),
    ("audioPart", EventKind.AUDIO),
    ("transcription", EventKind.TRANSCRIPTION),
    ("groundingMetadata", EventKind.GROUNDING),
    ("interrupted", EventKind.INTERRUPTED),
    ("turnComplete", EventKind.TURN_COMPLETE),
    ("toolCall", EventKind.TOOL_CALL),
)

_FLAG_KINDS = {EventKind.INTERRUPTED, EventKind.TURN_COMPLETE}


def parse_message(message: dict) -> list[TransportEvent]:
    """Split one inbound message into typed events.

    Flag keys (``interrupted``, ``turnComplete``) only produce an event when
    truthy. Keys that match nothing yield a single UNKNOWN event carrying the
    whole message.
    """
    if not isinstance(message, dict):
        return [TransportEvent(EventKind.UNKNOWN, data=message)]

    events = []
    known = False
    for key, kind in _KEY_KINDS:
        if key not in message:
            continue
        known = True
        value = message[key]
        if kind in _FLAG_KINDS:
            if value:
                events.append(TransportEvent(kind, data=True, raw=message))
            continue
        events.append(TransportEvent(kind, data=value, raw=message))

    if not known:
        events.append(TransportEvent(EventKind.UNKNOWN, data=message, raw=message))
    return events
