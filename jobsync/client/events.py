# jobsync/client/events.py
"""Decoding of the text/event-stream wire format into channel updates."""

import json
from typing import List, NamedTuple, Optional

from pydantic import ValidationError as PydanticValidationError

from jobsync.client.reconciler import ChannelUpdate, Source
from jobsync.core.logging import get_logger
from jobsync.schemas.job import EventType, JobStatus, JobType

logger = get_logger(__name__)

# older producers named progress events after the job type
_PROGRESS_EVENTS = {EventType.PROGRESS_UPDATE.value} | {t.value for t in JobType}


class ServerEvent(NamedTuple):
    event: str
    data: str


class SSEDecoder:
    """Incremental decoder, fed one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[ServerEvent]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[ServerEvent]:
        if not self._data:
            self._event = ""
            return None
        event = ServerEvent(self._event or "message", "\n".join(self._data))
        self._event = ""
        self._data = []
        return event


def update_from_event(event: ServerEvent) -> Optional[ChannelUpdate]:
    """
    Translate a push event into a channel update.

    Returns None for events that carry no job state (connection
    acknowledgements, unknown types, undecodable payloads).
    """
    try:
        data = json.loads(event.data)
    except json.JSONDecodeError:
        logger.warning("Undecodable push event", event_name=event.event)
        return None
    if not isinstance(data, dict):
        return None

    # envelope {"type", "jobType", "payload"}, or a bare payload
    event_type = data.get("type") or event.event
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else data
    job_type = data.get("jobType")
    if job_type is None and event_type in {t.value for t in JobType}:
        job_type = event_type

    if event_type == EventType.CONNECTION.value:
        return None

    try:
        if event_type == EventType.ERROR.value:
            update = ChannelUpdate.from_payload(payload, Source.PUSH, job_type)
            return update.model_copy(update={"status": JobStatus.ERROR})
        if event_type in _PROGRESS_EVENTS:
            return ChannelUpdate.from_payload(payload, Source.PUSH, job_type)
    except (PydanticValidationError, TypeError, ValueError) as e:
        logger.warning("Malformed push payload", event_name=event_type, error=str(e))
        return None

    logger.debug("Ignoring push event", event_name=event_type)
    return None


def is_connection_event(event: ServerEvent) -> bool:
    if event.event == EventType.CONNECTION.value:
        return True
    try:
        data = json.loads(event.data)
    except json.JSONDecodeError:
        return False
    return isinstance(data, dict) and data.get("type") == EventType.CONNECTION.value
