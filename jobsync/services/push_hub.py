# jobsync/services/push_hub.py
"""
Fan-out of job state changes to server-sent event subscribers.

Each subscriber gets its own bounded outbox. Publishing never waits on a
consumer: when an outbox is full the oldest frame is dropped. There is no
replay for reconnecting subscribers, they catch up through the status poll.
"""

import asyncio
import json
import uuid
from collections import defaultdict
from datetime import datetime
from typing import AsyncIterator, Dict, Final, Optional, Set, Tuple

from jobsync.core.jobs import utcnow
from jobsync.core.logging import LoggerMixin
from jobsync.schemas.job import (
    EventEnvelope,
    EventType,
    Job,
    JobSnapshot,
    JobStatus,
    JobType,
)

HEARTBEAT_FRAME: Final[str] = ": keep-alive\n\n"
WELCOME_MESSAGE: Final[str] = "Connected to progress update service"


def sse_frame(envelope: EventEnvelope) -> str:
    data = json.dumps(envelope.to_wire(), separators=(",", ":"))
    return f"event: {envelope.type.value}\ndata: {data}\n\n"


class Connection:
    """One subscriber; owned by the hub for its whole lifetime."""

    def __init__(self, owner_id: str, outbox_size: int) -> None:
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.opened_at: datetime = utcnow()
        self.last_delivered_at: Optional[datetime] = None
        self.dropped = 0
        self.outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=outbox_size)

    def offer(self, frame: Optional[str]) -> None:
        """Enqueue without blocking, dropping the oldest frame on overflow."""
        if self.outbox.full():
            self.outbox.get_nowait()
            self.dropped += 1
        self.outbox.put_nowait(frame)


class PushHub(LoggerMixin):
    def __init__(self, outbox_size: int = 256, heartbeat_seconds: float = 15.0) -> None:
        self.outbox_size = outbox_size
        self.heartbeat_seconds = heartbeat_seconds
        self._connections: Dict[str, Set[Connection]] = defaultdict(set)
        # last job id that got its terminal event, per (owner, job type)
        self._terminal_ids: Dict[Tuple[str, JobType], str] = {}

    def subscribe(self, owner_id: str) -> Connection:
        connection = Connection(owner_id, self.outbox_size)
        self._connections[owner_id].add(connection)
        connection.offer(
            sse_frame(
                EventEnvelope(
                    type=EventType.CONNECTION, payload={"message": WELCOME_MESSAGE}
                )
            )
        )
        self.logger.info(
            "Subscriber connected",
            owner_id=owner_id,
            connection_id=connection.id,
            subscribers=len(self._connections[owner_id]),
        )
        return connection

    def unsubscribe(self, connection: Connection) -> None:
        subscribers = self._connections.get(connection.owner_id)
        if not subscribers or connection not in subscribers:
            return
        subscribers.discard(connection)
        if not subscribers:
            del self._connections[connection.owner_id]
        self.logger.info(
            "Subscriber disconnected",
            owner_id=connection.owner_id,
            connection_id=connection.id,
            dropped=connection.dropped,
        )

    def connection_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is not None:
            return len(self._connections.get(owner_id, ()))
        return sum(len(c) for c in self._connections.values())

    def publish(self, job: Job) -> int:
        """
        Broadcast the job's state to every subscriber of its owner.

        Returns the number of connections the event was queued for. A job id
        that already had its terminal event is refused, so completion is
        announced once even if a caller publishes again.
        """
        key = (job.owner_id, job.job_type)
        if self._terminal_ids.get(key) == job.id:
            self.logger.warning(
                "Refusing to publish after terminal event",
                job_id=job.id,
                status=job.status.value,
            )
            return 0
        if job.is_terminal:
            self._terminal_ids[key] = job.id

        event_type = (
            EventType.ERROR if job.status == JobStatus.ERROR else EventType.PROGRESS_UPDATE
        )
        frame = sse_frame(
            EventEnvelope(
                type=event_type,
                job_type=job.job_type,
                payload=JobSnapshot.from_job(job).to_wire(),
            )
        )

        subscribers = list(self._connections.get(job.owner_id, ()))
        for connection in subscribers:
            connection.offer(frame)

        self.logger.debug(
            "Job state published",
            job_id=job.id,
            event_type=event_type.value,
            progress=job.progress,
            subscribers=len(subscribers),
        )
        return len(subscribers)

    async def stream(self, connection: Connection) -> AsyncIterator[str]:
        """SSE frames for one connection until it is closed or the client leaves."""
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(
                        connection.outbox.get(), timeout=self.heartbeat_seconds
                    )
                except asyncio.TimeoutError:
                    yield HEARTBEAT_FRAME
                    continue
                if frame is None:
                    return
                connection.last_delivered_at = utcnow()
                yield frame
        finally:
            self.unsubscribe(connection)

    def close_all(self) -> None:
        """Ask every open stream to finish; used on shutdown."""
        for subscribers in list(self._connections.values()):
            for connection in list(subscribers):
                connection.offer(None)
