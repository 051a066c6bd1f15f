# jobsync/client/channels.py
"""
Async drivers for the three update channels, all feeding one Reconciler.

Everything runs on a single event loop. Channel callbacks call into the
reconciler synchronously, so one update is fully merged before the next
one is looked at.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

import httpx
from pydantic import ValidationError as PydanticValidationError

from jobsync.client.events import SSEDecoder, ServerEvent, is_connection_event, update_from_event
from jobsync.client.reconciler import ChannelUpdate, Decision, JobView, Reconciler, Source
from jobsync.core.config import ClientSettings, get_client_settings
from jobsync.core.exceptions import TransportError, ValidationError
from jobsync.core.logging import LoggerMixin
from jobsync.schemas.job import JobSource, JobType, StartJobRequest, StartJobResponse


class EventStreamClient(LoggerMixin):
    """Keeps a push subscription open, reconnecting after a fixed delay."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        owner_id: str,
        *,
        reconnect_delay: float,
        on_event: Callable[[ServerEvent], None],
        on_error: Callable[[TransportError], None],
    ) -> None:
        self.http = http
        self.owner_id = owner_id
        self.reconnect_delay = reconnect_delay
        self.on_event = on_event
        self.on_error = on_error

    async def run(self) -> None:
        while True:
            try:
                await self._listen()
                raise TransportError("Event stream closed by server")
            except TransportError as e:
                self.on_error(e)
            except httpx.HTTPError as e:
                self.on_error(TransportError(f"Event stream failed: {e}"))
            await asyncio.sleep(self.reconnect_delay)

    async def _listen(self) -> None:
        decoder = SSEDecoder()
        async with self.http.stream(
            "GET",
            "/events",
            params={"ownerId": self.owner_id},
            timeout=httpx.Timeout(10.0, read=None),
        ) as response:
            if response.status_code != 200:
                raise TransportError(
                    f"Event stream rejected with status {response.status_code}"
                )
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is not None:
                    self.on_event(event)


class StatusPoller(LoggerMixin):
    """One GET of the job status endpoint per call."""

    def __init__(self, http: httpx.AsyncClient, owner_id: str, job_type: JobType) -> None:
        self.http = http
        self.owner_id = owner_id
        self.job_type = job_type

    async def fetch(self, source: Source = Source.POLL) -> Optional[ChannelUpdate]:
        """Current snapshot as an update, or None if no job ever ran."""
        try:
            response = await self.http.get(
                f"/jobs/{self.job_type.value}/status", params={"ownerId": self.owner_id}
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Status poll failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise TransportError(
                f"Status poll returned {response.status_code}",
                {"status_code": response.status_code},
            )
        try:
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("status body is not an object")
            return ChannelUpdate.from_payload(payload, source, self.job_type)
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed status response: {e}") from e


class ManualRefresh(LoggerMixin):
    """
    User-triggered poll with a spinner.

    The spinner clears when the poll settles or after ``ceiling`` seconds,
    whichever is first. A poll still running at the ceiling keeps going and
    its result is merged when it lands.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        poll: Callable[[Source], Awaitable[Optional[Decision]]],
        ceiling: float,
    ) -> None:
        self.reconciler = reconciler
        self.poll = poll
        self.ceiling = ceiling
        self._pending: Set["asyncio.Task[Optional[Decision]]"] = set()
        self._active = 0

    async def trigger(self) -> "asyncio.Task[Optional[Decision]]":
        self._active += 1
        self.reconciler.refresh_started()
        task = asyncio.ensure_future(self.poll(Source.MANUAL_REFRESH))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        try:
            await asyncio.wait({task}, timeout=self.ceiling)
        finally:
            self._active -= 1
            # overlapping refreshes share one spinner
            if self._active == 0:
                self.reconciler.refresh_finished()
        return task

    def cancel(self) -> None:
        for task in list(self._pending):
            task.cancel()


class JobMonitor(LoggerMixin):
    """
    Tracks one job type for one owner through push, poll and manual refresh.

    Use as an async context manager; ``view`` is always the reconciled state.
    """

    def __init__(
        self,
        owner_id: str,
        job_type: JobType,
        *,
        settings: Optional[ClientSettings] = None,
        http: Optional[httpx.AsyncClient] = None,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        self.settings = settings or get_client_settings()
        self.settings.validate_runtime_dependencies()
        self.owner_id = owner_id
        self.job_type = job_type
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=self.settings.BASE_URL,
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
        )
        self.reconciler = reconciler or Reconciler(
            job_type,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
            fast_poll_interval=self.settings.FAST_POLL_INTERVAL_SECONDS,
            reconnect_grace=self.settings.RECONNECT_GRACE_SECONDS,
        )
        self.poller = StatusPoller(self.http, owner_id, job_type)
        self.stream = EventStreamClient(
            self.http,
            owner_id,
            reconnect_delay=self.settings.RECONNECT_DELAY_SECONDS,
            on_event=self.handle_event,
            on_error=self.handle_transport_error,
        )
        self.manual_refresh = ManualRefresh(
            self.reconciler,
            self.poll_once,
            self.settings.MANUAL_REFRESH_CEILING_SECONDS,
        )
        self._wake = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def view(self) -> JobView:
        return self.reconciler.view

    async def __aenter__(self) -> "JobMonitor":
        await self.poll_once()
        self._spawn(self.stream.run())
        self._spawn(self._poll_loop())
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        self.manual_refresh.cancel()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._own_http:
            await self.http.aclose()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---------------- Channel callbacks ----------------

    def handle_event(self, event: ServerEvent) -> None:
        if is_connection_event(event):
            was_down = self.reconciler.view.reconnecting
            self.reconciler.transport_restored()
            # no replay on reconnect, catch up through a poll
            self._spawn(self.poll_once())
            if was_down:
                self._wake.set()
            return
        update = update_from_event(event)
        if update is not None:
            self.reconciler.ingest(update)
            if self.view.is_terminal:
                self._wake.set()

    def handle_transport_error(self, error: TransportError) -> None:
        self.logger.info("Push transport error", error=error.message)
        self.reconciler.transport_lost()
        self._wake.set()

    async def poll_once(self, source: Source = Source.POLL) -> Optional[Decision]:
        try:
            update = await self.poller.fetch(source)
        except TransportError as e:
            self.logger.warning("Status poll failed", error=e.message, source=source.value)
            return None
        if update is None:
            return None
        return self.reconciler.ingest(update)

    async def _poll_loop(self) -> None:
        while True:
            interval = self.reconciler.poll_interval()
            self._wake.clear()
            if interval is None:
                await self._wake.wait()
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
                continue
            except asyncio.TimeoutError:
                pass
            try:
                await self.poll_once()
            except Exception as e:
                # a failed poll never ends the loop
                self.logger.exception("Unexpected status poll failure", error=str(e))

    # ---------------- User actions ----------------

    async def start_job(
        self, source: JobSource = JobSource.DATABASE, csv_file_path: Optional[str] = None
    ) -> StartJobResponse:
        """
        Start (or restart) the job. Raises ValidationError when the server
        rejects the request; the view then shows the error.
        """
        self.reconciler.start_requested()
        request = StartJobRequest(source=source, csv_file_path=csv_file_path)
        try:
            response = await self.http.post(
                f"/jobs/{self.job_type.value}/start",
                params={"ownerId": self.owner_id},
                json=request.to_wire(),
            )
        except httpx.HTTPError as e:
            self.reconciler.dismiss()
            raise TransportError(f"Start request failed: {e}") from e

        if response.status_code == 400:
            detail = response.json().get("detail") or {}
            message = detail.get("message", "Invalid start request")
            self.reconciler.start_rejected(message)
            raise ValidationError(message, detail.get("details"))
        if response.status_code >= 400:
            self.reconciler.dismiss()
            raise TransportError(
                f"Start request returned {response.status_code}",
                {"status_code": response.status_code},
            )

        started = StartJobResponse.model_validate(response.json())
        self.reconciler.bind_job(started.job_id)
        self._wake.set()
        return started

    async def refresh(self) -> "asyncio.Task[Optional[Decision]]":
        return await self.manual_refresh.trigger()

    def dismiss(self) -> JobView:
        return self.reconciler.dismiss()
