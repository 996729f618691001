# task_client.py — Async client for the Task Board API with a polling task cache
"""
TaskBoardClient keeps a local copy of the caller's visible tasks.

- One background poll task refreshes the copy every ``poll_interval`` seconds
  (never more often than MIN_POLL_INTERVAL).
- Fetches are serialised by a lock, so a manual refresh and the poller never
  overlap.
- Mutations are optimistic: local state changes first, the server row then
  replaces the local one. If the server refuses, local state is rebuilt from
  a fresh fetch and the error is re-raised.

Auth events ``("signed_in", user)`` and ``("signed_out", None)`` go to
subscribers registered with ``subscribe_auth``.
"""
import uuid
import asyncio
import logging
from contextlib import contextmanager, suppress
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger("taskboard.client")

MIN_POLL_INTERVAL = 60.0
DEFAULT_TIMEOUT = 30.0

AuthListener = Callable[[str, Optional[dict]], None]


class TaskBoardClient:

    def __init__(
        self,
        base_url: str,
        poll_interval: float = MIN_POLL_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if poll_interval < MIN_POLL_INTERVAL:
            raise ValueError(f"poll_interval must be at least {MIN_POLL_INTERVAL} seconds")
        self.poll_interval = poll_interval
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._token: Optional[str] = None
        self.user: Optional[dict] = None

        self._tasks: List[dict] = []
        self._fetch_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

        self._listeners: List[AuthListener] = []
        self._suspend_depth = 0
        self.suppressed_events = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self) -> None:
        await self.stop()
        await self._http.aclose()

    # ---- HTTP ----

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        resp = await self._http.request(method, path, headers=headers, **kwargs)
        resp.raise_for_status()
        return resp.json()

    # ---- Auth ----

    def subscribe_auth(self, callback: AuthListener) -> Callable[[], None]:
        """Register ``callback(event, user)``; returns an unsubscribe function"""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, user: Optional[dict]) -> None:
        if self._suspend_depth:
            self.suppressed_events += 1
            logger.debug(f"Auth event {event} suppressed")
            return
        for listener in list(self._listeners):
            listener(event, user)

    @contextmanager
    def suspend_auth_events(self):
        """Hold back auth events for the duration of the block. Nests."""
        self._suspend_depth += 1
        try:
            yield self
        finally:
            self._suspend_depth -= 1

    @property
    def auth_events_suspended(self) -> bool:
        return self._suspend_depth > 0

    async def login(self, email: str, password: str) -> dict:
        data = await self._request("POST", "/api/v1/auth/login", json={"email": email, "password": password})
        self._token = data["access_token"]
        self.user = data["user"]
        self._emit("signed_in", self.user)
        return self.user

    async def logout(self) -> None:
        """Local state is cleared and signed_out emitted even if the server call fails"""
        try:
            if self._token:
                await self._request("POST", "/api/v1/auth/logout")
        finally:
            self._token = None
            self.user = None
            self._tasks = []
            self._emit("signed_out", None)

    async def create_user_as_admin(self, payload: dict) -> dict:
        """Create an account without this session's listeners seeing it"""
        with self.suspend_auth_events():
            return await self._request("POST", "/api/v1/users", json=payload)

    # ---- Polling ----

    @property
    def tasks(self) -> Tuple[dict, ...]:
        return tuple(self._tasks)

    async def refresh_now(self) -> Tuple[dict, ...]:
        async with self._fetch_lock:
            rows = await self._request("GET", "/api/v1/tasks")
            self._tasks = list(rows)
        return self.tasks

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh_now()
            except httpx.HTTPError as e:
                logger.warning(f"Task refresh failed: {e}")
            except Exception:
                # The poller outlives malformed responses
                logger.exception("Task refresh failed unexpectedly")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        """Schedule the poll task; a second call returns the running one"""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="taskboard-poll")
        return self._poll_task

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ---- Optimistic mutations ----

    def _index_of(self, task_id: str) -> Optional[int]:
        for i, row in enumerate(self._tasks):
            if row.get("id") == task_id:
                return i
        return None

    def _put(self, local_id: str, row: dict) -> None:
        idx = self._index_of(local_id)
        if idx is not None:
            self._tasks[idx] = row
        elif self._index_of(row["id"]) is None:
            self._tasks.append(row)

    async def _restore(self) -> None:
        try:
            await self.refresh_now()
        except httpx.HTTPError as e:
            logger.warning(f"Could not resynchronise tasks after a failed write: {e}")

    async def create_task(self, payload: Dict[str, Any]) -> dict:
        local_id = f"local-{uuid.uuid4()}"
        self._tasks.append({**payload, "id": local_id, "provisional": True})
        try:
            created = await self._request("POST", "/api/v1/tasks", json=payload)
        except httpx.HTTPError:
            await self._restore()
            raise
        self._put(local_id, created)
        return created

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> dict:
        idx = self._index_of(task_id)
        if idx is not None:
            self._tasks[idx] = {**self._tasks[idx], **changes}
        try:
            updated = await self._request("PATCH", f"/api/v1/tasks/{task_id}", json=changes)
        except httpx.HTTPError:
            await self._restore()
            raise
        self._put(task_id, updated)
        return updated

    async def delete_task(self, task_id: str) -> None:
        self._tasks = [row for row in self._tasks if row.get("id") != task_id]
        try:
            await self._request("DELETE", f"/api/v1/tasks/{task_id}")
        except httpx.HTTPError:
            await self._restore()
            raise
