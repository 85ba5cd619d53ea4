# session_state.py

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("session_state")

__all__ = [
    "ActionErrors", "ActionState", "RestRequest", "RestHandler", "Connection", "SessionState",
]

GET = "GET"


# ---------------------------
# Action Error Accumulator
# ---------------------------
class ActionErrors(Exception):
    """All errors recorded on a single ActionState, raised or chained as one."""
    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) or type(e).__name__ for e in self.errors))


class ActionState:
    """Per-action error accumulator."""
    def __init__(self, label: str = ""):
        self.label = label
        self._errors: List[BaseException] = []

    def add_errors(self, *errors: Optional[BaseException]):
        for err in errors:
            if err is not None:
                self._errors.append(err)

    def errors(self) -> List[BaseException]:
        return list(self._errors)

    @property
    def failed(self) -> bool:
        return bool(self._errors)

    def error(self) -> Optional[ActionErrors]:
        """Combined error for chaining, or None when nothing failed."""
        if not self._errors:
            return None
        return ActionErrors(self._errors)


# ---------------------------
# REST Requests
# ---------------------------
class RestRequest(BaseModel):
    """A single queued HTTP request. Response fields are filled in when the request settles."""
    method: str = Field(GET, description="HTTP method")
    destination: str = Field(..., description="Absolute request URL")
    headers: Dict[str, str] = Field(default_factory=dict)
    content: Optional[bytes] = Field(None, description="Raw request body")

    response_status_code: int = Field(0, description="HTTP status code, 0 until settled")
    response_status: str = Field("", description="Status line, e.g. '404 Not Found'")
    response_body: bytes = Field(b"", description="Raw response body")

    model_config = ConfigDict(extra="ignore")


class RestHandler:
    """
    Issues REST requests for one session on the session's shared aiohttp ClientSession.

    Requests are queued on the owning session's action queue, so `SessionState.wait`
    observes their settlement. `wait_for_pending` additionally drains every request
    issued through this handler.
    """
    def __init__(self, session_state: "SessionState"):
        self._session_state = session_state
        self._pending: Set[asyncio.Task] = set()

    def queue_request(self, request: RestRequest, fail_on_error: bool = True) -> asyncio.Task:
        task = self._session_state.queue_action(self._perform(request, fail_on_error))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_for_pending(self):
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)

    async def _perform(self, request: RestRequest, fail_on_error: bool):
        http = self._session_state.http
        try:
            async with http.request(
                request.method,
                request.destination,
                headers=request.headers or None,
                data=request.content,
            ) as resp:
                request.response_status_code = resp.status
                request.response_status = f"{resp.status} {resp.reason or ''}".rstrip()
                request.response_body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            logger.warning(f"REST {request.method} {request.destination} failed: {type(err).__name__}: {err}")
            if fail_on_error:
                raise
            return

        log_level = logging.WARNING if request.response_status_code >= 400 else logging.DEBUG
        logger.log(log_level, f"REST {request.method} {request.destination} -> {request.response_status}")


# ---------------------------
# Connection Contract
# ---------------------------
class Connection(ABC):
    """
    An established backend session owned by exactly one SessionState.

    `uplink` is the backend's top-level RPC surface, None until the handshake succeeds.
    `disconnect()` only initiates teardown; settlement is observed via `SessionState.wait`.
    """
    uplink: Any = None

    @abstractmethod
    async def disconnect(self) -> None: ...


# ---------------------------
# Session State
# ---------------------------
class SessionState:
    """Execution context of one simulated user."""
    def __init__(self, http: aiohttp.ClientSession, user_id: int = 0):
        self.http = http
        self.user_id = user_id
        self.connection: Optional[Connection] = None
        self.rest = RestHandler(self)
        self._pending: Set[asyncio.Task] = set()

    def queue_action(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Schedule an asynchronous action. Its outcome is collected by the next `wait`."""
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        return task

    async def connect_ws(self, connect_func: Callable[[], Awaitable[Connection]]):
        """Connect action: run the connect function and take ownership of the connection."""
        self.connection = await connect_func()
        logger.debug(f"User {self.user_id}: connection established")

    async def wait(self, action_state: ActionState) -> bool:
        """
        Block until every queued action has settled.

        Exceptions raised by the queued actions are recorded on `action_state`.
        Returns True if the action state holds errors afterwards.
        """
        while self._pending:
            tasks = list(self._pending)
            self._pending.clear()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    action_state.add_errors(result)
        return action_state.failed
