# conn_funcs.py

import logging
import threading
from typing import Awaitable, Callable, Iterable, Iterator, List, Tuple

from engine_connection import ConnectionSettings
from session_state import GET, ActionState, RestRequest, SessionState

logger = logging.getLogger("conn_funcs")

__all__ = [
    "ConnFunc", "ConnFuncRegistry", "ConnectionCheckError", "AcquisitionError",
    "SettlementError", "VerificationError", "ws_connect_test", "rest_get_connect_test",
    "is_html_body", "run_conn_funcs", "LOCALE_ENDPOINT",
]

# Validator contract: return normally on success, raise ConnectionCheckError otherwise.
ConnFunc = Callable[[ConnectionSettings, SessionState, ActionState], Awaitable[None]]

LOCALE_ENDPOINT = "/api/v1/locale"
HTML_MARKER = b"<html>"


# ---------------------------
# Errors
# ---------------------------
class ConnectionCheckError(Exception):
    """A connection validator failed."""


class AcquisitionError(ConnectionCheckError):
    """Could not obtain a connect function or URL."""


class SettlementError(ConnectionCheckError):
    """The queued action settled with errors."""


class VerificationError(ConnectionCheckError):
    """The action settled but the resulting state is not usable."""


# ---------------------------
# Default Validators
# ---------------------------
async def ws_connect_test(
    connection_settings: ConnectionSettings, session_state: SessionState, action_state: ActionState
):
    """Connect over WebSocket without targeting an app and require a usable Global handle."""
    try:
        connect_func = connection_settings.get_connect_func(session_state, app_id=None)
    except Exception as err:
        raise AcquisitionError("failed to get connect function") from err

    session_state.queue_action(session_state.connect_ws(connect_func))
    if await session_state.wait(action_state):
        raise SettlementError("failed to connect to engine over web socket") from action_state.error()

    if session_state.connection is None:
        raise VerificationError("failed to get connection to engine")
    uplink = session_state.connection.uplink
    if uplink is None or uplink.global_handle is None:
        raise VerificationError("failed to get engine uplink")


def is_html_body(body: bytes) -> bool:
    """True if a response body looks like an HTML document rather than a structured error payload."""
    return HTML_MARKER in body


async def rest_get_connect_test(
    connection_settings: ConnectionSettings, session_state: SessionState, action_state: ActionState
):
    """GET the locale endpoint and require a 200 response."""
    try:
        host = connection_settings.get_rest_url()
    except Exception as err:
        raise AcquisitionError("failed to get REST URL") from err

    pilot_request = RestRequest(method=GET, destination=f"{host}{LOCALE_ENDPOINT}")
    session_state.rest.queue_request(pilot_request, fail_on_error=True)
    if await session_state.wait(action_state):
        raise SettlementError("failed to execute REST request") from action_state.error()
    await session_state.rest.wait_for_pending()

    if pilot_request.response_status_code != 200:
        if is_html_body(pilot_request.response_body):
            raise VerificationError(f"failed response code: {pilot_request.response_status}")
        body = pilot_request.response_body.decode("utf-8", errors="replace")
        raise VerificationError(f"failed response code: {pilot_request.response_status} ({body})")


DEFAULT_CONN_FUNCS: Tuple[ConnFunc, ...] = (ws_connect_test, rest_get_connect_test)


# ---------------------------
# Registry
# ---------------------------
class ConnFuncRegistry:
    """
    Ordered, append-only sequence of connection validators, seeded with the defaults.

    Register custom validators before any session starts validating. Snapshots
    returned by `get_conn_test_funcs` never change after they are handed out.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._funcs: List[ConnFunc] = []
        self.reset_default_conn_funcs()

    def reset_default_conn_funcs(self):
        """Drop all custom validators and restore the two defaults."""
        with self._lock:
            self._funcs = list(DEFAULT_CONN_FUNCS)

    def register_conn_func(self, conn_func: ConnFunc):
        if not callable(conn_func):
            raise TypeError(f"connection function must be callable, got {type(conn_func).__name__}")
        with self._lock:
            self._funcs.append(conn_func)
        logger.debug(f"Registered connection function {_func_name(conn_func)}")

    def register_conn_funcs(self, conn_funcs: Iterable[ConnFunc]):
        """Register in order. Stops at the first failure; earlier registrations are kept."""
        for conn_func in conn_funcs:
            self.register_conn_func(conn_func)

    def get_conn_test_funcs(self) -> Tuple[ConnFunc, ...]:
        with self._lock:
            return tuple(self._funcs)

    def names(self) -> List[str]:
        return [_func_name(f) for f in self.get_conn_test_funcs()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._funcs)

    def __iter__(self) -> Iterator[ConnFunc]:
        return iter(self.get_conn_test_funcs())


def _func_name(conn_func) -> str:
    return getattr(conn_func, "__qualname__", None) or repr(conn_func)


async def run_conn_funcs(
    registry: ConnFuncRegistry,
    connection_settings: ConnectionSettings,
    session_state: SessionState,
    stop_on_first: bool = True,
) -> List[Exception]:
    """
    Run the registry's current validators in order and return the failures.

    Each validator gets its own ActionState so earlier failures do not leak into
    later checks. Exceptions outside the ConnectionCheckError taxonomy (a broken
    custom validator) are logged with their traceback and returned as failures too.
    """
    failures: List[Exception] = []
    for conn_func in registry.get_conn_test_funcs():
        name = _func_name(conn_func)
        try:
            await conn_func(connection_settings, session_state, ActionState(label=name))
        except ConnectionCheckError as err:
            cause = f": {err.__cause__}" if err.__cause__ else ""
            logger.warning(f"User {session_state.user_id}: {name} failed: {err}{cause}")
            failures.append(err)
        except Exception as err:
            logger.error(f"User {session_state.user_id}: {name} raised unexpectedly: {err}", exc_info=True)
            failures.append(err)
        else:
            logger.debug(f"User {session_state.user_id}: {name} passed")
            continue
        if stop_on_first:
            break
    return failures
