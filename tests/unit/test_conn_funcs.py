import threading
from typing import List, Optional
from unittest.mock import MagicMock

import aiohttp
import pytest

import conn_funcs
from conn_funcs import (
    AcquisitionError,
    ConnFuncRegistry,
    SettlementError,
    VerificationError,
    is_html_body,
    rest_get_connect_test,
    run_conn_funcs,
    ws_connect_test,
)
from engine_connection import ConnectionSettings, ConnectionSettingsError, EngineUplink
from session_state import ActionErrors, ActionState, Connection, RestRequest, SessionState


class FakeConnection(Connection):
    def __init__(self, uplink: Optional[EngineUplink] = None):
        self.uplink = uplink

    async def disconnect(self):
        return None


async def noop_check(connection_settings, session_state, action_state):
    return None


@pytest.fixture
def settings() -> ConnectionSettings:
    return ConnectionSettings(server="engine.example.com")


@pytest.fixture
def session_state() -> SessionState:
    return SessionState(MagicMock(spec=aiohttp.ClientSession), user_id=7)


def stub_rest(session_state: SessionState, status: int, status_line: str, body: bytes) -> List[RestRequest]:
    """Replace the REST handler's transport with one that answers immediately."""
    sent: List[RestRequest] = []

    def queue_request(request, fail_on_error=True):
        request.response_status_code = status
        request.response_status = status_line
        request.response_body = body
        sent.append(request)

    session_state.rest.queue_request = queue_request
    return sent


def stub_connect(connection: Optional[Connection]) -> MagicMock:
    async def connect():
        return connection

    settings = MagicMock(spec=ConnectionSettings)
    settings.get_connect_func.return_value = connect
    return settings


# ---------------------------
# Registry
# ---------------------------
def test_registry_starts_with_the_two_defaults():
    registry = ConnFuncRegistry()
    assert registry.get_conn_test_funcs() == (ws_connect_test, rest_get_connect_test)
    assert len(registry) == 2


def test_reset_restores_exactly_two_entries():
    registry = ConnFuncRegistry()
    registry.register_conn_funcs([noop_check, noop_check, noop_check])
    assert len(registry) == 5

    registry.reset_default_conn_funcs()
    assert registry.get_conn_test_funcs() == (ws_connect_test, rest_get_connect_test)


def test_registration_order_defaults_first():
    async def first(*_):
        pass

    async def second(*_):
        pass

    registry = ConnFuncRegistry()
    registry.register_conn_func(first)
    registry.register_conn_func(second)
    assert registry.get_conn_test_funcs() == (ws_connect_test, rest_get_connect_test, first, second)
    assert registry.names()[2:] == [first.__qualname__, second.__qualname__]


def test_snapshot_is_not_affected_by_later_registration():
    registry = ConnFuncRegistry()
    snapshot = registry.get_conn_test_funcs()
    registry.register_conn_func(noop_check)
    assert len(snapshot) == 2
    assert len(registry.get_conn_test_funcs()) == 3


def test_concurrent_registration_loses_nothing():
    registry = ConnFuncRegistry()
    threads_count, per_thread = 8, 50
    barrier = threading.Barrier(threads_count)

    def worker():
        barrier.wait()
        for _ in range(per_thread):
            registry.register_conn_func(noop_check)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(registry) == threads_count * per_thread + 2


def test_register_conn_funcs_keeps_earlier_entries_on_failure():
    registry = ConnFuncRegistry()
    with pytest.raises(TypeError):
        registry.register_conn_funcs([noop_check, "not callable", noop_check])
    assert registry.get_conn_test_funcs()[2:] == (noop_check,)


def test_is_html_body():
    assert is_html_body(b"<!DOCTYPE html>\n<html><body>Gateway Timeout</body></html>")
    assert not is_html_body(b'{"errors":[{"title":"Forbidden"}]}')
    assert not is_html_body(b"")


# ---------------------------
# REST probe
# ---------------------------
@pytest.mark.asyncio
async def test_rest_probe_ok(settings, session_state):
    sent = stub_rest(session_state, 200, "200 OK", b'{"qReturn":{}}')
    await rest_get_connect_test(settings, session_state, ActionState())
    assert sent[0].method == "GET"
    assert sent[0].destination == "https://engine.example.com/api/v1/locale"


@pytest.mark.asyncio
async def test_rest_probe_html_error_omits_body(settings, session_state):
    body = b"<html><head><title>404</title></head><body>Page not found</body></html>"
    stub_rest(session_state, 404, "404 Not Found", body)
    with pytest.raises(VerificationError) as exc_info:
        await rest_get_connect_test(settings, session_state, ActionState())
    assert str(exc_info.value) == "failed response code: 404 Not Found"
    assert "Page not found" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_rest_probe_non_html_error_includes_body(settings, session_state):
    stub_rest(session_state, 500, "500 Internal Server Error", b'{"error":"engine unavailable"}')
    with pytest.raises(VerificationError) as exc_info:
        await rest_get_connect_test(settings, session_state, ActionState())
    assert str(exc_info.value) == 'failed response code: 500 Internal Server Error ({"error":"engine unavailable"})'


@pytest.mark.asyncio
async def test_rest_probe_without_server_is_acquisition_error(session_state):
    with pytest.raises(AcquisitionError, match="failed to get REST URL") as exc_info:
        await rest_get_connect_test(ConnectionSettings(server=""), session_state, ActionState())
    assert isinstance(exc_info.value.__cause__, ConnectionSettingsError)


@pytest.mark.asyncio
async def test_rest_probe_transport_failure_is_settlement_error(settings, session_state):
    async def refused():
        raise aiohttp.ClientConnectionError("connection refused")

    session_state.rest.queue_request = lambda request, fail_on_error=True: session_state.queue_action(refused())
    action_state = ActionState()
    with pytest.raises(SettlementError, match="failed to execute REST request") as exc_info:
        await rest_get_connect_test(settings, session_state, action_state)
    assert isinstance(exc_info.value.__cause__, ActionErrors)
    assert "connection refused" in str(exc_info.value.__cause__)
    assert action_state.failed


# ---------------------------
# WebSocket probe
# ---------------------------
@pytest.mark.asyncio
async def test_ws_probe_ok(session_state):
    uplink = EngineUplink(session_state="SESSION_CREATED", global_handle=-1)
    settings = stub_connect(FakeConnection(uplink))
    await ws_connect_test(settings, session_state, ActionState())
    settings.get_connect_func.assert_called_once_with(session_state, app_id=None)
    assert session_state.connection.uplink is uplink


@pytest.mark.asyncio
async def test_ws_probe_without_connection(session_state):
    with pytest.raises(VerificationError, match="failed to get connection to engine"):
        await ws_connect_test(stub_connect(None), session_state, ActionState())


@pytest.mark.asyncio
async def test_ws_probe_without_uplink(session_state):
    with pytest.raises(VerificationError, match="failed to get engine uplink"):
        await ws_connect_test(stub_connect(FakeConnection(uplink=None)), session_state, ActionState())


@pytest.mark.asyncio
async def test_ws_probe_without_global_handle(session_state):
    uplink = EngineUplink(session_state="SESSION_CREATED", global_handle=None)
    with pytest.raises(VerificationError, match="failed to get engine uplink"):
        await ws_connect_test(stub_connect(FakeConnection(uplink)), session_state, ActionState())


@pytest.mark.asyncio
async def test_ws_probe_connect_func_error(session_state):
    settings = MagicMock(spec=ConnectionSettings)
    settings.get_connect_func.side_effect = ConnectionSettingsError("jwt mode requires jwt_token")
    with pytest.raises(AcquisitionError, match="failed to get connect function"):
        await ws_connect_test(settings, session_state, ActionState())


@pytest.mark.asyncio
async def test_ws_probe_connect_failure(session_state):
    async def connect():
        raise aiohttp.WSServerHandshakeError(MagicMock(), (), status=403, message="Forbidden")

    settings = MagicMock(spec=ConnectionSettings)
    settings.get_connect_func.return_value = connect
    action_state = ActionState()
    with pytest.raises(SettlementError, match="failed to connect to engine over web socket"):
        await ws_connect_test(settings, session_state, action_state)
    assert isinstance(action_state.errors()[0], aiohttp.WSServerHandshakeError)
    assert session_state.connection is None


# ---------------------------
# Running the registry
# ---------------------------
@pytest.mark.asyncio
async def test_run_conn_funcs_stop_on_first(monkeypatch, settings, session_state):
    calls = []

    async def failing(connection_settings, session_state, action_state):
        calls.append(("failing", action_state.label))
        raise VerificationError("nope")

    async def passing(connection_settings, session_state, action_state):
        calls.append(("passing", action_state.label))

    monkeypatch.setattr(conn_funcs, "DEFAULT_CONN_FUNCS", (failing, passing))
    registry = ConnFuncRegistry()

    failures = await run_conn_funcs(registry, settings, session_state, stop_on_first=True)
    assert [str(f) for f in failures] == ["nope"]
    assert [c[0] for c in calls] == ["failing"]

    calls.clear()
    failures = await run_conn_funcs(registry, settings, session_state, stop_on_first=False)
    assert len(failures) == 1
    assert [c[0] for c in calls] == ["failing", "passing"]
    assert calls[1][1].endswith("passing")


@pytest.mark.asyncio
async def test_run_conn_funcs_uses_fresh_action_state_per_check(monkeypatch, settings, session_state):
    seen = []

    async def records_errors(connection_settings, session_state, action_state):
        seen.append(action_state)
        action_state.add_errors(RuntimeError("leftover"))
        raise VerificationError("failed")

    monkeypatch.setattr(conn_funcs, "DEFAULT_CONN_FUNCS", (records_errors, records_errors))
    failures = await run_conn_funcs(ConnFuncRegistry(), settings, session_state, stop_on_first=False)
    assert len(failures) == 2
    assert seen[0] is not seen[1]
    assert len(seen[1].errors()) == 1
