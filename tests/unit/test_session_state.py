import asyncio
from unittest.mock import MagicMock

import aiohttp
import pytest

from session_state import ActionErrors, ActionState, RestRequest, SessionState


class FakeResponse:
    def __init__(self, status, reason, body):
        self.status = status
        self.reason = reason
        self._body = body

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def test_action_state_accumulates_errors():
    action_state = ActionState("probe")
    assert not action_state.failed
    assert action_state.error() is None

    first, second = ValueError("first"), RuntimeError("second")
    action_state.add_errors(first, None, second)

    assert action_state.failed
    assert action_state.errors() == [first, second]
    combined = action_state.error()
    assert isinstance(combined, ActionErrors)
    assert combined.errors == [first, second]
    assert str(combined) == "first; second"


@pytest.mark.asyncio
async def test_wait_without_pending_actions():
    session_state = SessionState(MagicMock(spec=aiohttp.ClientSession))
    assert await session_state.wait(ActionState()) is False


@pytest.mark.asyncio
async def test_wait_records_failures_of_queued_actions():
    session_state = SessionState(MagicMock(spec=aiohttp.ClientSession))
    done = []

    async def ok():
        await asyncio.sleep(0)
        done.append("ok")

    async def boom():
        raise ConnectionError("boom")

    session_state.queue_action(ok())
    session_state.queue_action(boom())
    action_state = ActionState()

    assert await session_state.wait(action_state) is True
    assert done == ["ok"]
    assert [str(e) for e in action_state.errors()] == ["boom"]
    # Settled actions are not reported again
    assert await session_state.wait(ActionState()) is False


@pytest.mark.asyncio
async def test_connect_ws_takes_ownership():
    session_state = SessionState(MagicMock(spec=aiohttp.ClientSession))
    connection = object()

    async def connect():
        return connection

    session_state.queue_action(session_state.connect_ws(connect))
    assert await session_state.wait(ActionState()) is False
    assert session_state.connection is connection


@pytest.mark.asyncio
async def test_rest_request_fills_response_fields():
    http = MagicMock(spec=aiohttp.ClientSession)
    http.request.return_value = FakeResponse(503, "Service Unavailable", b"down")
    session_state = SessionState(http)
    request = RestRequest(destination="http://engine/api/v1/locale")

    session_state.rest.queue_request(request)
    assert await session_state.wait(ActionState()) is False
    await session_state.rest.wait_for_pending()

    http.request.assert_called_once_with("GET", "http://engine/api/v1/locale", headers=None, data=None)
    assert request.response_status_code == 503
    assert request.response_status == "503 Service Unavailable"
    assert request.response_body == b"down"


@pytest.mark.asyncio
async def test_rest_transport_error_respects_fail_on_error():
    http = MagicMock(spec=aiohttp.ClientSession)
    http.request.side_effect = aiohttp.ClientConnectionError("refused")
    session_state = SessionState(http)

    session_state.rest.queue_request(RestRequest(destination="http://engine/a"), fail_on_error=False)
    assert await session_state.wait(ActionState()) is False

    session_state.rest.queue_request(RestRequest(destination="http://engine/b"), fail_on_error=True)
    action_state = ActionState()
    assert await session_state.wait(action_state) is True
    assert isinstance(action_state.errors()[0], aiohttp.ClientConnectionError)
