# engine_connection.py

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, field_validator

from session_state import Connection, SessionState

logger = logging.getLogger("engine_connection")

__all__ = [
    "NO_APP_ID", "ConnectionSettingsError", "ConnectionClosedError",
    "EngineUplink", "EngineConnection", "ConnectionSettings",
]

# Legacy "no specific application" identifier. Normalised to app_id=None.
NO_APP_ID = "00000000-0000-0000-0000-000000000000"

ENGINE_DATA_PATH = "engineData"
GLOBAL_HANDLE = -1
HEALTHY_SESSION_STATES = ("SESSION_CREATED", "SESSION_ATTACHED")


class ConnectionSettingsError(ValueError):
    """Settings cannot produce a usable URL or connect function."""


class ConnectionClosedError(ConnectionError):
    """Teardown requested on a connection that is already closed."""


# ---------------------------
# Engine Connection
# ---------------------------
class EngineUplink(BaseModel):
    """Top-level RPC surface of an engine session."""
    session_state: str = Field(..., description="Session state reported by the engine on connect")
    global_handle: Optional[int] = Field(None, description="RPC handle of the Global object")


class EngineConnection(Connection):
    """WebSocket session with the engine, owned by one SessionState."""
    def __init__(self, ws: aiohttp.ClientWebSocketResponse, teardown: Callable[[Awaitable[Any]], Any]):
        self.ws = ws
        self.uplink: Optional[EngineUplink] = None
        self._teardown = teardown

    async def handshake(self, timeout: float):
        """
        Wait for the engine's OnConnected notification and expose the Global handle.
        Leaves `uplink` as None if the engine does not report a usable session.
        """
        try:
            msg = await self.ws.receive(timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No OnConnected notification within {timeout}s")
            return

        if msg.type != aiohttp.WSMsgType.TEXT:
            logger.warning(f"Unexpected handshake message type: {msg.type}")
            return
        try:
            data = json.loads(msg.data)
        except ValueError as err:
            logger.warning(f"Handshake message is not JSON: {err}")
            return

        if not isinstance(data, dict) or data.get("method") != "OnConnected":
            logger.warning(f"Unexpected handshake message: {msg.data[:200]}")
            return
        session_state = (data.get("params") or {}).get("qSessionState", "")
        if session_state not in HEALTHY_SESSION_STATES:
            logger.warning(f"Engine reported session state '{session_state}'")
            return

        self.uplink = EngineUplink(session_state=session_state, global_handle=GLOBAL_HANDLE)
        logger.debug(f"Engine handshake complete ({session_state})")

    async def disconnect(self):
        if self.ws.closed:
            raise ConnectionClosedError("connection to engine already closed")
        self._teardown(self._close())

    async def _close(self):
        await self.ws.close()
        logger.debug(f"WebSocket closed (code={self.ws.close_code})")


# ---------------------------
# Connection Settings
# ---------------------------
class ConnectionSettings(BaseModel):
    """Target address and credentials of an engine deployment."""
    server: str = Field("", description="Engine host name or IP address")
    port: Optional[int] = Field(None, ge=1, le=65535, description="Port, omitted from URLs when unset")
    security: bool = Field(default=True, description="Use TLS (https/wss)")
    virtual_proxy: str = Field(default="", description="Virtual proxy prefix prepended to every path")
    allow_untrusted: bool = Field(default=False, description="Skip TLS certificate verification")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers sent on every request")
    mode: Literal["ws", "jwt"] = Field(default="ws", description="Authentication mode")
    jwt_token: Optional[str] = Field(None, description="Bearer token used in jwt mode")
    handshake_timeout_s: float = Field(default=10.0, gt=0, description="Max wait for the engine's OnConnected notification")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=lambda field_name: {
            'server': 'Server',
            'port': 'Port',
            'security': 'Security',
            'virtual_proxy': 'Virtual Proxy',
            'allow_untrusted': 'Allow Untrusted',
            'jwt_token': 'JWT Token',
        }.get(field_name, field_name),
    )

    @field_validator('server')
    def strip_server(cls, v):
        return v.strip()

    def _base_url(self, secure_scheme: str, plain_scheme: str) -> str:
        if not self.server:
            raise ConnectionSettingsError("no server configured")
        scheme = secure_scheme if self.security else plain_scheme
        host = f"[{self.server}]" if ':' in self.server else self.server
        netloc = f"{host}:{self.port}" if self.port else host
        proxy = self.virtual_proxy.strip('/')
        return f"{scheme}://{netloc}/{proxy}" if proxy else f"{scheme}://{netloc}"

    def get_rest_url(self) -> str:
        return self._base_url("https", "http")

    def get_ws_url(self, app_id: Optional[str] = None) -> str:
        return f"{self._base_url('wss', 'ws')}/app/{app_id or ENGINE_DATA_PATH}"

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.mode == "jwt":
            headers["Authorization"] = f"Bearer {self.jwt_token}"
        return headers

    def get_connect_func(
        self, session_state: SessionState, app_id: Optional[str] = None
    ) -> Callable[[], Awaitable[EngineConnection]]:
        """
        Build the connect function for a session.

        `app_id=None` connects without targeting a specific application.
        Raises ConnectionSettingsError if the settings cannot produce a connection.
        """
        if app_id == NO_APP_ID:
            app_id = None
        if self.mode == "jwt" and not self.jwt_token:
            raise ConnectionSettingsError("jwt mode requires jwt_token")

        url = self.get_ws_url(app_id)
        headers = self.request_headers()
        ssl = not self.allow_untrusted

        async def connect() -> EngineConnection:
            logger.debug(f"User {session_state.user_id}: connecting to {url}")
            ws = await session_state.http.ws_connect(url, headers=headers, ssl=ssl)
            connection = EngineConnection(ws, teardown=session_state.queue_action)
            await connection.handshake(self.handshake_timeout_s)
            return connection

        return connect
