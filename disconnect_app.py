# disconnect_app.py

import logging
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from engine_connection import ConnectionSettings
from session_state import ActionState, SessionState

logger = logging.getLogger("disconnect_app")


class NoConnectionError(RuntimeError):
    """Disconnect requested on a session without an active connection."""


class DisconnectAppSettings(BaseModel):
    """Disconnect the session's current engine connection. Takes no settings."""
    model_config = ConfigDict(extra="forbid")

    def validate_settings(self):
        return None

    async def execute(
        self,
        session_state: SessionState,
        action_state: ActionState,
        connection_settings: Optional[ConnectionSettings] = None,
        label: str = "",
        reset: Optional[Callable[[], None]] = None,
    ):
        connection = session_state.connection
        if connection is None:
            action_state.add_errors(NoConnectionError("no active connection to disconnect"))
            return

        try:
            await connection.disconnect()
        except Exception as err:
            logger.warning(f"User {session_state.user_id}: disconnect {label!r} failed: {err}")
            action_state.add_errors(err)
            return

        if not await session_state.wait(action_state):
            session_state.connection = None
            logger.debug(f"User {session_state.user_id}: disconnected")
