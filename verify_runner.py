# verify_runner.py

import asyncio
import logging
import time
from typing import List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from conn_funcs import ConnectionCheckError, ConnFuncRegistry, run_conn_funcs
from disconnect_app import DisconnectAppSettings
from engine_connection import ConnectionSettings
from session_state import ActionState, SessionState

# --- Logging Setup ---
logger = logging.getLogger("ConnVerifier")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False

__all__ = [
    "logger", "VerifyConfig", "VerifyRequest", "SessionResult", "VerifyReport", "Metrics", "ConnectionVerifier",
]


# ---------------------------
# Configuration Models
# ---------------------------
class VerifyConfig(BaseModel):
    """Runtime configuration for a verification run."""
    sim_users: int = Field(default=1, ge=1, description="Number of sessions verified concurrently")
    stop_on_first: bool = Field(default=True, description="Stop a session's checks at the first failing validator")
    debug: bool = Field(default=False, description="Enable debug logging")
    connect_timeout_s: float = Field(default=10.0, gt=0, description="Max time to establish a TCP connection")
    total_timeout_s: float = Field(default=60.0, gt=0, description="Max total time of a single HTTP request")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=lambda field_name: {
            'sim_users': 'Simulated Users',
            'stop_on_first': 'Stop On First Failure',
            'debug': 'Debug',
        }.get(field_name, field_name),
    )


class VerifyRequest(BaseModel):
    connection: ConnectionSettings
    config: VerifyConfig = Field(default_factory=VerifyConfig)


class SessionResult(BaseModel):
    user_id: int
    passed: bool
    errors: List[str] = Field(default_factory=list)
    duration_ms: float


class VerifyReport(BaseModel):
    results: List[SessionResult]
    passed: int
    failed: int
    average_duration_ms: float

    @property
    def all_passed(self) -> bool:
        return self.failed == 0


# ---------------------------
# Metrics Tracking
# ---------------------------
class Metrics:
    """
    Counts verified sessions and their durations.
    Thread-safe using asyncio.Lock.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self.passed_count = 0
        self.failed_count = 0
        self.duration_sum = 0.0

    async def record(self, result: SessionResult):
        async with self.lock:
            if result.passed:
                self.passed_count += 1
            else:
                self.failed_count += 1
            self.duration_sum += result.duration_ms

    async def get_average_duration_ms(self) -> float:
        async with self.lock:
            total = self.passed_count + self.failed_count
            if total == 0:
                return 0.0
            return self.duration_sum / total


def describe_error(err: BaseException) -> str:
    """Render a validator error with its cause, e.g. 'failed to get REST URL: no server configured'."""
    if isinstance(err, ConnectionCheckError):
        return f"{err}: {err.__cause__}" if err.__cause__ else str(err)
    return f"{type(err).__name__}: {err}"


# ---------------------------
# Verifier
# ---------------------------
class ConnectionVerifier:
    """Connects simulated sessions, runs the registered validators, then disconnects."""
    def __init__(
        self,
        settings: ConnectionSettings,
        registry: ConnFuncRegistry,
        config: Optional[VerifyConfig] = None,
        metrics: Optional[Metrics] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.config = config or VerifyConfig()
        self.metrics = metrics or Metrics()
        self._active_users_count = 0
        self.lock = asyncio.Lock()  # Lock for _active_users_count

        self.configure_logging(self.config.debug)
        logger.info(
            f"Connection Verifier Initialized: Server='{self.settings.server}', Sim Users={self.config.sim_users}, "
            f"Validators={len(self.registry)}, Debug={self.config.debug}"
        )

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)
        for name in ("conn_funcs", "session_state", "engine_connection", "disconnect_app"):
            logging.getLogger(name).setLevel(log_level)

    def create_aiohttp_connector(self) -> aiohttp.BaseConnector:
        connector_limit = max(100, self.config.sim_users * 2)
        if self.settings.allow_untrusted:
            logger.warning("TLS certificate verification disabled (allow_untrusted).")
        return aiohttp.TCPConnector(
            ssl=not self.settings.allow_untrusted,
            limit=connector_limit,
        )

    def create_session(self, connector: aiohttp.BaseConnector) -> aiohttp.ClientSession:
        """One ClientSession per simulated user so cookies never leak between sessions."""
        timeout = aiohttp.ClientTimeout(
            total=self.config.total_timeout_s,
            connect=self.config.connect_timeout_s,
        )
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            connector_owner=False, # Connector is shared and closed by run()
        )

    def get_active_user_count(self) -> int:
        return self._active_users_count

    async def run(self) -> VerifyReport:
        """Verify `sim_users` sessions concurrently and return their results in user order."""
        connector = self.create_aiohttp_connector()
        try:
            logger.info(f"Verifying {self.config.sim_users} sessions...")
            results = await asyncio.gather(
                *(self.verify_session(user_id, connector) for user_id in range(self.config.sim_users))
            )
        finally:
            await connector.close()

        passed = sum(1 for r in results if r.passed)
        report = VerifyReport(
            results=list(results),
            passed=passed,
            failed=len(results) - passed,
            average_duration_ms=sum(r.duration_ms for r in results) / len(results) if results else 0.0,
        )
        log_level = logging.INFO if report.all_passed else logging.WARNING
        logger.log(log_level, f"Verification finished: {report.passed} passed, {report.failed} failed")
        return report

    async def verify_session(self, user_id: int, connector: aiohttp.BaseConnector) -> SessionResult:
        user_log_prefix = f"User {user_id}"
        start_time = time.monotonic()
        errors: List[str] = []

        async with self.lock:
            self._active_users_count += 1
        try:
            async with self.create_session(connector) as http:
                session_state = SessionState(http, user_id=user_id)
                failures = await run_conn_funcs(
                    self.registry, self.settings, session_state, stop_on_first=self.config.stop_on_first
                )
                errors.extend(describe_error(f) for f in failures)

                if session_state.connection is not None:
                    action_state = ActionState(label="disconnect")
                    await DisconnectAppSettings().execute(session_state, action_state, self.settings, "disconnect")
                    if action_state.failed:
                        errors.append(f"disconnect failed: {action_state.error()}")
        finally:
            async with self.lock:
                self._active_users_count -= 1

        result = SessionResult(
            user_id=user_id,
            passed=not errors,
            errors=errors,
            duration_ms=(time.monotonic() - start_time) * 1000.0,
        )
        if result.passed:
            logger.info(f"{user_log_prefix}: Connection verified ({result.duration_ms:.2f} ms)")
        else:
            logger.warning(f"{user_log_prefix}: Connection verification failed: {'; '.join(errors)}")
        await self.metrics.record(result)
        return result
