import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from conn_funcs import ConnFuncRegistry
from verify_runner import ConnectionVerifier, Metrics, VerifyReport, VerifyRequest

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("verify_control")

app = FastAPI(title="Connection Verifier")

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
# One registry for the lifetime of the service, handed to every verifier.
# Hosts embedding this app register custom validators on it before serving.
registry = ConnFuncRegistry()
metrics = Metrics()

current_settings: Dict[str, Any] = {
    'app_status': 'idle',  # 'idle' | 'verifying' | 'error'
    'runs': 0,
}
last_report: Optional[VerifyReport] = None


# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": current_settings['app_status']
    })


@app.get('/api/conn-funcs')
async def list_conn_funcs():
    """Registered connection validators, in execution order."""
    return JSONResponse({"conn_funcs": registry.names()})


@app.post('/api/verify')
async def verify(data: dict):
    """
    Verify sessions against the engine described in the body and return the report.
    Body: {"connection": {...ConnectionSettings}, "config": {...VerifyConfig}}
    """
    global last_report

    try:
        request = VerifyRequest.model_validate(data)
    except ValidationError as ve:
        logger.error(f"Request validation failed: {ve}")
        raise HTTPException(status_code=400, detail=ve.errors(include_url=False, include_context=False))

    logger.info(f"Verification requested for '{request.connection.server}' ({request.config.sim_users} sessions)")

    current_settings['app_status'] = 'verifying'
    try:
        verifier = ConnectionVerifier(request.connection, registry, request.config, metrics=metrics)
        report = await verifier.run()
    except Exception as e:
        logger.error(f"Verification run failed: {e}", exc_info=True)
        current_settings['app_status'] = 'error'
        raise HTTPException(status_code=500, detail=str(e))

    current_settings['app_status'] = 'idle'
    current_settings['runs'] += 1
    last_report = report
    return JSONResponse(report.model_dump())


@app.get('/api/metrics')
async def api_metrics():
    """Container stats plus verification counters accumulated since start."""
    container_cpu_percent = psutil.cpu_percent(interval=None)
    container_mem = psutil.virtual_memory()

    resp_body = {
        "timestamp": datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z"),
        "app_status": current_settings['app_status'],
        "system": {
            "cpu_percent": round(container_cpu_percent, 1),
            "memory_percent": round(container_mem.percent, 1),
            "memory_available_mb": round(container_mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(container_mem.used / (1024 * 1024), 2)
        },
        "metrics": {
            "runs": current_settings['runs'],
            "sessions_passed": metrics.passed_count,
            "sessions_failed": metrics.failed_count,
            "average_session_duration_ms": await metrics.get_average_duration_ms(),
            "last_run_failed": last_report.failed if last_report else 0,
        }
    }
    return JSONResponse(resp_body)


# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    logger.info("Starting verify_control API server...")

    import uvicorn
    uvicorn.run(
        "verify_control:app",
        host='0.0.0.0',
        port=int(os.environ.get("PORT", "8080")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
