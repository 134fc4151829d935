"""
Ledgergate - FastAPI Backend

Safety gateway in front of the e-Financials accounting API. Writes sent
through the proxy are captured as pending changes; a reviewer approves or
rejects them, and only approved changes are signed and executed downstream.

Run Instructions:
-----------------
1. Install:
   pip install -e .

2. Configure downstream credentials:
   export API_KEY_ID=... API_KEY_PUBLIC=... API_KEY_PASSWORD=...

3. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 3000 --reload

4. Test /health endpoint:
   curl http://localhost:3000/health
"""
import sqlite3
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ledgergate.api import (
    changes_router,
    changesets_router,
    company_router,
    proposals_router,
    proxy_router,
)
from ledgergate.api.deps import get_executor
from ledgergate.core.database import StoreClosedError
from ledgergate.di.container import container
from ledgergate.services.errors import ErrorCode, GatewayError
from ledgergate.services.executor import Executor
from ledgergate.services.logging import log_request, log_error, logger

app = FastAPI(
    title="Ledgergate API",
    description="""
    Ledgergate - approval gateway for the e-Financials accounting API

    ## Proxy
    Requests to `/proxy/...` are mirrored to the accounting API.
    GET requests are forwarded immediately. POST, PUT, PATCH and DELETE
    are stored as pending changes and answered with 202.

    ## Review
    `/api/changes` and `/api/changesets` list, approve and reject captured
    changes. Approval signs and executes the change downstream.

    ## Authentication
    Set `GATEWAY_API_KEY` to require an `X-API-Key` header on the review API.
    """,
    version="1.0.0",
)

app.include_router(proxy_router, prefix=container.settings().path_prefix)
app.include_router(changes_router)
app.include_router(changesets_router)
app.include_router(proposals_router)
app.include_router(company_router)


# Add request logging middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id,
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


# Global exception handler for GatewayErrors
@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    """Handle all GatewayErrors with structured responses."""
    log_error(
        exc.code.value,
        str(exc),
        {"path": str(request.url.path), "method": request.method, "detail": exc.detail, **exc.context},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(sqlite3.Error)
async def database_exception_handler(request: Request, exc: sqlite3.Error):
    log_error(ErrorCode.DATABASE_ERROR.value, str(exc), {"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={"kind": ErrorCode.DATABASE_ERROR.value, "message": "Change store unavailable"},
    )


@app.exception_handler(StoreClosedError)
async def store_closed_handler(request: Request, exc: StoreClosedError):
    return JSONResponse(
        status_code=503,
        content={"kind": ErrorCode.DATABASE_ERROR.value, "message": "Change store is shut down"},
    )


# Enable CORS for all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize the change store on startup."""
    container.store().initialize()
    credentials = container.executor().credentials_provider()
    if not credentials.is_configured:
        logger.warning(
            "Downstream credentials incomplete (missing %s); approvals will fail until configured",
            ", ".join(credentials.missing_fields()),
        )
    logger.info("Ledgergate started, proxy mounted at %s", container.settings().path_prefix)


@app.on_event("shutdown")
async def shutdown_event():
    container.store().close()


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/test-connection", tags=["Health"])
def test_connection(executor: Executor = Depends(get_executor)):
    """Check connectivity and credentials with a signed read of /accounts."""
    result = executor.forward_read("GET", "/accounts")
    return {
        "success": True,
        "message": "Successfully connected to e-Financials API",
        "data": result,
    }
