"""
Custody Engine - FastAPI Application

Main entry point for the custody / vehicle-replacement workflow backend.

Architecture:
- User action -> CustodyStateMachine -> SLACalculator / ApprovalGate -> IntegrationDispatcher
- Timer -> CustodyReconciliationScheduler -> CustodyStateMachine / store -> IntegrationDispatcher
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import init_db
from .routers import custody_router, scheduler_router
from .services.custody import (
    ConcurrentModificationError, CustodyError, CustodyNotFoundError, DuplicateDecisionError,
    ImmutableStateError, InvalidTransitionError, PreconditionError, ValidationError,
)


logger = logging.getLogger(__name__)


# Workflow error -> HTTP status
ERROR_STATUS = [
    (ValidationError, 422),
    (CustodyNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ImmutableStateError, 409),
    (DuplicateDecisionError, 409),
    (ConcurrentModificationError, 409),
    (PreconditionError, 412),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Custody Engine",
    description="""
    Custody Engine - Vehicle Replacement Workflow

    Tracks stand-in vehicles issued after an accident, breakdown or maintenance
    event, from draft through approval, handover and return.

    ## Workflow
    1. **Draft**: operator records the incident and the vehicles involved
    2. **Pending approval**: SLA deadlines stamped, approvers assigned
    3. **Approved**: every approver accepted (one rejection voids)
    4. **Active**: replacement vehicle handed over
    5. **Closed**: vehicle returned, or auto-closed when abandoned

    ## Background reconciliation
    `POST /internal/custody-scheduler/run` sweeps for SLA breaches, expiring
    documents, overdue returns, failed deliveries and abandoned custodies.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError):
    """Map workflow errors to status codes with a specific error kind."""
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    content = {
        "error": type(exc).__name__,
        "detail": exc.message,
        "custody_id": exc.custody_id,
    }
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    if status_code == 400:
        logger.warning(f"Unmapped custody error on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=content)


# Include routers
app.include_router(custody_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Custody Engine",
        "version": "1.0.0",
        "description": "Vehicle Replacement Workflow",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m custody_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
