from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from datetime import datetime
import logging

import config
from database import client, db
from engine.errors import WorkflowError
from engine.indexes import ensure_indexes
from engine.policy import configure_agency_review
from engine.rate_limiter import MongoCounterStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Agency Workflow Engine",
    version="1.0.0",
    description="Invoices, deliverable reviews, reimbursements and returns with guarded lifecycles"
)

api_router = APIRouter(prefix="/api")


# ============================================
# ERROR HANDLERS
# ============================================
@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or None
    message = f"Invalid value for '{field}': {first.get('msg')}" if field else "Malformed request"
    return JSONResponse(
        status_code=400,
        content={
            "detail": message,
            "error_type": "validation_error",
            "field": field,
            "errors": [
                {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg")}
                for e in errors
            ]
        }
    )


# ============================================
# HEALTH
# ============================================
@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": app.version
    }


# Include the router in the main app
app.include_router(api_router)

from invoice_routes import invoice_router
app.include_router(invoice_router)

from project_routes import project_router
app.include_router(project_router)

from deliverable_routes import deliverable_router
app.include_router(deliverable_router)

from ledger_routes import reimbursement_router, return_router
app.include_router(reimbursement_router)
app.include_router(return_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup():
    configure_agency_review(config.ALLOW_AGENCY_REVIEW)
    await ensure_indexes(db)
    if config.RATE_LIMIT_BACKEND == "mongo":
        await MongoCounterStore(db).ensure_indexes()
    logger.info(f"[STARTUP] Workflow engine ready (rate limit backend: {config.RATE_LIMIT_BACKEND})")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
