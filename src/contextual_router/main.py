"""FastAPI application entry point for the Contextual Routing Engine.

This module provides:
- FastAPI app initialization
- Routing, feedback, audit and admin endpoints
- Error handling that maps engine error kinds to HTTP status codes
- Request/response logging and timing
- CORS configuration for web clients
"""

import time
import uuid

import psutil
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .engine import RoutingEngine, get_routing_engine
from .errors import ErrorKind, RoutingEngineError
from .models import (
    ConversationContext, ErrorResponse, FeedbackAck, FeedbackRequest, HealthResponse,
    ProfileUpdateRequest, RouteRequest, RoutingDecision, UserProfile
)
from .utils import ConfigurationError, get_current_timestamp, initialize_app, sanitize_for_logging

# Initialize logging and configuration
initialize_app()

# Global application start time for metrics
app_start_time = time.time()

app = FastAPI(
    title="Contextual Routing Engine",
    description="Routes support requests to the best-suited agent using profile, conversation and business-rule context",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)

STATUS_CODES = {
    ErrorKind.INVALID_REQUEST: 422,
    ErrorKind.INVALID_RULE_CONFIG: 422,
    ErrorKind.NO_CANDIDATES: 409,
    ErrorKind.DUPLICATE_FEEDBACK: 409,
    ErrorKind.DECISION_NOT_FOUND: 404,
    ErrorKind.PROFILE_NOT_FOUND: 404,
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.CLASSIFIER_ERROR: 502,
    ErrorKind.CLASSIFIER_TIMEOUT: 504,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.PROFILE_STORE_UNAVAILABLE: 503,
    ErrorKind.CONTEXT_STORE_UNAVAILABLE: 503,
}

RETRY_AFTER_SECONDS = 1


# Request/Response logging and timing middleware
@app.middleware("http")
async def logging_and_timing_middleware(request: Request, call_next):
    """Log requests and responses with timing information."""
    start_time = time.time()
    request_id = str(uuid.uuid4())[:8]

    logger.info(
        "Incoming request",
        method=request.method,
        url=str(request.url),
        request_id=request_id,
        client_ip=request.client.host if request.client else "unknown"
    )

    request.state.request_id = request_id

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            url=str(request.url),
            error=str(e),
            error_type=type(e).__name__,
            processing_time_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        raise

    response.headers["X-Request-ID"] = request_id
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        processing_time_ms=(time.time() - start_time) * 1000,
        request_id=request_id
    )
    return response


def _error_response(request: Request, status_code: int, error: str, message: str,
                    details=None, retryable: bool = False) -> JSONResponse:
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if retryable else None
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            retryable=retryable,
            details=details,
            request_id=getattr(request.state, 'request_id', None)
        ).model_dump(mode="json"),
        headers=headers
    )


# Global exception handlers
@app.exception_handler(RoutingEngineError)
async def routing_engine_error_handler(request: Request, exc: RoutingEngineError):
    """Map engine errors to status codes by their kind."""
    status_code = STATUS_CODES.get(exc.kind, 500)
    error = exc.to_dict()
    log = logger.warning if status_code < 500 else logger.error
    log(
        "Routing engine error",
        **error,
        status_code=status_code,
        request_id=getattr(request.state, 'request_id', None)
    )
    return _error_response(
        request, status_code, error["kind"], error["message"], error["details"], error["retryable"]
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Handle configuration errors."""
    return _error_response(request, 500, "configuration_error", "System configuration error", {"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle request body and path validation errors."""
    errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()]
    return _error_response(request, 422, ErrorKind.INVALID_REQUEST.value, "Invalid request", {"errors": errors})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return _error_response(request, exc.status_code, "http_error", str(exc.detail), {"status_code": exc.status_code})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(
        "Unexpected error occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, 'request_id', None)
    )
    return _error_response(request, 500, "internal_server_error",
                           "An unexpected error occurred. Please try again later.")


@app.on_event("startup")
async def startup_event():
    """Build the routing engine; an invalid rule table aborts startup."""
    try:
        engine = get_routing_engine()
        engine.start()
        logger.info("Startup completed", version="1.0.0", rule_table_version=engine.rules.version)
    except Exception as e:
        logger.error("Startup validation failed", error=str(e))
        raise


@app.on_event("shutdown")
async def shutdown_event():
    await get_routing_engine().stop()


@app.get("/")
async def root():
    """Root endpoint with basic service information."""
    return {
        "service": "Contextual Routing Engine",
        "version": "1.0.0",
        "status": "running",
        "timestamp": get_current_timestamp(),
        "endpoints": {
            "route": "/route",
            "feedback": "/feedback",
            "decision": "/decisions/{decision_id}",
            "profile": "/profiles/{user_id}",
            "session": "/sessions/{session_id}",
            "rules": "/rules",
            "reload_rules": "/admin/rules/reload",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.post("/route", response_model=RoutingDecision)
async def route_endpoint(
    request: RouteRequest,
    http_request: Request,
    engine: RoutingEngine = Depends(get_routing_engine)
) -> RoutingDecision:
    """
    Route one user message to an agent.

    Returns the full decision: primary agent, fallbacks, confidence,
    reasoning, per-factor scores and the rule and signal audit trail.
    """
    request_id = getattr(http_request.state, 'request_id', None)
    logger.info(
        "Processing route request",
        session_id=request.session_id,
        user_id=request.user_id,
        message_preview=sanitize_for_logging(request.message, 100),
        request_id=request_id
    )
    return await engine.route(request.message, request.session_id, request.user_id, request.extra)


@app.post("/feedback", response_model=FeedbackAck)
async def feedback_endpoint(
    request: FeedbackRequest,
    engine: RoutingEngine = Depends(get_routing_engine)
) -> FeedbackAck:
    """Report the outcome of a routing decision. Repeated reports are acknowledged, not counted."""
    return await engine.feedback.report(request.decision_id, request.outcome, request.satisfaction)


@app.get("/decisions/{decision_id}", response_model=RoutingDecision)
async def get_decision(decision_id: str, engine: RoutingEngine = Depends(get_routing_engine)) -> RoutingDecision:
    return await engine.decisions.get(decision_id)


@app.get("/profiles/{user_id}", response_model=UserProfile)
async def get_profile(user_id: str, engine: RoutingEngine = Depends(get_routing_engine)) -> UserProfile:
    return await engine.profiles.get(user_id)


@app.put("/profiles/{user_id}", response_model=UserProfile)
async def update_profile(
    user_id: str,
    request: ProfileUpdateRequest,
    engine: RoutingEngine = Depends(get_routing_engine)
) -> UserProfile:
    """Admin update of tier, role, permissions or preferences. History is never editable."""
    return await engine.profiles.update_identity(
        user_id,
        tier=request.tier,
        role=request.role,
        permissions=request.permissions,
        preferences=request.preferences
    )


@app.get("/sessions/{session_id}", response_model=ConversationContext)
async def get_session(session_id: str, engine: RoutingEngine = Depends(get_routing_engine)) -> ConversationContext:
    return await engine.contexts.get(session_id)


@app.get("/rules")
async def get_rules(engine: RoutingEngine = Depends(get_routing_engine)):
    """Active rule table."""
    return engine.rules.table.model_dump(mode="json")


@app.post("/admin/rules/reload")
async def reload_rules(engine: RoutingEngine = Depends(get_routing_engine)):
    """
    Reload the rule table from its configured location.

    On validation failure the previous table stays active and the error is
    returned with kind ``invalid_rule_config``.
    """
    table = engine.reload_rules()
    return {
        "status": "reloaded",
        "version": table.version,
        "rule_count": len(table.rules),
        "timestamp": get_current_timestamp()
    }


@app.get("/health", response_model=HealthResponse)
async def health_check(http_request: Request, engine: RoutingEngine = Depends(get_routing_engine)):
    """
    Health check endpoint.

    Reports store sizes, classifier configuration and process memory.
    Degraded when no external classifier is configured (heuristic routing only).
    """
    request_id = getattr(http_request.state, 'request_id', None)
    overall_status = "healthy"
    checks = {}

    try:
        stats = await engine.health()
        checks["stores"] = {
            "status": "healthy",
            "last_checked": get_current_timestamp(),
            "details": {
                "profiles": stats["profiles"],
                "sessions": stats["sessions"],
                "decisions": stats["decisions"]
            }
        }

        classifier_status = "healthy" if stats["classifier_sources"] else "degraded"
        checks["classifiers"] = {
            "status": classifier_status,
            "last_checked": get_current_timestamp(),
            "details": {"sources": stats["classifier_sources"]}
        }
        if classifier_status == "degraded":
            overall_status = "degraded"

        process = psutil.Process()
        checks["system_metrics"] = {
            "status": "healthy",
            "last_checked": get_current_timestamp(),
            "details": {
                "uptime_seconds": round(time.time() - app_start_time, 2),
                "memory_usage_mb": round(process.memory_info().rss / 1024 / 1024, 2)
            }
        }
    except Exception as e:
        logger.error("Health check failed unexpectedly", error=str(e), request_id=request_id)
        response = HealthResponse(
            status="unhealthy",
            timestamp=get_current_timestamp(),
            checks={"system": {"status": "unhealthy", "error": str(e)}}
        )
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))

    logger.info("Health check completed", status=overall_status, request_id=request_id)
    return HealthResponse(
        status=overall_status,
        timestamp=get_current_timestamp(),
        rule_table_version=engine.rules.version,
        checks=checks
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("contextual_router.main:app", host="0.0.0.0", port=8000, reload=False)
