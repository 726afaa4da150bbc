import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import get_settings
from db_setup import init_db, get_db_connection
from db_models import IdentifyRequest, FinalResponse, ErrorMessage, ErrorResponse
from errors import InvalidInputError, ReconciliationError
from reconciliation import reconcile


def configure_logging():
    settings = get_settings()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Starting contact reconciliation API", database=settings.database_path)
    init_db()
    yield
    logger.info("Shutting down contact reconciliation API")


app = FastAPI(
    title="Bitespeed Contact Reconciliation API",
    version="1.0.0",
    lifespan=lifespan,
)


def get_db():
    conn = get_db_connection()
    try:
        yield conn
    finally:
        conn.close()


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=400, content={"message": exc.message})


@app.exception_handler(ReconciliationError)
@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(
        "Request failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.get("/")
async def root():
    return {
        "message": "Bitespeed API is up",
        "endpoint": "/identify",
        "method": "POST",
    }


@app.post(
    "/identify",
    response_model=FinalResponse,
    responses={400: {"model": ErrorMessage}, 500: {"model": ErrorResponse}},
)
def identify(request: IdentifyRequest, conn=Depends(get_db)):
    return reconcile(conn, request.email, request.phoneNumber)


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
