import logging
import logging.config
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

# ------------------------------------------------------------
# 1. CONFIG & LOGGING
# ------------------------------------------------------------
from projectstore.core.config import settings
from projectstore.core.firebase import get_db
from projectstore.core.celery_app import celery_app  # noqa: F401

LOG_LEVEL = "INFO" if settings.ENVIRONMENT == "production" else "DEBUG"

logging_config = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.error": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.access": {"handlers": ["console"], "level": LOG_LEVEL},
        "projectstore": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

logging.config.dictConfig(logging_config)
logger = logging.getLogger("projectstore")


# ------------------------------------------------------------
# 2. FASTAPI APP
# ------------------------------------------------------------
app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Digital product store with mailbox-verified mobile wallet payments.",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# ------------------------------------------------------------
# 3. CORS
# ------------------------------------------------------------
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    str(settings.FRONTEND_URL).rstrip("/"),
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------
# 4. ROUTERS (API ROUTES)
# ------------------------------------------------------------
from projectstore.routers import payment_router, receipt_router

app.include_router(payment_router.router, prefix="/api", tags=["Payments"])
app.include_router(receipt_router.router, prefix="/api", tags=["Receipts"])


# ------------------------------------------------------------
# 5. SYSTEM ROUTES
# ------------------------------------------------------------
@app.get("/health", tags=["System"])
async def health_check(db=Depends(get_db)):
    try:
        test_doc = db.collection("system").document("healthcheck")
        test_doc.set({"ping": datetime.now(timezone.utc)}, merge=True)
        return {"status": "healthy", "db": "connected"}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})


# ------------------------------------------------------------
# 6. EXCEPTION HANDLERS
# ------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid request")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    logger.info(f"Rejected invalid request to {request.url.path}: {field} {message}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": f"{field}: {message}" if field else message},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Something went wrong. Please try again.",
            "request_id": request.headers.get("X-Request-ID"),
        },
    )


# ------------------------------------------------------------
# 7. STARTUP
# ------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 {settings.PROJECT_NAME} API started | Env: {settings.ENVIRONMENT} | Debug: {settings.DEBUG}")
    logger.info(f"📬 Payment email search backend: {settings.EMAIL_SEARCH_BACKEND}")


# ------------------------------------------------------------
# 8. REQUEST LOGGING MIDDLEWARE
# ------------------------------------------------------------
@app.middleware("http")
async def log_requests(request: Request, call_next):
    client = request.client.host if request.client else "-"
    logger.info(f"➡️ {client} {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception(f"💥 Exception during {request.method} {request.url.path}: {e}")
        raise
    logger.info(f"⬅️ {request.method} {request.url.path} → {response.status_code}")
    return response


# ------------------------------------------------------------
# 9. RUN LOCALLY
# ------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug",
        access_log=True
    )
