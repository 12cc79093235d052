import time

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from edumarket.config import get_settings
from edumarket.database import init_db, ping_db
from edumarket.errors import ChatError
from edumarket.utils.logger import get_logger
from edumarket.rate_limit import limiter

logger = get_logger("main")
settings = get_settings()

# Routers
from edumarket.routers import conversations as conversations_router
from edumarket.routers import internal as internal_router
from edumarket.services.presence import PresenceRegistry
from edumarket.services.socket_service import RealtimeGateway, create_socket_server, get_socket_app

app = FastAPI(
    title="EduMarket Messaging API",
    debug=settings.APP_DEBUG,
)

# Realtime hub: one presence registry and one gateway per process
presence = PresenceRegistry()
sio = create_socket_server()
gateway = RealtimeGateway(sio, presence)
gateway.register_handlers()
app.state.gateway = gateway

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


PUBLIC_PATHS = ("/healthz", "/readyz")


def custom_openapi():
    """Advertise the bearer scheme on every user-facing route."""
    if app.openapi_schema:
        return app.openapi_schema

    schema = get_openapi(title=app.title, version="1.0.0", routes=app.routes)
    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
    }
    for path, operations in schema.get("paths", {}).items():
        # internal routes use the shared secret header instead
        if path.startswith("/internal") or path in PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation["security"] = [{"BearerAuth": []}]

    app.openapi_schema = schema
    return schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router.router)
app.include_router(internal_router.router)


# Error handlers
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message} - Path: {request.url.path}")
    else:
        logger.info(f"{exc.code}: {exc.message} - Path: {request.url.path}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": f"E{exc.status_code}", "status_code": exc.status_code}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()} - Path: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_errors(exc), "code": "E422", "status_code": 422}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "E500", "status_code": 500}
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# Middleware Logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    if not await ping_db():
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ok", "database": "up"}


@app.on_event("startup")
async def on_startup():
    logger.info("Starting application...")
    await init_db()
    logger.info("Database initialized")


@app.on_event("shutdown")
async def on_shutdown():
    await presence.clear()
    logger.info("Shutting down application...")


# ASGI entrypoint: Socket.IO on /socket.io, everything else goes to FastAPI.
# uvicorn edumarket.main:asgi_app
asgi_app = get_socket_app(sio, other_asgi_app=app)
