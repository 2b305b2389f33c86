import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
import socketio

from lifeline.config import get_settings
from lifeline.db.postgres import engine, Base
import lifeline.models  # noqa: F401  register all ORM models with Base.metadata
from lifeline.api.middleware.rate_limit import RateLimitMiddleware, get_rate_limiter
from lifeline.api.routes import emergencies, locations
from lifeline.api.websocket.handler import sio
from lifeline.services.errors import (
    EmergencyError, ValidationError, NotFoundError, UnauthorizedError, InvalidStateError, ConflictError,
    CollaboratorError,
)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Rate limiting (must be added before CORS so it runs after CORS in the middleware stack)
app.add_middleware(RateLimitMiddleware, max_requests=settings.GLOBAL_RATE_LIMIT, window_seconds=60)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(emergencies.router, prefix=settings.API_PREFIX, tags=["Emergencies"])
app.include_router(locations.router, prefix=settings.API_PREFIX, tags=["Locations"])


_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (UnauthorizedError, 403),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (CollaboratorError, 503),
]


@app.exception_handler(EmergencyError)
async def emergency_error_handler(request: Request, exc: EmergencyError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    if status_code == 500:
        logger.error("Unmapped emergency error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)


@app.on_event("shutdown")
async def shutdown():
    await get_rate_limiter().close()
    await engine.dispose()


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


# Socket.IO integration; serve with ``uvicorn lifeline.main:sio_app``
sio_app = socketio.ASGIApp(sio, other_asgi_app=app)
