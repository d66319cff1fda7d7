import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from marketplace.core.config import CHAT_PUBLIC_BASE_URL, CHAT_STORAGE, CHAT_UPLOADS_DIR, CORS_ORIGINS
from marketplace.core.database import SessionLocal, engine
from marketplace.core.errors import MarketplaceError
from marketplace.core.logging_setup import configure_logging
from marketplace.core.startup_checks import create_sqlite_schema, validate_database_environment
from marketplace.integrations.pix_gateway import build_pix_gateway
from marketplace.middleware.observability import ObservabilityMiddleware
import marketplace.models  # noqa: F401  garante que os models são importados antes do create_all
from marketplace.services.chat_storage import build_chat_storage
from marketplace.services.event_bus import event_bus
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.presence import PresenceService

from marketplace.routers.appointments import router as appointments_router
from marketplace.routers.conversations import router as conversations_router
from marketplace.routers.messages import router as messages_router
from marketplace.routers.payments import router as payments_router
from marketplace.routers.presence import router as presence_router
from marketplace.routers.quotes import router as quotes_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"


async def _startup_tasks() -> None:
    try:
        validate_database_environment()
        await create_sqlite_schema(engine)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


def _init_state(app: FastAPI) -> None:
    state = app.state
    if getattr(state, "event_bus", None) is None:
        state.event_bus = event_bus
    if getattr(state, "presence", None) is None:
        state.presence = PresenceService(bus=state.event_bus)
    if getattr(state, "chat_storage", None) is None:
        state.chat_storage = build_chat_storage()
    if getattr(state, "payment_coordinator", None) is None:
        state.payment_coordinator = PaymentCoordinator(SessionLocal, build_pix_gateway(), bus=state.event_bus)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _startup_tasks()
    _init_state(app)
    yield
    await app.state.payment_coordinator.shutdown()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def _marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.warning("external dependency failed: %s", exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app = FastAPI(
    title="Marketplace Conversations API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)
register_exception_handlers(app)

if CHAT_STORAGE == "local" and CHAT_PUBLIC_BASE_URL.startswith("/"):
    UPLOADS_DIR = Path(CHAT_UPLOADS_DIR)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    app.mount(CHAT_PUBLIC_BASE_URL, StaticFiles(directory=str(UPLOADS_DIR)), name="chat-files")

# Routers
app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(presence_router)
app.include_router(quotes_router)
app.include_router(payments_router)
app.include_router(appointments_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
