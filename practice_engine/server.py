import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from practice_engine.config import settings
from practice_engine.db.database import close_db, init_db
from practice_engine.engine import PracticeEngine
from practice_engine.errors import EngineError, InvalidAnswerFormat, InvalidConfig
from practice_engine.middleware.auth import AuthMiddleware
from practice_engine.routes.exams import router as exams_router
from practice_engine.routes.swipe import router as swipe_router

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS (comma-separated) or sensible defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def _describe(err: dict) -> str:
    where = ".".join(str(part) for part in err["loc"][1:]) or "body"
    return f"{where}: {err['msg']}"


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed swipe payloads are engine errors (400), everything else keeps the 422."""
    path = request.url.path
    if not path.startswith("/api/swipe/"):
        return await request_validation_exception_handler(request, exc)

    problems = ", ".join(_describe(err) for err in exc.errors())
    error_cls = InvalidAnswerFormat if path == "/api/swipe/answer" else InvalidConfig
    return await engine_error_handler(request, error_cls(f"Invalid request: {problems}"))


def create_app(engine: PracticeEngine | None = None, migrate: bool = True) -> FastAPI:
    """Build the API around an engine. Tests pass their own engine and skip migrations."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if migrate:
            await init_db()
        yield
        await close_db()

    app = FastAPI(title="Practice Engine", lifespan=lifespan)
    app.state.engine = engine or PracticeEngine()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(AuthMiddleware)
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(swipe_router)
    app.include_router(exams_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()
