# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router
from engine.config import Settings
from engine.errors import HunterError
from engine.services import build_services
import logging
import uuid


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or str(uuid.uuid4())


def create_app(settings=None, services=None) -> FastAPI:
    settings = settings or Settings()
    # Configure structured logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s'
    )

    app = FastAPI(title="Feedback Hunter Core")
    app.state.services = services or build_services(settings)

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(HunterError)
    async def hunter_exception_handler(request: Request, exc: HunterError):
        trace_id = _trace_id(request)
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logging.log(level, f"[trace_id={trace_id}] {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc), "error_type": type(exc).__name__, "trace_id": trace_id}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = _trace_id(request)
        logging.exception(f"[trace_id={trace_id}] Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        app.state.services.init_db()
        if app.state.services.settings.run_workers:
            app.state.services.job_store.recover_expired()
            app.state.services.start()
        logging.info("Feedback Hunter API started.")

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.services.settings.run_workers:
            app.state.services.stop()

    return app


app = create_app()
