"""Billing FastAPI application.

Serves the processor webhook and the thin command API. The lifecycle engine
(worker pool, scheduler, inbound consumer) runs inside the app lifespan.

Usage:
    uvicorn src.app:app --host 0.0.0.0 --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.integrations.fastapi import register_exception_handlers

from billing.api.routes import routers
from billing.config import BillingConfig
from billing.domain import billing
from billing.engine import BillingEngine

# PROTEAN_ENV selects the domain.toml overlay (memory for tests, PostgreSQL in production).
billing.init()


def create_app(engine: BillingEngine | None = None, background: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or BillingEngine(billing, BillingConfig.from_env())
        await app.state.engine.start(background=background)
        try:
            yield
        finally:
            await app.state.engine.stop()

    app = FastAPI(
        title="Billing API",
        description="Subscription and payment lifecycle engine",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def domain_context_middleware(request: Request, call_next):
        """Push the billing domain context for each request."""
        with billing.domain_context():
            return await call_next(request)

    for router in routers:
        app.include_router(router)
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        state = app.state.engine
        return JSONResponse(content={"status": "ok", "domain": billing.name, "workers": state.dispatcher.running})

    return app


app = create_app()
