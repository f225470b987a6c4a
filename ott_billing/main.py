from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ott_billing.core.log import configure_logging
from ott_billing.core.settings import S
from ott_billing.metrics import metrics_endpoint, metrics_middleware, set_app_info
from ott_billing.routers.checkout import router as checkout_router
from ott_billing.routers.subscription import router as subscription_router
from ott_billing.routers.webhooks import router as webhooks_router


def _cors_origins() -> list[str]:
    return [o.strip() for o in S.cors_origins.split(",") if o.strip()] or ["*"]


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="OTT Billing", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if S.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(checkout_router)
    app.include_router(subscription_router)
    app.include_router(webhooks_router)

    return app

app = create_app()
