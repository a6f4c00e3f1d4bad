from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .db import Base, engine
from .exceptions import ConfigurationError
from .logging_config import configure_logging
from .middleware import RequestIDMiddleware
from .routers import admin, auth, credits, stripe, observability


def check_production_settings() -> None:
    if settings.environment != "production":
        return
    for name in ("jwt_secret", "admin_api_key"):
        if getattr(settings, name).startswith("change-me"):
            raise ConfigurationError(name, "default value must be replaced in production")
    if settings.stripe_webhook_secret == "whsec_change_me":
        raise ConfigurationError("stripe_webhook_secret", "default value must be replaced in production")


configure_logging()
check_production_settings()

# Also installs the balance projection triggers (see projection.py)
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(stripe.router, prefix="/stripe", tags=["stripe"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# Observability endpoints
app.include_router(observability.router, prefix="/ops", tags=["observability"])
