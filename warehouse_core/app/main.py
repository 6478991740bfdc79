import os
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .db import create_db_and_tables
from .logging_setup import setup_logging
from .auth import router as auth_router
from .users import router as users_router
from .excel import router as excel_router
from .routers.shops import router as shops_router
from .routers.assets import router as assets_router
from .routers.documents import router as documents_router
from .routers.pick_tasks import router as pick_tasks_router
from .routers.transfers import router as transfers_router
from .routers.repairs import router as repairs_router
from .routers.ledger import router as ledger_router
from .routers.dashboard import router as dashboard_router

logger = logging.getLogger(__name__)


def get_cors_origins():
    """Get CORS origins from environment or use defaults for development"""
    origins_env = os.getenv("CORS_ORIGINS", "")
    if origins_env:
        return [o.strip() for o in origins_env.split(",") if o.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(
        title="Warehouse Asset Tracking",
        description="Document workflow, picking, transfers, repairs and the asset custody ledger",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(excel_router)
    app.include_router(shops_router)
    app.include_router(assets_router)
    app.include_router(documents_router)
    app.include_router(pick_tasks_router)
    app.include_router(transfers_router)
    app.include_router(repairs_router)
    app.include_router(ledger_router)
    app.include_router(dashboard_router)

    @app.on_event("startup")
    def on_startup():
        logger.info("Creating database tables at startup...")
        create_db_and_tables()
        logger.info("Database ready.")

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
