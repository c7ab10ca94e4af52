import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.reimbursements.router import router as reimbursements_router
from app.core.config import settings
from app.core.notifications import build_dispatcher


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    notifier = build_dispatcher()
    app.state.notifier = notifier
    await notifier.start()
    try:
        yield
    finally:
        await notifier.stop()


def create_app() -> FastAPI:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Reimbursement Requests API", lifespan=lifespan)

    # CORS: allow the admin frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(reimbursements_router)

    logger.info("Reimbursement API configured")
    return app


app = create_app()
