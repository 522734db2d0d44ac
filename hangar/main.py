from fastapi import FastAPI
import logging

from hangar import __version__
from hangar.config import get_config
from hangar.logging_config import setup_logging

setup_logging(get_config().log_dir)

app = FastAPI(
    title="Hangar",
    version=__version__,
    response_model_by_alias=False,
)


logger = logging.getLogger("hangar.core")
logger.info("Hangar backend starting")

# Mount routers early so endpoints exist even if subsequent startup steps fail
from .addons.store import router as store_router  # noqa: E402

app.include_router(store_router, prefix="/api/addons", tags=["addons-store"])


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("Running application startup tasks")
    from .addons.store import startup_store

    try:
        # Fetch catalog + reconcile installed records (best effort)
        startup_store()
        logger.info("Completed addon store startup tasks")
    except Exception:
        logger.exception("Application startup failed")
        raise


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "Hangar"}
