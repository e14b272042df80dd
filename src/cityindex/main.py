"""City Index FastAPI application with Hydra configuration.

Usage:
    # Development (in-memory sinks, in-process job threads)
    python -m cityindex.main

    # Against real stores
    python -m cityindex.main storage.mongo.enabled=true storage.elasticsearch.enabled=true

    # With the wide-column sink and RQ workers
    python -m cityindex.main storage.dynamodb.enabled=true jobs.worker.enabled=true
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

import hydra
import uvicorn
from fastapi import FastAPI
from omegaconf import DictConfig, OmegaConf

from .api.dependencies import get_ingestion_coordinator
from .api.routes import router
from .config.settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings = get_settings()
    if settings.jobs.sweep_on_startup:
        summary = get_ingestion_coordinator().reconcile_stale_jobs()
        logger.info("startup.stale_job_sweep", extra=summary)
    yield


def create_app() -> FastAPI:
    """Create the FastAPI application.

    Reads ``get_settings()``, so Hydra-injected settings (``set_settings``)
    take effect when called after injection.
    """
    app = FastAPI(title="City Index", version="0.1.0", lifespan=_lifespan)
    app.include_router(router)
    return app


app = create_app()


@hydra.main(version_base=None, config_path="../../configs", config_name="config")
def main(cfg: DictConfig) -> None:
    """Compose the Hydra config, inject it as settings and serve the API with uvicorn."""
    from .config.hydra_adapter import hydra_to_pydantic
    from .config.settings import set_settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("City Index API Server (environment: %s)", cfg.environment)
    logger.info("  - Mongo: %s", cfg.storage.mongo.enabled)
    logger.info("  - Elasticsearch: %s", cfg.storage.elasticsearch.enabled)
    logger.info("  - DynamoDB: %s", cfg.storage.dynamodb.enabled)
    logger.info("  - Ids: %s", cfg.ids.backend)
    logger.info("  - RQ worker dispatch: %s", cfg.jobs.worker.enabled)
    if cfg.environment == "dev":
        logger.debug(OmegaConf.to_yaml(cfg))

    try:
        settings = hydra_to_pydantic(cfg)
        set_settings(settings)
        uvicorn.run(
            create_app(),
            host=settings.api.host,
            port=settings.api.port,
            reload=settings.api.reload,
            workers=settings.api.workers if not settings.api.reload else 1,
            log_level="info",
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


__all__ = ["create_app", "app", "main"]


if __name__ == "__main__":
    main()
