#!/usr/bin/env python3
"""City Index RQ worker entry point with Hydra configuration.

Usage:
    # Default configuration (worker dispatch must be enabled)
    python scripts/run_worker.py jobs.worker.enabled=true

    # Custom queue and job log
    python scripts/run_worker.py \
        jobs.worker.enabled=true \
        jobs.worker.queue_name=priority \
        jobs.log.dsn=postgresql://user:pass@db:5432/jobs
"""

from __future__ import annotations

import logging
import sys

import hydra
from omegaconf import DictConfig, OmegaConf

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@hydra.main(version_base=None, config_path="../configs", config_name="config")
def main(cfg: DictConfig) -> None:
    """Compose the config, inject it as settings and start an RQ worker on the ingestion queue."""
    from cityindex.config.hydra_adapter import hydra_to_pydantic
    from cityindex.config.settings import set_settings

    logger.info("City Index RQ Worker (environment: %s)", cfg.environment)

    if not cfg.jobs.worker.enabled:
        logger.error("Worker is disabled in configuration!")
        logger.error("Pass jobs.worker.enabled=true or set CITYINDEX_JOBS__WORKER__ENABLED=true")
        sys.exit(1)

    logger.info("  - Queue: %s", cfg.jobs.worker.queue_name)
    logger.info("  - Default Timeout: %ss", cfg.jobs.worker.default_timeout)
    logger.info("  - Redis URL: %s", cfg.storage.redis.url)
    logger.info("  - Job log DSN: %s...", str(cfg.jobs.log.dsn)[:50])
    if cfg.environment == "dev":
        logger.debug(OmegaConf.to_yaml(cfg))

    try:
        settings = hydra_to_pydantic(cfg)
        set_settings(settings)

        import redis
        from rq import Worker

        redis_conn = redis.from_url(settings.storage.redis.url)
        redis_conn.ping()

        queue_name = settings.jobs.worker.queue_name
        worker = Worker(
            queues=[queue_name],
            connection=redis_conn,
            name=f"cityindex-worker-{queue_name}",
        )
        logger.info("Starting RQ worker for queue: %s", queue_name)
        worker.work(with_scheduler=False)

    except KeyboardInterrupt:
        logger.info("Shutting down worker gracefully...")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to start worker: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
