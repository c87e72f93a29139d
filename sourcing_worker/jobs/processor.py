from __future__ import annotations

import logging
import time
from collections.abc import Mapping

from pydantic import ValidationError

from sourcing_worker.queue.models import QueueJob
from sourcing_worker.schemas.jobs import JOB_PAYLOAD_MODELS
from sourcing_worker.services.scraping import ScrapingService

logger = logging.getLogger(__name__)


class ScrapingProcessor:
    """Dispatches a claimed job to the scraping service registered for its name.

    Unknown names and invalid payloads are logged and dropped: retrying them
    cannot succeed. Anything raised by a service is logged with its stack and
    re-raised so the queue can schedule a retry.
    """

    def __init__(self, services: Mapping[str, ScrapingService]) -> None:
        self.services = dict(services)

    @property
    def job_names(self) -> list[str]:
        return sorted(self.services)

    async def __call__(self, job: QueueJob) -> None:
        service = self.services.get(job.name)
        model = JOB_PAYLOAD_MODELS.get(job.name)
        if service is None or model is None:
            logger.error("unsupported job name id=%s name=%s queue=%s", job.id, job.name, job.queue)
            return

        try:
            payload = model.model_validate(job.data)
        except ValidationError as exc:
            logger.error("invalid job payload id=%s name=%s errors=%s", job.id, job.name, exc.errors())
            return

        logger.info("job started id=%s name=%s attempt=%s", job.id, job.name, job.attempts_made)
        started = time.perf_counter()
        try:
            stats = await service.scrape(payload, job_id=job.id)
        except Exception:
            logger.exception("job failed id=%s name=%s", job.id, job.name)
            raise

        logger.info(
            "job completed id=%s name=%s duration_ms=%.0f found=%s inserted=%s skipped_existing=%s failed=%s",
            job.id,
            job.name,
            (time.perf_counter() - started) * 1000,
            stats.found,
            stats.inserted,
            stats.skipped_existing,
            stats.failed,
        )
