from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from sourcing_worker.bootstrap import SourcingServices, get_services
from sourcing_worker.queue.models import JOB_STATES, QueueError
from sourcing_worker.repositories.base import RepositoryUnavailableError
from sourcing_worker.schemas.jobs import (
    JOB_NAME_AUCTIONS,
    JOB_NAME_DECEASES,
    JOB_NAME_ENERGY_DIAGNOSTICS,
    JOB_NAME_LIQUIDATIONS,
    JOB_NAME_NOTARY_LISTINGS,
    JOB_NAME_REFRESH,
    AuctionsJobData,
    DeceasesJobData,
    EnergyDiagnosticsJobData,
    EnqueuedJobOut,
    JobPayload,
    LiquidationsJobData,
    NotaryListingsJobData,
    QueueJobOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _enqueue(services: SourcingServices, job_name: str, payload: JobPayload) -> EnqueuedJobOut:
    queue_name = services.queue_for_job(job_name)
    try:
        job = await services.queue.enqueue(queue_name, job_name, payload.to_job_data())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    logger.info("job enqueued id=%s name=%s queue=%s", job.id, job_name, queue_name)
    return EnqueuedJobOut(job_id=job.id, queue=queue_name, name=job_name)


@router.post("/scraping/jobs/auctions", response_model=EnqueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_auctions(
    payload: AuctionsJobData | None = None,
    services: SourcingServices = Depends(get_services),
) -> EnqueuedJobOut:
    return await _enqueue(services, JOB_NAME_AUCTIONS, payload or AuctionsJobData())


@router.post("/scraping/jobs/notary-listings", response_model=EnqueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_notary_listings(
    payload: NotaryListingsJobData | None = None,
    services: SourcingServices = Depends(get_services),
) -> EnqueuedJobOut:
    if payload is None:
        payload = NotaryListingsJobData(
            start_page=services.settings.notary_default_start_page,
            end_page=services.settings.notary_default_end_page,
        )
    return await _enqueue(services, JOB_NAME_NOTARY_LISTINGS, payload)


@router.post("/sourcing/jobs/deceases", response_model=EnqueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_deceases(
    payload: DeceasesJobData,
    services: SourcingServices = Depends(get_services),
) -> EnqueuedJobOut:
    return await _enqueue(services, JOB_NAME_DECEASES, payload)


@router.post(
    "/sourcing/jobs/energy-diagnostics",
    response_model=EnqueuedJobOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_energy_diagnostics(
    payload: EnergyDiagnosticsJobData,
    services: SourcingServices = Depends(get_services),
) -> EnqueuedJobOut:
    return await _enqueue(services, JOB_NAME_ENERGY_DIAGNOSTICS, payload)


@router.post("/sourcing/jobs/liquidations", response_model=EnqueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_liquidations(
    payload: LiquidationsJobData,
    services: SourcingServices = Depends(get_services),
) -> EnqueuedJobOut:
    return await _enqueue(services, JOB_NAME_LIQUIDATIONS, payload)


@router.post("/refresh", response_model=EnqueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def request_refresh(services: SourcingServices = Depends(get_services)) -> EnqueuedJobOut:
    try:
        job = await services.refresh_trigger.trigger_refresh()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return EnqueuedJobOut(
        job_id=job.id,
        queue=job.queue,
        name=JOB_NAME_REFRESH,
        message="Refresh scheduled",
    )


@router.get("/queues/{queue_name}/jobs", response_model=list[QueueJobOut])
async def list_queue_jobs(
    queue_name: str,
    state: list[str] | None = Query(default=None),
    services: SourcingServices = Depends(get_services),
) -> list[QueueJobOut]:
    if queue_name not in services.queue_names:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="queue not found")
    if state is not None and not set(state) <= JOB_STATES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"state must be one of: {', '.join(sorted(JOB_STATES))}",
        )

    try:
        jobs = await services.queue.list_jobs(queue_name, states=state)
    except (RepositoryUnavailableError, QueueError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [
        QueueJobOut(
            id=job.id,
            queue=job.queue,
            name=job.name,
            data=job.data,
            state=job.state,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            run_at=job.run_at,
            last_error=job.last_error,
            lease_expires_at=job.lease_expires_at,
        )
        for job in jobs
    ]
