"""
Health check endpoints.
"""
import asyncio
from typing import List

from fastapi import APIRouter, Depends

from codeintel.core.logging import get_logger
from codeintel.dependencies import Services, get_services
from codeintel.models.responses import ProviderHealth

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/providers", response_model=List[ProviderHealth])
async def providers_health(services: Services = Depends(get_services)):
    """
    Health of every configured AI backend.

    Returns, per provider:
    - status: healthy | degraded | unhealthy
    - response time of the models probe and recent error rate
    - circuit breaker and rate limiter state
    """
    gateways = services.selector.get_gateways()
    statuses = await asyncio.gather(*(gateway.health_check() for gateway in gateways))

    results = []
    for gateway, status in zip(gateways, statuses):
        services.selector.record_provider_health(gateway.provider_id, status)
        results.append(
            ProviderHealth(
                provider_id=gateway.provider_id,
                status=status.status.value,
                response_time_ms=status.response_time,
                error_rate=status.error_rate,
                issues=status.issues,
                circuit_breaker=gateway.client.circuit_breaker.get_metrics(),
                rate_limit=gateway.rate_limiter.get_metrics(),
            )
        )

    logger.info(
        "providers_health_checked",
        providers=len(results),
        unhealthy=[r.provider_id for r in results if r.status == "unhealthy"],
    )
    return results
