from fastapi import APIRouter

from services.order_executor import order_executor
from services.resource_gateway import resource_gateway

router = APIRouter()


@router.get("/health/providers")
async def provider_health_status():
    """Breaker state, latency and in-flight orders per execution provider"""
    return order_executor.get_status()


@router.get("/health/gateway")
async def gateway_health_status():
    status = resource_gateway.get_status()
    status["failure_rate"] = round(resource_gateway.failure_rate(), 4)
    return status
