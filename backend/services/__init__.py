from importlib import import_module

__all__ = [
    "resource_gateway",
    "ResourceGateway",
    "provider_health",
    "ProviderCircuitBreaker",
    "order_executor",
    "OrderExecutionEngine",
    "monitor_supervisor",
    "MonitorSupervisor",
    "copy_trading_service",
    "CopyTradingService",
]

_LAZY_EXPORTS = {
    "resource_gateway": ("services.resource_gateway", "resource_gateway"),
    "ResourceGateway": ("services.resource_gateway", "ResourceGateway"),
    "provider_health": ("services.provider_health", "provider_health"),
    "ProviderCircuitBreaker": ("services.provider_health", "ProviderCircuitBreaker"),
    "order_executor": ("services.order_executor", "order_executor"),
    "OrderExecutionEngine": ("services.order_executor", "OrderExecutionEngine"),
    "monitor_supervisor": ("services.monitor_supervisor", "monitor_supervisor"),
    "MonitorSupervisor": ("services.monitor_supervisor", "MonitorSupervisor"),
    "copy_trading_service": ("services.copy_trader", "copy_trading_service"),
    "CopyTradingService": ("services.copy_trader", "CopyTradingService"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
