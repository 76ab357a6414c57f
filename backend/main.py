from contextlib import asynccontextmanager
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import health_router, orders_router, watch_router
from models.database import init_database
from services.copy_trader import copy_trading_service
from services.exceptions import ValidationError
from services.monitor_supervisor import monitor_supervisor
from services.order_executor import order_executor
from services.providers import jupiter_provider, raydium_provider
from services.resource_gateway import resource_gateway
from services.trade_store import trade_store
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting wallet copy-trading core...")

    try:
        await init_database()

        await resource_gateway.start()
        if not await resource_gateway.health_check():
            logger.warning("Ledger RPC health check failed at startup; continuing with retries")

        watches = await trade_store.list_active_watches()
        await monitor_supervisor.start(watches)
        logger.info("Watched wallets restored", count=len(watches))

        await copy_trading_service.start()

        logger.info("All services started successfully")
        yield

    except Exception as e:
        logger.error("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("Shutting down...")
        copy_trading_service.stop()
        await monitor_supervisor.stop()
        await jupiter_provider.close()
        await raydium_provider.close()
        await resource_gateway.stop()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Copytrade Core",
    description="Solana wallet activity monitoring and multi-provider swap execution",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(watch_router, prefix="/api", tags=["Watched Wallets"])
app.include_router(orders_router, prefix="/api", tags=["Orders"])
app.include_router(health_router, prefix="/api", tags=["Health"])


@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "watched_wallets": len(monitor_supervisor.addresses()),
        "degraded_wallets": monitor_supervisor.get_status()["degraded"],
        "in_flight_orders": len(order_executor.get_status()["in_flight"]),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        timeout_keep_alive=30,
    )
