from fastapi import APIRouter, HTTPException

from config import settings
from models.trading import OrderIntent, OrderSide
from services.copy_trader import copy_trading_service
from services.order_executor import order_executor
from utils.validation import OrderRequest

router = APIRouter()


async def _signer_for(owner_id: str):
    custody = copy_trading_service.key_custody
    if custody is None:
        raise HTTPException(status_code=503, detail="No key custody configured")
    signer = await custody.signer_for(owner_id)
    if signer is None:
        raise HTTPException(status_code=403, detail=f"No signing key available for owner {owner_id}")
    return signer


# ==================== ORDERS ====================


@router.post("/orders")
async def submit_order(request: OrderRequest):
    """Execute a buy or sell and wait for the verified result"""
    signer = await _signer_for(request.owner_id)
    intent = OrderIntent(
        owner_id=request.owner_id,
        token_address=request.token_address,
        side=OrderSide(request.side),
        amount=request.amount,
        amount_is_percent=request.amount_is_percent,
        max_slippage_bps=request.max_slippage_bps or settings.DEFAULT_SLIPPAGE_BPS,
    )
    result = await order_executor.submit_order(intent, signer)
    if result.error_type == "validation_error":
        raise HTTPException(status_code=400, detail=result.error_message)
    return result.to_dict()


# ==================== RETRY ====================


@router.get("/orders/failed/{owner_id}")
async def get_last_failed_order(owner_id: str):
    record = order_executor.get_last_failed_order(owner_id)
    return {
        "owner_id": owner_id,
        "has_recent_failed_order": record is not None,
        "failed_order": record.to_dict() if record else None,
    }


@router.post("/orders/failed/{owner_id}/retry")
async def retry_last_failed_order(owner_id: str):
    """Replay the owner's last failed order as a fresh order"""
    if not order_executor.has_recent_failed_order(owner_id):
        raise HTTPException(status_code=404, detail="No recent failed order to retry")
    signer = await _signer_for(owner_id)
    result = await order_executor.retry_last_failed_order(owner_id, signer)
    if result is None:
        raise HTTPException(status_code=404, detail="No recent failed order to retry")
    return result.to_dict()
