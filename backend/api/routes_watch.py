from hmac import compare_digest
from typing import Optional, Union

from fastapi import APIRouter, Body, Header, HTTPException, Query

from config import settings
from services.copy_trader import copy_trading_service
from services.monitor_supervisor import monitor_supervisor
from utils.validation import WatchRequest, validate_solana_address

router = APIRouter()


# ==================== WATCHED WALLETS ====================


@router.post("/watch")
async def register_watch(request: WatchRequest):
    """Start watching a wallet for an owner"""
    started = await monitor_supervisor.register_watch(request.address, request.owner_id)
    return {
        "address": request.address,
        "owner_id": request.owner_id,
        "monitor_started": started,
        "owners": sorted(monitor_supervisor.owners_for(request.address)),
    }


@router.delete("/watch/{address}")
async def deregister_watch(address: str, owner_id: Optional[str] = Query(default=None)):
    """Stop watching a wallet (for one owner, or for everyone)"""
    try:
        address = validate_solana_address(address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    stopped = await monitor_supervisor.deregister_watch(address, owner_id)
    return {"address": address, "owner_id": owner_id, "monitor_stopped": stopped}


@router.get("/watch")
async def list_watches():
    return {
        "supervisor": monitor_supervisor.get_status(),
        "copy_trading": copy_trading_service.get_status(),
    }


@router.post("/watch/webhook")
async def receive_webhook(
    payload: Union[list, dict] = Body(...),
    authorization: Optional[str] = Header(default=None),
):
    """Helius enhanced-transaction webhook; a list, or ``{"transactions": [...]}``"""
    expected = settings.HELIUS_WEBHOOK_AUTH_HEADER
    if expected and not compare_digest(authorization or "", expected):
        raise HTTPException(status_code=401, detail="Invalid webhook authorization")
    items = payload.get("transactions") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise HTTPException(status_code=400, detail="Expected a list of transactions")
    return await monitor_supervisor.ingest_webhook(items)
