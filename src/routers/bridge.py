from fastapi import APIRouter, HTTPException

from ruuvi.service_manager import service_manager

from schemas import BridgeStatusResponse

router = APIRouter(prefix="/bridge", tags=["bridge"])


@router.get("/status", response_model=BridgeStatusResponse, responses={
    503: {
        "description": "The subscription bridge has not been started.",
        "content": {
            "application/json": {
                "example": {"detail": "Subscription bridge is not running"}
            }
        }
    }
})
async def get_bridge_status() -> BridgeStatusResponse:
    """State of the subscription bridge and its advertisement counters."""
    bridge = service_manager.bridge
    if bridge is None:
        raise HTTPException(status_code=503, detail="Subscription bridge is not running")
    stats = bridge.stats()
    return BridgeStatusResponse(
        state=bridge.state,
        watched=bridge.device_ids,
        received=stats["received"],
        decoded=stats["decoded"],
        decode_failures=stats["decode_failures"],
        overflow_drops=stats["overflow_drops"],
        queued=stats["queued"],
    )
