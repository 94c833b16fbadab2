from fastapi import APIRouter, HTTPException

from ruuvi.config_loader import config_loader
from ruuvi.services.gateway import normalize_device_id
from ruuvi.services.reading_cache import reading_cache

from schemas import TagInfo, TagReading, TagsList

router = APIRouter(prefix="/tag", tags=["tag"])


@router.get("", response_model=TagsList)
async def list_tags() -> TagsList:
    """List configured tags with their activity (a tag is active while it keeps advertising)."""
    tags = []
    for mac, cfg in config_loader.get_all_tags().items():
        latest = reading_cache.get_latest(mac)
        tags.append(TagInfo(
            mac=mac,
            display_name=cfg.displayName,
            enabled=cfg.enabled,
            active=reading_cache.is_tag_active(mac),
            last_seen=latest.timestamp if latest else None,
        ))
    return TagsList(list=tags)


@router.get("/{mac}/latest", response_model=TagReading, responses={
    400: {
        "description": "Invalid MAC address provided.",
        "content": {
            "application/json": {
                "example": {"detail": "Invalid MAC address: XX. Expected format is CC:6F:70:EE:4C:AD"}
            }
        }
    },
    404: {
        "description": "No reading received from this tag yet.",
        "content": {
            "application/json": {
                "example": {"detail": "No reading received from CC:6F:70:EE:4C:AD"}
            }
        }
    }
})
async def get_latest_reading(mac: str) -> TagReading:
    """
    Get the most recent decoded reading of a tag, converted to physical units.
    """
    try:
        normalized = normalize_device_id(mac)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid MAC address: {mac}. Expected format is CC:6F:70:EE:4C:AD"
        )

    sample = reading_cache.get_latest(normalized)
    if sample is None:
        raise HTTPException(status_code=404, detail=f"No reading received from {normalized}")
    return TagReading.from_sample(sample)
