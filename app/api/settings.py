from fastapi import APIRouter, Depends

from app.dependencies import get_business_settings
from app.services.business_settings import BusinessSettingsStore, BusinessSettingsUpdate

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def read_settings(store: BusinessSettingsStore = Depends(get_business_settings)):
    current = await store.get()
    return current.model_dump(by_alias=True)


@router.put("")
async def update_settings(
    body: BusinessSettingsUpdate,
    store: BusinessSettingsStore = Depends(get_business_settings),
):
    updated = await store.update(body.model_dump(exclude_unset=True, exclude_none=True))
    return updated.model_dump(by_alias=True)
