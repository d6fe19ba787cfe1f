"""Settings API endpoints."""

from fastapi import APIRouter

from clickup_orchestrator.api.models import SettingsPayload, SettingValueResponse
from clickup_orchestrator.errors import NotFoundError
from clickup_orchestrator.factory import get_settings_store

router = APIRouter()


@router.get("/settings", response_model=SettingsPayload)
async def get_settings() -> SettingsPayload:
    return SettingsPayload(settings=get_settings_store().get_all())


@router.put("/settings", response_model=SettingsPayload)
async def update_settings(request: SettingsPayload) -> SettingsPayload:
    """Upsert every key in the body in one transaction.

    Changes apply from the next poll cycle; no restart is needed.

    Raises:
        ValidationError: A value is unusable; nothing is written (400)
    """
    return SettingsPayload(settings=get_settings_store().update_all(request.settings))


@router.get("/settings/{key}", response_model=SettingValueResponse)
async def get_setting(key: str) -> SettingValueResponse:
    value = get_settings_store().get(key)
    if value is None:
        raise NotFoundError(f"Setting '{key}' not found")
    return SettingValueResponse(key=key, value=value)
