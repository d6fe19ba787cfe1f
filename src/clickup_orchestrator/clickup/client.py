"""ClickUp REST client for hierarchy browsing and task updates."""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from clickup_orchestrator.config import Config
from clickup_orchestrator.errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

PRIORITY_RANKS = {"urgent": 1, "high": 2, "normal": 3, "low": 4}


class _TrackerModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Team(_TrackerModel):
    id: str
    name: str
    color: str | None = None
    avatar: str | None = None


class Space(_TrackerModel):
    id: str
    name: str
    private: bool = False
    color: str | None = None


class Folder(_TrackerModel):
    id: str
    name: str
    hidden: bool = False


class TrackerList(_TrackerModel):
    id: str
    name: str
    content: str | None = None


class TrackerStatus(_TrackerModel):
    id: str | None = None
    status: str
    color: str | None = None
    status_type: str | None = Field(default=None, alias="type")
    orderindex: int | None = None


class TaskPriority(_TrackerModel):
    id: str | None = None
    priority: str | None = None
    color: str | None = None


class TaskListRef(_TrackerModel):
    id: str
    name: str | None = None


class TrackerTask(_TrackerModel):
    id: str
    name: str
    description: str | None = None
    status: TrackerStatus
    priority: TaskPriority | None = None
    list: TaskListRef


def priority_to_int(priority: TaskPriority | None) -> int | None:
    """Map urgent/high/normal/low to 1..4; anything else is unranked."""
    if priority is None or priority.priority is None:
        return None
    return PRIORITY_RANKS.get(priority.priority.lower())


class ClickUpClient:
    """Thin async wrapper over the ClickUp v2 API.

    The API key is read from the config on every request, so a key saved
    through the setup flow is used immediately.
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.clickup_api_base,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_workspaces(self, api_key: str | None = None) -> list[Team]:
        """List workspaces; an explicit key overrides the configured one."""
        data = await self._request("GET", "/team", api_key=api_key)
        return _parse_all(Team, data, "teams")

    async def get_spaces(self, team_id: str) -> list[Space]:
        data = await self._request("GET", f"/team/{team_id}/space")
        return _parse_all(Space, data, "spaces")

    async def get_folders(self, space_id: str) -> list[Folder]:
        data = await self._request("GET", f"/space/{space_id}/folder")
        return _parse_all(Folder, data, "folders")

    async def get_lists_in_folder(self, folder_id: str) -> list[TrackerList]:
        data = await self._request("GET", f"/folder/{folder_id}/list")
        return _parse_all(TrackerList, data, "lists")

    async def get_folderless_lists(self, space_id: str) -> list[TrackerList]:
        data = await self._request("GET", f"/space/{space_id}/list")
        return _parse_all(TrackerList, data, "lists")

    async def get_list_statuses(self, list_id: str) -> list[TrackerStatus]:
        data = await self._request("GET", f"/list/{list_id}")
        return _parse_all(TrackerStatus, data, "statuses")

    async def get_tasks(self, list_id: str, status: str | None = None) -> list[TrackerTask]:
        params = {"statuses[]": status} if status else None
        data = await self._request("GET", f"/list/{list_id}/task", params=params)
        return _parse_all(TrackerTask, data, "tasks")

    async def update_task_status(self, task_id: str, status: str) -> None:
        await self._request("PUT", f"/task/{task_id}", json={"status": status})
        logger.info(f"[ClickUp] Moved {task_id} to '{status}'")

    async def add_time_entry(self, task_id: str, start_ms: int, end_ms: int, duration_ms: int) -> None:
        body = {"start": start_ms, "end": end_ms, "time": duration_ms}
        await self._request("POST", f"/task/{task_id}/time", json=body)
        logger.info(f"[ClickUp] Logged {duration_ms}ms on {task_id}")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        key = api_key if api_key is not None else self._config.clickup_api_key
        if not key:
            raise ExternalServiceError("API key not configured")

        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers={"Authorization": key}
            )
        except httpx.HTTPError as e:
            logger.warning(f"[ClickUp] {method} {path} failed: {e}")
            raise ExternalServiceError(f"ClickUp request failed: {e}") from e

        if not response.is_success:
            raise ExternalServiceError(f"{response.status_code}: {response.text}")
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"ClickUp returned invalid JSON: {e}") from e
        return data if isinstance(data, dict) else {}


def _parse_all(model: type[_TrackerModel], data: dict[str, Any], field: str) -> list[Any]:
    try:
        return [model.model_validate(item) for item in data.get(field) or []]
    except PydanticValidationError as e:
        raise ExternalServiceError(f"Unexpected ClickUp response for {field}: {e}") from e
