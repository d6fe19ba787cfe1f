"""Persisted key/value settings."""

import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from clickup_orchestrator.errors import ValidationError
from clickup_orchestrator.process.agents import AGENT_TYPES
from clickup_orchestrator.storage.models import Setting, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: dict[str, str] = {
    "parallel_limit": "1",
    "trigger_status": "Ready for Dev",
    "target_status": "In Development",
    "target_repo_path": "",
    "dev_branch": "dev",
    "clickup_workspace_id": "",
    "clickup_space_id": "",
    "clickup_folder_id": "",
    "clickup_list_id": "",
    "agent_prompt": "",
    "agent_type": "claude",
}


class SettingsStore:
    """Flat string map stored one row per key."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def seed_defaults(self) -> None:
        """Insert defaults for keys that have never been written."""
        with Session(self._engine) as session:
            existing = set(session.exec(select(Setting.key)).all())
            missing = {k: v for k, v in DEFAULT_SETTINGS.items() if k not in existing}
            for key, value in missing.items():
                session.add(Setting(key=key, value=value))
            session.commit()
        if missing:
            logger.info(f"[Settings] Seeded defaults: {', '.join(sorted(missing))}")

    def get_all(self) -> dict[str, str]:
        with Session(self._engine) as session:
            return {s.key: s.value for s in session.exec(select(Setting)).all()}

    def get(self, key: str) -> str | None:
        with Session(self._engine) as session:
            setting = session.exec(select(Setting).where(Setting.key == key)).one_or_none()
            return setting.value if setting else None

    def get_value(self, key: str) -> str | None:
        """Return the stripped value, treating empty as unset."""
        value = self.get(key)
        if value is None or not value.strip():
            return None
        return value.strip()

    def update_all(self, values: dict[str, str]) -> dict[str, str]:
        """Upsert all given keys in one transaction and return the full map.

        Raises:
            ValidationError: If a recognised key has an unusable value; nothing is written
        """
        _validate(values)
        now = utc_now()
        with Session(self._engine) as session:
            for key, value in values.items():
                setting = session.exec(select(Setting).where(Setting.key == key)).one_or_none()
                if setting is None:
                    session.add(Setting(key=key, value=value, created_at=now, updated_at=now))
                else:
                    setting.value = value
                    setting.updated_at = now
                    session.add(setting)
            session.commit()
        logger.info(f"[Settings] Updated {', '.join(sorted(values))}")
        return self.get_all()

    def parallel_limit(self) -> int:
        raw = self.get_value("parallel_limit")
        if raw is None:
            return 1
        try:
            limit = int(raw)
        except ValueError:
            logger.warning(f"[Settings] Invalid parallel_limit {raw!r}, using 1")
            return 1
        return max(limit, 1)


def _validate(values: dict[str, str]) -> None:
    if "parallel_limit" in values:
        raw = values["parallel_limit"].strip()
        if not raw.isdigit() or int(raw) < 1:
            raise ValidationError(
                f"parallel_limit must be a whole number of at least 1, got {values['parallel_limit']!r}"
            )
    agent = values.get("agent_type")
    if agent and agent not in AGENT_TYPES:
        raise ValidationError(
            f"agent_type must be one of {', '.join(AGENT_TYPES)}, got {agent!r}"
        )
