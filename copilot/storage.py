"""Durable client-side key/value storage backed by one JSON file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from copilot.config import Config
from copilot.models import PersonaConfig

logger = logging.getLogger(__name__)

HISTORY_KEY = "chat-history"
USE_CASE_KEY = "selectedUseCase"
PROFILE_KEY = "userProfileData"


class LocalStorage:
    """A small persistent dict, rewritten atomically on every change."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or Config.STORAGE_PATH)
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("[STORAGE] Failed to parse %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".storage-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()


def save_profile(storage: LocalStorage, use_case: str, primary: str, secondary: str = "") -> None:
    """Remember the persona inputs so the prompt can be rebuilt on the next run."""
    storage.set(PROFILE_KEY, {"primaryData": primary, "secondaryData": secondary})
    storage.set(USE_CASE_KEY, use_case)


def load_persona(storage: LocalStorage) -> Optional[PersonaConfig]:
    """Rebuild the PersonaConfig from the stored profile, if both parts exist."""
    profile = storage.get(PROFILE_KEY)
    use_case = storage.get(USE_CASE_KEY)
    if not isinstance(profile, dict) or not use_case:
        return None
    primary = str(profile.get("primaryData") or "")
    secondary = str(profile.get("secondaryData") or "")
    combined = f"{primary}\n\nAdditional Context:\n{secondary}" if secondary else primary
    return PersonaConfig.from_dict({"useCase": use_case, "userData": combined})
