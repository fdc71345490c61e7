"""
Profile store for a user's last used address.

Lets a returning user skip the city/address questions on /start.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from transit_tracker.tracker.models import UserProfile
from transit_tracker.utils.config import get_settings
from transit_tracker.utils.logger import get_logger

logger = get_logger()


class ProfileStoreError(Exception):
    """Exception raised when profiles cannot be persisted."""
    pass


class ProfileStore(ABC):
    """Abstract store for user profiles."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserProfile]:
        """
        Get the stored profile of a user.

        Args:
            user_id: Telegram user ID

        Returns:
            Optional[UserProfile]: Profile or None if the user is unknown
        """
        pass

    @abstractmethod
    def put(self, profile: UserProfile) -> None:
        """
        Insert or replace a profile (last write wins).

        Args:
            profile: Profile to store

        Raises:
            ProfileStoreError: If the profile cannot be written
        """
        pass


class JsonProfileStore(ProfileStore):
    """
    Profiles kept in a single JSON file as a list of objects.

    Writes go to a temporary file that is then renamed over the original.
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize JSON profile store.

        Args:
            path: JSON file location (default: settings.user_data_path)
        """
        self._path = Path(path) if path is not None else Path(get_settings().user_data_path)
        self._lock = threading.Lock()
        logger.info(f"Profile store: {self._path}")

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            return self._load().get(user_id)

    def put(self, profile: UserProfile) -> None:
        with self._lock:
            profiles = self._load()
            profiles[profile.id] = profile
            self._save(profiles)
        logger.debug(f"Stored profile for user {profile.id}")

    def _load(self) -> Dict[str, UserProfile]:
        """Read every profile from disk. A missing or corrupted file reads as empty."""
        if not self._path.exists():
            return {}

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read profiles from {self._path}: {e}")
            return {}

        profiles: Dict[str, UserProfile] = {}
        if not isinstance(raw, list):
            logger.error(f"Unexpected profile file format in {self._path}")
            return profiles

        for item in raw:
            try:
                profile = UserProfile.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid profile entry: {e}")
                continue
            profiles[profile.id] = profile
        return profiles

    def _save(self, profiles: Dict[str, UserProfile]) -> None:
        data = [p.model_dump(mode="json") for p in profiles.values()]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)

            # Write to file atomically (write to temp, then rename)
            temp_file = self._path.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            temp_file.replace(self._path)
        except OSError as e:
            raise ProfileStoreError(f"Failed to write profiles to {self._path}: {e}") from e
