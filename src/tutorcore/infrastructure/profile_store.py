from __future__ import annotations

from threading import RLock
from typing import Dict, Optional

from ..domain.curriculum_models import LearnerProfile, LearnerProfileUpdate


class InMemoryProfileStore:
    """Learner display names and self-reported backgrounds."""

    def __init__(self) -> None:
        self._profiles: Dict[str, LearnerProfile] = {}
        self._lock = RLock()

    def get_profile(self, user_id: str) -> LearnerProfile:
        with self._lock:
            # Unknown learners get a neutral profile.
            return self._profiles.get(user_id) or LearnerProfile(user_id=user_id)

    def upsert_profile(self, user_id: str, update: LearnerProfileUpdate) -> LearnerProfile:
        with self._lock:
            current = self._profiles.get(user_id) or LearnerProfile(user_id=user_id)
            data = current.model_dump()
            if update.display_name is not None and update.display_name.strip():
                data["display_name"] = update.display_name.strip()
            if update.background is not None:
                data["background"] = update.background.strip()
            profile = LearnerProfile(**data)
            self._profiles[user_id] = profile
            return profile


_store: Optional[InMemoryProfileStore] = None


def get_profile_store() -> InMemoryProfileStore:
    global _store
    if _store is None:
        _store = InMemoryProfileStore()
    return _store
