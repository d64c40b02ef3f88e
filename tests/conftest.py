import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Fresh in-memory stores, no model credentials and no event bus for every test."""
    from src.tutorcore.infrastructure import chat_store, curriculum_store, events, profile_store
    from src.tutorcore.services import conversation, generation

    for key in [
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "XAI_API_KEY",
        "LOCAL_BASE_URL",
        "TUTOR_MODEL_PROVIDER",
        "TUTOR_ENABLE_LOCAL_PROVIDER",
        "TUTOR_STORE_IMPL",
        "REDIS_URL",
    ]:
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(chat_store, "_store", None, raising=False)
    monkeypatch.setattr(curriculum_store, "_store", None, raising=False)
    monkeypatch.setattr(profile_store, "_store", None, raising=False)
    monkeypatch.setattr(events, "_publisher", None, raising=False)
    monkeypatch.setattr(conversation, "_orchestrator", None, raising=False)
    monkeypatch.setattr(generation, "_BREAKER_STATE", {"fails": 0, "opened_at": 0.0}, raising=False)
