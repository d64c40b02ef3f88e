from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import requests

from src.tutorcore.domain.curriculum_models import CurriculumDraft, UnitDraft
from src.tutorcore.infrastructure.chat_store import InMemoryConversationStore
from src.tutorcore.infrastructure.curriculum_store import InMemoryCurriculumStore
from src.tutorcore.infrastructure.profile_store import InMemoryProfileStore
from src.tutorcore.services.generation import LocalLLMProvider


class ScriptedProvider:
    """Generation double that replays canned completions and stream fragments.

    ``completions`` entries are returned in order; an exception instance is
    raised instead. Once exhausted, ``complete`` raises ``error``.
    ``fail_after`` makes ``stream`` raise after yielding that many fragments.
    """

    def __init__(
        self,
        completions: Optional[Sequence[Any]] = None,
        stream_parts: Optional[Sequence[str]] = None,
        fail_after: Optional[int] = None,
        error: Optional[BaseException] = None,
        pause: bool = False,
    ) -> None:
        self.completions: List[Any] = list(completions or [])
        self.stream_parts = list(stream_parts or [])
        self.fail_after = fail_after
        self.error = error or RuntimeError("backend down")
        self.pause = pause
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, options) -> str:
        self.calls.append({"kind": "complete", "messages": messages, "options": options})
        if not self.completions:
            raise self.error
        item = self.completions.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream(self, messages, options):
        self.calls.append({"kind": "stream", "messages": messages, "options": options})
        for index, part in enumerate(self.stream_parts):
            if self.fail_after is not None and index >= self.fail_after:
                raise self.error
            if self.pause:
                await asyncio.sleep(0)
            yield part
        if self.fail_after is not None and self.fail_after >= len(self.stream_parts):
            raise self.error


def structure_json(title: str, units: Sequence[Dict[str, Any]], description: str = "A learning path.") -> str:
    return json.dumps({"title": title, "description": description, "units": list(units)})


def make_draft(count: int = 3, topic: str = "Photosynthesis") -> CurriculumDraft:
    return CurriculumDraft(
        title=f"{topic} Essentials",
        description=f"Learn {topic} step by step.",
        originating_prompt=topic,
        length="short" if count == 3 else "medium",
        complexity="beginner",
        units=[
            UnitDraft(
                title=f"Unit {i}",
                overview=f"Overview of unit {i}",
                body=f"Body of unit {i}",
                order=i,
            )
            for i in range(count)
        ],
    )


def make_stores():
    chats = InMemoryConversationStore()
    curricula = InMemoryCurriculumStore(conversations=chats)
    profiles = InMemoryProfileStore()
    return chats, curricula, profiles


def fill_turns(store: InMemoryConversationStore, conversation_id: str, count: int) -> None:
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        store.append_turn(conversation_id, role, f"turn {i}")


class FlakyLocalProvider(LocalLLMProvider):
    """Local backend whose OpenAI-format stream drops after ``partial`` tokens."""

    def __init__(self, partial: Sequence[str] = ("Partial openai ",)) -> None:
        super().__init__(base_url="http://127.0.0.1:11434", model="llama3.2:latest")
        self.api_style = "auto"
        self.partial = list(partial)

    def _stream_openai(self, messages, options):
        yield from self.partial
        raise requests.exceptions.ChunkedEncodingError("connection dropped")

    def _stream_ollama(self, messages, options):
        yield "Full ollama answer."
