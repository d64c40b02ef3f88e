from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional, Sequence

from ..domain.chat_models import ConversationTurn, FollowUpSet
from ..infrastructure.chat_store import ConversationStore, get_chat_store
from ..observability.metrics import record_fallback
from .generation import GenerationOptions, GenerationProvider, get_capability, parse_json_object
from .prompts import FOLLOW_UP_HISTORY_WINDOW, PromptKind, compose


logger = logging.getLogger(__name__)
LOG = logging.getLogger("tutorcore.llm")

DEFAULT_FOLLOW_UP_COUNT = int(os.getenv("TUTOR_FOLLOW_UP_COUNT", "3"))

FALLBACK_QUESTIONS = (
    "Can you explain that in simpler terms?",
    "Could you give me a concrete example?",
    "How does this connect to the rest of the unit?",
    "What is a common mistake people make with this?",
    "Can you give me a short exercise to practice this?",
)


def fallback_questions(count: int) -> List[str]:
    """Static questions truncated or cycled to exactly ``count`` entries."""
    if count <= 0:
        return []
    return [FALLBACK_QUESTIONS[i % len(FALLBACK_QUESTIONS)] for i in range(count)]


def _validate_questions(payload: object, count: int) -> List[str]:
    if not isinstance(payload, dict):
        raise ValueError("follow-up payload is not an object")
    questions = payload.get("questions")
    if not isinstance(questions, list):
        raise ValueError("questions is not an array")
    cleaned = [q.strip() for q in questions if isinstance(q, str) and q.strip()]
    if len(cleaned) < count:
        raise ValueError(f"expected {count} questions, got {len(cleaned)}")
    return cleaned[:count]


class FollowUpSynthesizer:
    """Derives the next questions a learner might ask; never raises."""

    def __init__(
        self,
        capability_factory: Optional[Callable[[], GenerationProvider]] = None,
        store: Optional[ConversationStore] = None,
    ) -> None:
        self._capability_factory = capability_factory or (lambda: get_capability("follow_up_questions"))
        self._store = store

    @property
    def store(self) -> ConversationStore:
        return self._store or get_chat_store()

    async def synthesize(self, recent_history: Sequence[ConversationTurn], count: int = DEFAULT_FOLLOW_UP_COUNT) -> List[str]:
        if count <= 0:
            return []
        history = list(recent_history)[-FOLLOW_UP_HISTORY_WINDOW:]
        prompt = compose(PromptKind.FOLLOW_UPS, {"turns": history, "count": count})
        try:
            capability = self._capability_factory()
            raw = await capability.complete(
                prompt.to_messages(),
                GenerationOptions(temperature=0.7, max_tokens=300, structured=True),
            )
            return _validate_questions(parse_json_object(raw), count)
        except Exception as exc:
            LOG.warning("follow_up_fallback", extra={"err": str(exc), "count": count})
            logger.info("Follow-up synthesis failed; using static questions: %s", exc)
            record_fallback("follow_ups")
            return fallback_questions(count)

    async def refresh(self, conversation_id: str, count: int = DEFAULT_FOLLOW_UP_COUNT) -> FollowUpSet:
        """Regenerate and replace the conversation's follow-up set wholesale."""
        recent = self.store.recent_turns(conversation_id, FOLLOW_UP_HISTORY_WINDOW)
        questions = await self.synthesize(recent, count)
        return self.store.replace_follow_ups(conversation_id, questions)
