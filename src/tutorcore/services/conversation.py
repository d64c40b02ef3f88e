from __future__ import annotations

import asyncio
import logging
import os
import weakref
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from ..domain.chat_models import ChunkEvent, CompleteEvent, ErrorEvent, GenerateRequest
from ..domain.errors import GenerationFailure, QuotaExceeded, TutorError, ValidationError
from ..infrastructure.chat_store import MAX_TURNS, ConversationStore, get_chat_store
from ..infrastructure.curriculum_store import CurriculumStore, get_curriculum_store
from ..infrastructure.events import publish_event
from ..infrastructure.profile_store import InMemoryProfileStore, get_profile_store
from ..observability.metrics import record_chat_outcome
from .follow_ups import DEFAULT_FOLLOW_UP_COUNT, FollowUpSynthesizer
from .generation import GenerationOptions, GenerationProvider, Message, get_capability
from .prompts import PromptKind, compose


logger = logging.getLogger(__name__)
LOG = logging.getLogger("tutorcore.llm")

ChatEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]

CHAT_TEMPERATURE = float(os.getenv("TUTOR_CHAT_TEMPERATURE", "0.7"))
CHAT_MAX_TOKENS = int(os.getenv("TUTOR_CHAT_MAX_TOKENS", "500"))


class TurnState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class ConversationOrchestrator:
    """Turns one inbound message into persisted turns and a stream of events.

    Messages on the same conversation are handled one at a time: the lock
    spans validation, streaming and persistence, so the quota check and the
    append can never interleave with another message's. Different
    conversations run concurrently.
    """

    def __init__(
        self,
        conversations: Optional[ConversationStore] = None,
        curricula: Optional[CurriculumStore] = None,
        profiles: Optional[InMemoryProfileStore] = None,
        capability_factory: Optional[Callable[[], GenerationProvider]] = None,
        follow_ups: Optional[FollowUpSynthesizer] = None,
        max_turns: int = MAX_TURNS,
        follow_up_count: int = DEFAULT_FOLLOW_UP_COUNT,
    ) -> None:
        self.conversations = conversations or get_chat_store()
        self.curricula = curricula or get_curriculum_store()
        self.profiles = profiles or get_profile_store()
        self._capability_factory = capability_factory or (lambda: get_capability("tutoring_chat"))
        self.follow_ups = follow_ups or FollowUpSynthesizer(store=self.conversations)
        self.max_turns = max_turns
        self.follow_up_count = follow_up_count
        self.chat_options = GenerationOptions(temperature=CHAT_TEMPERATURE, max_tokens=CHAT_MAX_TOKENS)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._follow_up_tasks: Dict[str, asyncio.Task] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _chat_messages(self, conversation_id: str, user_id: Optional[str], content: str) -> List[Message]:
        unit = self.curricula.get_unit(conversation_id)
        curriculum = self.curricula.get_curriculum(unit.curriculum_id)
        profile = self.profiles.get_profile(user_id or curriculum.user_id)
        prompt = compose(
            PromptKind.CHAT,
            {
                "curriculum": curriculum,
                "unit": unit,
                "profile": profile,
                "turns": self.conversations.list_turns(conversation_id),
            },
        )
        return prompt.to_messages(content)

    async def generate(self, request: GenerateRequest) -> AsyncIterator[ChatEvent]:
        """Run one message through validate → stream → persist.

        Yields zero or more :class:`ChunkEvent` followed by exactly one
        terminal :class:`CompleteEvent` or :class:`ErrorEvent`. Closing the
        iterator early (client gone) aborts generation and writes nothing.
        """
        cid = request.conversation_id
        state = TurnState.IDLE
        async with self._lock_for(cid):
            try:
                state = TurnState.VALIDATING
                content = (request.message or "").strip()
                if not content:
                    raise ValidationError("Message cannot be empty")
                if self.conversations.count_turns(cid) >= self.max_turns:
                    raise QuotaExceeded("Message limit reached for this conversation")

                if request.role != "user":
                    state = TurnState.PERSISTING
                    self.conversations.append_exchange(cid, [(request.role, content)], max_turns=self.max_turns)
                    state = TurnState.COMPLETED
                    final_text = content
                else:
                    messages = self._chat_messages(cid, request.user_id, content)
                    state = TurnState.STREAMING
                    parts: List[str] = []
                    stream = None
                    try:
                        capability = self._capability_factory()
                        stream = capability.stream(messages, self.chat_options)
                        async for fragment in stream:
                            if not fragment:
                                continue
                            parts.append(fragment)
                            yield ChunkEvent(chunk=fragment)
                    except TutorError:
                        raise
                    except Exception as exc:
                        raise GenerationFailure(f"Generation failed: {exc}") from exc
                    finally:
                        aclose = getattr(stream, "aclose", None)
                        if aclose is not None:
                            await aclose()
                    final_text = "".join(parts)
                    if not final_text.strip():
                        raise GenerationFailure("llm_empty_response")

                    state = TurnState.PERSISTING
                    self.conversations.append_exchange(
                        cid,
                        [("user", content), ("assistant", final_text)],
                        max_turns=self.max_turns,
                    )
                    state = TurnState.COMPLETED
                    self.schedule_follow_ups(cid)
            except TutorError as exc:
                LOG.warning(
                    "chat_turn_failed",
                    extra={"conversation_id": cid, "state": state.value, "code": exc.code, "err": exc.message},
                )
                state = TurnState.FAILED
                record_chat_outcome(exc.code)
                publish_event("chat.failed", {"conversation_id": cid, "code": exc.code})
                yield ErrorEvent(error=exc.message, code=exc.code)
                return

        record_chat_outcome("completed")
        publish_event("chat.completed", {"conversation_id": cid, "role": request.role})
        yield CompleteEvent(message=final_text, conversation_id=cid)

    async def run(self, request: GenerateRequest) -> List[ChatEvent]:
        """Collect every event for ``request``; convenience for non-streaming callers."""
        return [event async for event in self.generate(request)]

    def schedule_follow_ups(self, conversation_id: str) -> asyncio.Task:
        """Start follow-up synthesis detached from the chat turn.

        A synthesis still running for an older turn is superseded by the new one.
        """
        previous = self._follow_up_tasks.get(conversation_id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(self._refresh_follow_ups(conversation_id))
        self._follow_up_tasks[conversation_id] = task
        task.add_done_callback(lambda t, cid=conversation_id: self._forget_task(cid, t))
        return task

    def _forget_task(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._follow_up_tasks.get(conversation_id) is task:
            self._follow_up_tasks.pop(conversation_id, None)

    async def _refresh_follow_ups(self, conversation_id: str) -> None:
        try:
            await self.follow_ups.refresh(conversation_id, self.follow_up_count)
        except TutorError as exc:
            # Conversation deleted while synthesis was in flight.
            logger.info("Follow-up refresh skipped for %s: %s", conversation_id, exc)

    async def drain_follow_ups(self) -> None:
        """Wait for all in-flight follow-up synthesis (shutdown and tests)."""
        pending = [t for t in self._follow_up_tasks.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


_orchestrator: Optional[ConversationOrchestrator] = None


def get_orchestrator() -> ConversationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator()
    return _orchestrator
