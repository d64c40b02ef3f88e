from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
import os

from ..domain.chat_models import ConversationTurn, FollowUpSet
from ..domain.errors import NotFound, QuotaExceeded


MAX_TURNS = int(os.getenv("TUTOR_MAX_TURNS", "100"))


class ConversationStore(Protocol):
    def create_conversation(self, conversation_id: str) -> None: ...

    def has_conversation(self, conversation_id: str) -> bool: ...

    def delete_conversation(self, conversation_id: str) -> None: ...

    def count_turns(self, conversation_id: str) -> int: ...

    def list_turns(self, conversation_id: str) -> List[ConversationTurn]: ...

    def recent_turns(self, conversation_id: str, limit: int) -> List[ConversationTurn]: ...

    def append_turn(self, conversation_id: str, role: str, content: str, max_turns: int = MAX_TURNS) -> ConversationTurn: ...

    def append_exchange(
        self,
        conversation_id: str,
        turns: Sequence[Tuple[str, str]],
        max_turns: int = MAX_TURNS,
    ) -> List[ConversationTurn]: ...

    def get_follow_ups(self, conversation_id: str) -> FollowUpSet: ...

    def replace_follow_ups(self, conversation_id: str, questions: Sequence[str]) -> FollowUpSet: ...


@dataclass
class _Turn:
    role: str
    content: str
    sequence: int
    created_at: str


class InMemoryConversationStore:
    """Ordered turn log per conversation.

    All quota checks happen under the store lock together with the write, so
    a count read by one caller can never be invalidated by another append
    before its own append lands.
    """

    def __init__(self) -> None:
        self._turns: Dict[str, List[_Turn]] = {}
        self._follow_ups: Dict[str, FollowUpSet] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _turn_model(self, conversation_id: str, turn: _Turn) -> ConversationTurn:
        return ConversationTurn(conversation_id=conversation_id, **turn.__dict__)

    def _require(self, conversation_id: str) -> List[_Turn]:
        turns = self._turns.get(conversation_id)
        if turns is None:
            raise NotFound("Conversation not found")
        return turns

    def create_conversation(self, conversation_id: str) -> None:
        with self._lock:
            self._turns.setdefault(conversation_id, [])
            self._follow_ups.setdefault(conversation_id, FollowUpSet(conversation_id=conversation_id))

    def has_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._turns

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            self._turns.pop(conversation_id, None)
            self._follow_ups.pop(conversation_id, None)

    def count_turns(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._require(conversation_id))

    def list_turns(self, conversation_id: str) -> List[ConversationTurn]:
        with self._lock:
            return [self._turn_model(conversation_id, t) for t in self._require(conversation_id)]

    def recent_turns(self, conversation_id: str, limit: int) -> List[ConversationTurn]:
        with self._lock:
            turns = self._require(conversation_id)
            window = turns[-limit:] if limit > 0 else []
            return [self._turn_model(conversation_id, t) for t in window]

    def append_turn(
        self,
        conversation_id: str,
        role: str,
        content: str,
        max_turns: int = MAX_TURNS,
    ) -> ConversationTurn:
        return self.append_exchange(conversation_id, [(role, content)], max_turns=max_turns)[0]

    def append_exchange(
        self,
        conversation_id: str,
        turns: Sequence[Tuple[str, str]],
        max_turns: int = MAX_TURNS,
    ) -> List[ConversationTurn]:
        """Append ``turns`` as one unit, continuing the sequence numbering.

        The quota is checked against the count before the write: an exchange
        accepted at ``max_turns - 1`` lands whole.
        """
        with self._lock:
            existing = self._require(conversation_id)
            if len(existing) >= max_turns:
                raise QuotaExceeded("Message limit reached for this conversation")
            now = self._now_iso()
            next_seq = existing[-1].sequence + 1 if existing else 0
            written: List[ConversationTurn] = []
            for offset, (role, content) in enumerate(turns):
                turn = _Turn(role=role, content=content, sequence=next_seq + offset, created_at=now)
                existing.append(turn)
                written.append(self._turn_model(conversation_id, turn))
            return written

    def get_follow_ups(self, conversation_id: str) -> FollowUpSet:
        with self._lock:
            self._require(conversation_id)
            current = self._follow_ups.get(conversation_id)
            return current or FollowUpSet(conversation_id=conversation_id)

    def replace_follow_ups(self, conversation_id: str, questions: Sequence[str]) -> FollowUpSet:
        with self._lock:
            self._require(conversation_id)
            follow_ups = FollowUpSet(
                conversation_id=conversation_id,
                questions=list(questions),
                updated_at=self._now_iso(),
            )
            self._follow_ups[conversation_id] = follow_ups
            return follow_ups


_store: Optional[ConversationStore] = None


def get_chat_store() -> ConversationStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("TUTOR_STORE_IMPL", "memory").lower()
    if impl != "memory":
        raise RuntimeError(f"Unsupported conversation store implementation: {impl}")
    _store = InMemoryConversationStore()
    return _store
