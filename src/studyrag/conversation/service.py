"""Append-only conversation turns, one writer per document."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Sequence, Tuple
from uuid import uuid4

from studyrag.errors import InvalidTurnError
from studyrag.metrics.observability import get_logger
from studyrag.models import Citation, ConversationTurn, TurnRole
from studyrag.storage import JsonFileStore

Transcript = Tuple[ConversationTurn, ...]


class ConversationManager:
    """Stores the ordered turns of every document's conversation.

    Appends for one document are serialized by a per-document lock and each
    append rewrites the whole transcript atomically, so readers see either
    the old or the new sequence, never a partial one. Sequences start at 1
    and increase by one per turn.
    """

    def __init__(self, data_dir: Path) -> None:
        self._records: JsonFileStore[Transcript] = JsonFileStore(Path(data_dir) / "conversations", Transcript)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = get_logger("conversation")

    async def append_turn(
        self,
        document_id: str,
        role: TurnRole,
        content: str,
        citations: Sequence[Citation] = (),
        *,
        source_chunk_ids: Sequence[str] = (),
        no_relevant_context: bool = False,
    ) -> ConversationTurn:
        _validate(TurnRole(role), citations, no_relevant_context)
        async with self._lock_for(document_id):
            transcript = self._load(document_id)
            turn = _new_turn(
                document_id,
                _next_sequence(transcript),
                TurnRole(role),
                content,
                citations,
                source_chunk_ids,
                no_relevant_context,
            )
            self._records.write(document_id, transcript + (turn,))
        self._logger.info("conversation.appended", document_id=document_id, sequence=turn.sequence, role=turn.role.value)
        return turn

    async def append_exchange(
        self,
        document_id: str,
        question: str,
        answer: str,
        citations: Sequence[Citation] = (),
        *,
        source_chunk_ids: Sequence[str] = (),
        no_relevant_context: bool = False,
    ) -> tuple[ConversationTurn, ConversationTurn]:
        """Commit a user question and its assistant answer in one write."""

        _validate(TurnRole.ASSISTANT, citations, no_relevant_context)
        async with self._lock_for(document_id):
            transcript = self._load(document_id)
            sequence = _next_sequence(transcript)
            user_turn = _new_turn(document_id, sequence, TurnRole.USER, question, (), (), False)
            assistant_turn = _new_turn(
                document_id,
                sequence + 1,
                TurnRole.ASSISTANT,
                answer,
                citations,
                source_chunk_ids,
                no_relevant_context,
            )
            self._records.write(document_id, transcript + (user_turn, assistant_turn))
        self._logger.info(
            "conversation.exchange",
            document_id=document_id,
            sequence=assistant_turn.sequence,
            citation_count=len(assistant_turn.citations),
            no_relevant_context=no_relevant_context,
        )
        return user_turn, assistant_turn

    def history(self, document_id: str) -> List[ConversationTurn]:
        return list(self._load(document_id))

    async def delete(self, document_id: str) -> bool:
        async with self._lock_for(document_id):
            removed = self._records.delete(document_id)
        self._locks.pop(document_id, None)
        return removed

    def _load(self, document_id: str) -> Transcript:
        return self._records.read(document_id) or ()

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        return self._locks.setdefault(document_id, asyncio.Lock())


def _validate(role: TurnRole, citations: Sequence[Citation], no_relevant_context: bool) -> None:
    if role is TurnRole.USER:
        if no_relevant_context or citations:
            raise InvalidTurnError("User turns carry neither citations nor a context signal")
        return
    if no_relevant_context and citations:
        raise InvalidTurnError("An insufficient-context turn must not carry citations")
    if not no_relevant_context and not citations:
        raise InvalidTurnError("Assistant turns must cite their sources")


def _next_sequence(transcript: Transcript) -> int:
    return transcript[-1].sequence + 1 if transcript else 1


def _new_turn(
    document_id: str,
    sequence: int,
    role: TurnRole,
    content: str,
    citations: Sequence[Citation],
    source_chunk_ids: Sequence[str],
    no_relevant_context: bool,
) -> ConversationTurn:
    return ConversationTurn(
        id=uuid4().hex,
        document_id=document_id,
        sequence=sequence,
        role=role,
        content=content,
        citations=tuple(citations),
        source_chunk_ids=tuple(source_chunk_ids),
        no_relevant_context=no_relevant_context,
    )
