from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from studyrag.conversation import ConversationManager
from studyrag.errors import InvalidTurnError
from studyrag.models import Citation, TurnRole

CITATION = Citation(document_id="doc-1", page_start=3, page_end=4)


@pytest.mark.asyncio
async def test_turns_are_ordered_and_persisted(tmp_path: Path):
    manager = ConversationManager(tmp_path)

    await manager.append_turn("doc-1", TurnRole.USER, "What is osmosis?")
    await manager.append_turn("doc-1", TurnRole.ASSISTANT, "Water crossing a membrane [1].", [CITATION])

    history = ConversationManager(tmp_path).history("doc-1")
    assert [turn.sequence for turn in history] == [1, 2]
    assert [turn.role for turn in history] == [TurnRole.USER, TurnRole.ASSISTANT]
    assert history[1].citations == (CITATION,)


@pytest.mark.asyncio
async def test_assistant_turn_without_citations_is_refused(tmp_path: Path):
    manager = ConversationManager(tmp_path)

    with pytest.raises(InvalidTurnError):
        await manager.append_turn("doc-1", TurnRole.ASSISTANT, "Uncited claim.")
    with pytest.raises(InvalidTurnError):
        await manager.append_turn("doc-1", TurnRole.ASSISTANT, "Both.", [CITATION], no_relevant_context=True)
    with pytest.raises(InvalidTurnError):
        await manager.append_turn("doc-1", TurnRole.USER, "Cited question?", [CITATION])

    assert manager.history("doc-1") == []


@pytest.mark.asyncio
async def test_insufficient_context_turn_is_accepted_without_citations(tmp_path: Path):
    manager = ConversationManager(tmp_path)

    user, assistant = await manager.append_exchange(
        "doc-1",
        "Who won the 1998 World Cup?",
        "Not covered by this document.",
        no_relevant_context=True,
    )

    assert (user.sequence, assistant.sequence) == (1, 2)
    assert assistant.no_relevant_context
    assert assistant.citations == ()


@pytest.mark.asyncio
async def test_concurrent_appends_get_unique_increasing_sequences(tmp_path: Path):
    manager = ConversationManager(tmp_path)

    await asyncio.gather(
        *(
            manager.append_exchange("doc-1", f"question {index}", f"answer {index} [1]", [CITATION])
            for index in range(10)
        )
    )

    sequences = [turn.sequence for turn in manager.history("doc-1")]
    assert sequences == list(range(1, 21))


@pytest.mark.asyncio
async def test_conversations_are_per_document_and_deletable(tmp_path: Path):
    manager = ConversationManager(tmp_path)
    await manager.append_turn("doc-1", TurnRole.USER, "first")
    await manager.append_turn("doc-2", TurnRole.USER, "second")

    assert await manager.delete("doc-1")

    assert manager.history("doc-1") == []
    assert [turn.content for turn in manager.history("doc-2")] == ["second"]
