"""Prompt construction for grounded answers, notes and quizzes.

Prompts are plain text split into ``### <Section>`` blocks. Context passages
are numbered ``[n]`` and carry their page span, so both a language model and
the offline ``TemplateGenerator`` can refer back to them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from studyrag.text import normalize_text

INSUFFICIENT_CONTEXT = "INSUFFICIENT_CONTEXT"

_SECTION_RE = re.compile(r"^### (?P<name>[A-Za-z ]+?)(?::[ ]*(?P<value>.*))?$", re.MULTILINE)
_PASSAGE_RE = re.compile(r"^\[(?P<number>\d+)\] \(pages (?P<start>\d+)-(?P<end>\d+)\)\n(?P<text>.*)$", re.MULTILINE)


@dataclass(frozen=True)
class Passage:
    number: int
    page_start: int
    page_end: int
    text: str


@dataclass(frozen=True)
class ParsedPrompt:
    task: str
    passages: List[Passage] = field(default_factory=list)
    question: str = ""
    count: int = 1


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    citation_prefix: str = "["
    citation_suffix: str = "]"
    max_passage_chars: int = 4000


class PromptBuilder:
    """Builds prompts for the generation backend."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_context(self, passages: Sequence[tuple[str, int, int]]) -> str:
        """Render ``(text, page_start, page_end)`` triples as numbered passages."""

        lines = []
        for index, (text, page_start, page_end) in enumerate(passages, start=1):
            prefix = f"{self._config.citation_prefix}{index}{self._config.citation_suffix}"
            body = normalize_text(text)[: self._config.max_passage_chars]
            lines.append(f"{prefix} (pages {page_start}-{page_end})\n{body}")
        return "\n\n".join(lines)

    def answer(self, question: str, passages: Sequence[tuple[str, int, int]]) -> str:
        return (
            "### Task: answer\n"
            "### Instructions\n"
            "You are a study assistant. Answer the question using only the numbered context passages. "
            "Cite every statement with the passage number in square brackets, e.g. [1]. "
            f"If the passages do not contain the answer, reply exactly: {INSUFFICIENT_CONTEXT}\n"
            "### Context\n"
            f"{self.build_context(passages)}\n"
            "### Question\n"
            f"{normalize_text(question)}\n"
            "### Answer\n"
        )

    def notes(self, passages: Sequence[tuple[str, int, int]]) -> str:
        return (
            "### Task: notes\n"
            "### Instructions\n"
            "Write one study note covering the numbered passages. Use only their content. "
            "Respond with a single JSON object with the keys: topic (string), summary (string), "
            "key_points (list of strings), worked_example (string or null), "
            'glossary (list of objects with "term" and "definition").\n'
            "### Context\n"
            f"{self.build_context(passages)}\n"
            "### Note\n"
        )

    def quiz(self, passages: Sequence[tuple[str, int, int]], count: int) -> str:
        return (
            "### Task: quiz\n"
            "### Instructions\n"
            f"Write {count} practice questions answerable from the numbered passages alone. "
            'Respond with a single JSON object {"questions": [...]} where each question has: '
            'type ("mcq" or "short"), difficulty ("easy", "medium" or "hard"), question, '
            "options (list of strings, mcq only), correct_option (0-based index, mcq only), "
            "explanation, sample_answer (short only). An mcq has exactly one correct option "
            "and every other option is a plausible distractor.\n"
            f"### Question count: {count}\n"
            "### Context\n"
            f"{self.build_context(passages)}\n"
            "### Questions\n"
        )


def parse_prompt(prompt: str) -> ParsedPrompt:
    """Recover task, passages, question and count from a built prompt."""

    sections: Dict[str, str] = {}
    bodies: Dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(prompt))
    for position, match in enumerate(matches):
        name = match.group("name").strip().lower()
        sections[name] = (match.group("value") or "").strip()
        body_end = matches[position + 1].start() if position + 1 < len(matches) else len(prompt)
        bodies[name] = prompt[match.end() : body_end].strip()
    passages = [
        Passage(
            number=int(match.group("number")),
            page_start=int(match.group("start")),
            page_end=int(match.group("end")),
            text=match.group("text").strip(),
        )
        for match in _PASSAGE_RE.finditer(bodies.get("context", ""))
    ]
    count_value = sections.get("question count", "")
    return ParsedPrompt(
        task=sections.get("task", ""),
        passages=passages,
        question=bodies.get("question", ""),
        count=int(count_value) if count_value.isdigit() else 1,
    )
