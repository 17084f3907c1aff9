"""Pydantic models validating structured model output for notes and quizzes."""

from __future__ import annotations

from typing import List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, model_validator

from studyrag.errors import UpstreamModelError
from studyrag.models import GlossaryTerm, NotePayload, QuestionType, QuizPayload

ModelT = TypeVar("ModelT", bound=BaseModel)


class GlossaryTermDraft(BaseModel):
    term: str = Field(..., min_length=1)
    definition: str = Field(..., min_length=1)


class NoteDraft(BaseModel):
    topic: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=1)
    key_points: List[str] = Field(default_factory=list)
    worked_example: Optional[str] = None
    glossary: List[GlossaryTermDraft] = Field(default_factory=list)

    def to_payload(self) -> NotePayload:
        return NotePayload(
            topic=self.topic.strip(),
            summary=self.summary.strip(),
            key_points=tuple(point.strip() for point in self.key_points if point.strip()),
            worked_example=(self.worked_example or "").strip() or None,
            glossary=tuple(GlossaryTerm(term=item.term.strip(), definition=item.definition.strip()) for item in self.glossary),
        )


class QuestionDraft(BaseModel):
    type: Literal["mcq", "short"]
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    question: str = Field(..., min_length=1)
    options: List[str] = Field(default_factory=list)
    correct_option: Optional[int] = None
    explanation: str = ""
    sample_answer: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "QuestionDraft":
        if self.type == "mcq":
            options = [option.strip() for option in self.options]
            if len(options) < 2 or not all(options):
                raise ValueError("An mcq needs at least two non-empty options")
            if len({option.casefold() for option in options}) != len(options):
                raise ValueError("mcq options must be distinct")
            if self.correct_option is None or not 0 <= self.correct_option < len(options):
                raise ValueError("mcq correct_option must index exactly one option")
            if not self.explanation.strip():
                raise ValueError("An mcq needs an explanation")
        else:
            if not (self.sample_answer or "").strip():
                raise ValueError("A short-answer question needs a sample_answer")
            if self.options or self.correct_option is not None:
                raise ValueError("A short-answer question has no options")
        return self

    def to_payload(self) -> QuizPayload:
        if self.type == "mcq":
            return QuizPayload(
                question_type=QuestionType.MCQ,
                question=self.question.strip(),
                explanation=self.explanation.strip(),
                difficulty=self.difficulty,
                options=tuple(option.strip() for option in self.options),
                correct_option=self.correct_option,
            )
        sample = (self.sample_answer or "").strip()
        return QuizPayload(
            question_type=QuestionType.SHORT,
            question=self.question.strip(),
            explanation=self.explanation.strip() or sample,
            difficulty=self.difficulty,
            sample_answer=sample,
        )


class QuizDraft(BaseModel):
    questions: List[QuestionDraft] = Field(..., min_length=1)


def parse_json_object(text: str, model: Type[ModelT]) -> ModelT:
    """Validate the outermost JSON object found in ``text`` against ``model``.

    Models often wrap JSON in prose or code fences, so everything outside the
    first ``{`` and the last ``}`` is ignored.
    """

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise UpstreamModelError(f"Model output holds no JSON object for {model.__name__}")
    try:
        return model.model_validate_json(text[start : end + 1])
    except ValidationError as exc:
        raise UpstreamModelError(f"Model output is not a valid {model.__name__}: {exc}") from exc
