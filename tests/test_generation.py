"""Tests for prompt building, the template generator and output validation."""

from __future__ import annotations

import pytest

from studyrag.errors import UpstreamModelError
from studyrag.models import QuestionType
from studyrag.services.generation import TemplateGenerator, TransformersGenerator
from studyrag.services.prompts import INSUFFICIENT_CONTEXT, PromptBuilder, parse_prompt
from studyrag.services.schemas import NoteDraft, QuestionDraft, QuizDraft, parse_json_object

PASSAGES = [
    (
        "Chlorophyll absorbs red and blue light. The absorbed light drives photosynthesis in the chloroplast.",
        1,
        1,
    ),
    (
        "The Calvin cycle fixes carbon dioxide into sugar. For example, rubisco binds carbon dioxide in the stroma.",
        2,
        3,
    ),
]


def test_prompt_round_trips_through_parser():
    prompt = PromptBuilder().quiz(PASSAGES, 4)

    parsed = parse_prompt(prompt)

    assert parsed.task == "quiz"
    assert parsed.count == 4
    assert [(p.number, p.page_start, p.page_end) for p in parsed.passages] == [(1, 1, 1), (2, 2, 3)]
    assert parsed.passages[1].text.startswith("The Calvin cycle")


def test_answer_prompt_contains_only_question_and_passages():
    prompt = PromptBuilder().answer("What does chlorophyll absorb?", PASSAGES)

    assert "[1] (pages 1-1)" in prompt
    assert "[2] (pages 2-3)" in prompt
    assert parse_prompt(prompt).question == "What does chlorophyll absorb?"


def test_template_answer_cites_matching_passage():
    prompt = PromptBuilder().answer("What does chlorophyll absorb?", PASSAGES)

    answer = TemplateGenerator().complete(prompt, max_tokens=128, temperature=0.0)

    assert "[1]" in answer
    assert "Chlorophyll absorbs red and blue light." in answer


def test_template_answer_signals_missing_context():
    prompt = PromptBuilder().answer("Who painted the Mona Lisa?", PASSAGES)

    assert TemplateGenerator().complete(prompt, max_tokens=128, temperature=0.0) == INSUFFICIENT_CONTEXT


def test_template_note_validates():
    output = TemplateGenerator().complete(PromptBuilder().notes(PASSAGES), max_tokens=512, temperature=0.0)

    note = parse_json_object(output, NoteDraft).to_payload()

    assert note.topic
    assert note.summary.startswith("Chlorophyll absorbs")
    assert note.worked_example and "For example" in note.worked_example
    assert all(term.definition for term in note.glossary)


def test_template_quiz_has_requested_count_and_valid_mcqs():
    output = TemplateGenerator().complete(PromptBuilder().quiz(PASSAGES, 5), max_tokens=512, temperature=0.0)

    quiz = parse_json_object(output, QuizDraft)

    assert len(quiz.questions) == 5
    for question in quiz.questions:
        payload = question.to_payload()
        if payload.question_type is QuestionType.MCQ:
            assert len(payload.options) >= 2
            assert len(set(payload.options)) == len(payload.options)
            assert 0 <= payload.correct_option < len(payload.options)
        else:
            assert payload.sample_answer


def test_transformers_generator_falls_back_without_model():
    generator = TransformersGenerator()
    prompt = PromptBuilder().answer("What does chlorophyll absorb?", PASSAGES)

    assert generator.complete(prompt, max_tokens=64, temperature=0.0) == TemplateGenerator().complete(
        prompt, max_tokens=64, temperature=0.0
    )


@pytest.mark.parametrize(
    "question",
    [
        {"type": "mcq", "question": "Pick one", "options": ["a"], "correct_option": 0, "explanation": "x"},
        {"type": "mcq", "question": "Pick one", "options": ["a", "A"], "correct_option": 0, "explanation": "x"},
        {"type": "mcq", "question": "Pick one", "options": ["a", "b"], "correct_option": 2, "explanation": "x"},
        {"type": "mcq", "question": "Pick one", "options": ["a", "b"], "correct_option": 1, "explanation": ""},
        {"type": "short", "question": "Explain", "sample_answer": ""},
        {"type": "short", "question": "Explain", "sample_answer": "x", "options": ["a", "b"]},
    ],
)
def test_malformed_questions_are_rejected(question: dict):
    with pytest.raises(ValueError):
        QuestionDraft.model_validate(question)


def test_json_is_extracted_from_surrounding_prose():
    text = 'Sure! Here is the note:\n```json\n{"topic": "Light", "summary": "Plants use light."}\n```'

    assert parse_json_object(text, NoteDraft).topic == "Light"


@pytest.mark.parametrize("text", ["no json here", '{"questions": []}', '{"topic": 3'])
def test_unusable_model_output_is_an_upstream_error(text: str):
    with pytest.raises(UpstreamModelError):
        parse_json_object(text, QuizDraft)


def test_quiz_draft_payload_round_trip():
    draft = QuestionDraft.model_validate(
        {"type": "short", "difficulty": "hard", "question": "Why?", "sample_answer": "Because.", "explanation": ""}
    )
    payload = draft.to_payload()
    assert payload.question_type is QuestionType.SHORT
    assert payload.explanation == "Because."
    assert payload.difficulty == "hard"
    assert payload.options == ()
