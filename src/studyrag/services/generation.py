"""Generation backends for StudyRAG."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Protocol, Sequence, Tuple

from studyrag.services.prompts import INSUFFICIENT_CONTEXT, ParsedPrompt, Passage, parse_prompt
from studyrag.text import split_sentences, tokenize

LOGGER = logging.getLogger(__name__)

_DIFFICULTIES = ("easy", "medium", "hard")


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for text generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None


class GenerationBackend(Protocol):
    """Protocol describing the language-model boundary."""

    def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        """Return the model's continuation of ``prompt``."""


class TemplateGenerator:
    """Deterministic extractive generator used for tests and offline environments.

    It reads the numbered passages back out of the prompt and answers with
    sentences copied from them, so every output stays grounded.
    """

    def complete(self, prompt: str, *, max_tokens: int = 512, temperature: float = 0.0) -> str:
        parsed = parse_prompt(prompt)
        if parsed.task == "answer":
            return self._answer(parsed)
        if parsed.task == "notes":
            return json.dumps(self._note(parsed.passages))
        if parsed.task == "quiz":
            return json.dumps({"questions": self._questions(parsed.passages, parsed.count)})
        raise ValueError(f"Unknown prompt task: {parsed.task or '<none>'}")

    def _answer(self, parsed: ParsedPrompt) -> str:
        query_tokens = set(tokenize(parsed.question))
        ranked: List[Tuple[int, int, int, str]] = []
        for order, (passage, sentence) in enumerate(_sentences(parsed.passages)):
            overlap = len(query_tokens.intersection(tokenize(sentence)))
            if overlap:
                ranked.append((-overlap, order, passage.number, sentence))
        if not ranked:
            return INSUFFICIENT_CONTEXT
        ranked.sort()
        picked: List[str] = []
        used_passages: set[int] = set()
        for _, _, number, sentence in ranked:
            if number in used_passages:
                continue
            used_passages.add(number)
            picked.append(f"{sentence} [{number}]")
            if len(picked) == 2:
                break
        return " ".join(picked)

    def _note(self, passages: Sequence[Passage]) -> Dict[str, object]:
        keywords = _keywords(passages)
        sentences = [sentence for _, sentence in _sentences(passages)]
        first_sentences = split_sentences(passages[0].text) if passages else []
        key_points: List[str] = []
        for passage in passages:
            lead = next(iter(split_sentences(passage.text)), "")
            if lead and lead not in key_points:
                key_points.append(lead)
        example = next(
            (s for s in sentences if "example" in s.lower() or "for instance" in s.lower()),
            None,
        )
        glossary = []
        for keyword in keywords[:3]:
            definition = next((s for s in sentences if keyword in tokenize(s)), None)
            if definition:
                glossary.append({"term": keyword, "definition": definition})
        return {
            "topic": " ".join(word.capitalize() for word in keywords[:3]) or "Overview",
            "summary": " ".join(first_sentences[:2]) or "No summary available.",
            "key_points": key_points[:5],
            "worked_example": example,
            "glossary": glossary,
        }

    def _questions(self, passages: Sequence[Passage], count: int) -> List[Dict[str, object]]:
        keywords = _keywords(passages)
        rank = {keyword: position for position, keyword in enumerate(keywords)}
        candidates = [
            sentence
            for _, sentence in _sentences(passages)
            if any(token in rank for token in tokenize(sentence))
        ]
        questions: List[Dict[str, object]] = []
        for number in range(max(1, count)):
            difficulty = _DIFFICULTIES[number % len(_DIFFICULTIES)]
            if not candidates:
                lead = passages[0].text if passages else "the passage"
                questions.append(
                    {
                        "type": "short",
                        "difficulty": difficulty,
                        "question": "Summarize the main idea of this section.",
                        "sample_answer": lead,
                        "explanation": lead,
                    }
                )
                continue
            sentence = candidates[number % len(candidates)]
            present = sorted({token for token in tokenize(sentence) if token in rank}, key=rank.__getitem__)
            answer = present[(number // len(candidates)) % len(present)]
            distractors = [keyword for keyword in keywords if keyword not in present][:3]
            if not distractors:
                questions.append(
                    {
                        "type": "short",
                        "difficulty": difficulty,
                        "question": f"What does the material say about {answer}?",
                        "sample_answer": sentence,
                        "explanation": sentence,
                    }
                )
                continue
            correct = number % (len(distractors) + 1)
            options = list(distractors)
            options.insert(correct, answer)
            blanked = re.sub(rf"\b{re.escape(answer)}\b", "_____", sentence, count=1, flags=re.IGNORECASE)
            questions.append(
                {
                    "type": "mcq",
                    "difficulty": difficulty,
                    "question": f"Which term completes the statement? {blanked}",
                    "options": options,
                    "correct_option": correct,
                    "explanation": sentence,
                }
            )
        return questions


def _sentences(passages: Sequence[Passage]) -> List[Tuple[Passage, str]]:
    return [(passage, sentence) for passage in passages for sentence in split_sentences(passage.text)]


def _keywords(passages: Sequence[Passage], limit: int = 12) -> List[str]:
    counts = Counter(
        token
        for passage in passages
        for token in tokenize(passage.text)
        if len(token) >= 4 and not token.isdigit()
    )
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [token for token, _ in ordered[:limit]]


class TransformersGenerator:
    """Generator that optionally calls into Hugging Face causal LMs via Transformers."""

    def __init__(self, config: GenerationConfig | None = None, fallback: GenerationBackend | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateGenerator()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("TransformersGenerator running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(
                self._config.model,
                trust_remote_code=True,
            )
            self._model = AutoModelForCausalLM.from_pretrained(
                self._config.model,
                trust_remote_code=True,
            )
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
                self._model.config.pad_token_id = self._tokenizer.pad_token_id
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded generation model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - defensive import
            LOGGER.warning("Falling back to template generator: %s", exc)
            self._tokenizer = None
            self._model = None

    def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        if self._tokenizer is None or self._model is None:
            return self._fallback.complete(prompt, max_tokens=max_tokens, temperature=temperature)
        if hasattr(self._tokenizer, "apply_chat_template"):
            text = self._tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True,
            )
        else:
            text = prompt
        import torch

        tokenized = self._tokenizer(
            text,
            return_tensors="pt",
            padding=True,
        )
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        prompt_length = input_ids.shape[1]
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        sampling = temperature > 0
        with torch.no_grad():
            output = self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=max_tokens,
                do_sample=sampling,
                temperature=temperature if sampling else None,
            )
        generated_tokens = output[0][prompt_length:]
        generated = self._tokenizer.decode(generated_tokens, skip_special_tokens=True)
        return generated.strip()
