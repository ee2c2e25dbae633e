from __future__ import annotations

import json
import os
from typing import Any, List, Optional, Sequence

from openai import OpenAI

from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import GeneratedItem, GenerationRequest, GenerationResult, ItemSubtype

logger = get_logger(__name__)

MAX_QUESTION_CHARS = 500
MAX_ANSWER_CHARS = 200
MAX_CONTENT_CHARS = 12000
DISTRACTOR_COUNT = 3


class _OpenAIBacked:
    """Holds an OpenAI client; stays inactive with the dummy key."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini", dummy_key: str = "sk-dummy") -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", dummy_key)
        self.model = model
        self.dummy_key = dummy_key
        self._client: Optional[OpenAI] = None
        if self.api_key and self.api_key != self.dummy_key:
            self._client = OpenAI(api_key=self.api_key)

    @property
    def is_active(self) -> bool:
        return self._client is not None

    def _complete(self, system: str, user: str, *, temperature: float) -> str:
        if not self.is_active:
            raise RuntimeError("LLM client is not configured with a valid API key.")
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except Exception as exc:
            raise RuntimeError(f"OpenAI request failed: {exc}") from exc
        return response.choices[0].message.content or "{}"


class LLMFlashcardGenerator(_OpenAIBacked):
    """Turns study material into question/answer items."""

    def generate(self, request: GenerationRequest) -> GenerationResult:
        count = max(1, int(request.count or 1))
        subtype = request.subtype or ItemSubtype.QA.value
        prompt = (
            "You write flashcards for spaced-repetition study. "
            f"Create exactly {count} flashcards from the material the user provides. "
            "Each question must be answerable from the material alone and each answer must be short "
            "(one sentence or a few words). Do not repeat questions.\n"
            "Respond with strict JSON using the following schema:\n"
            '{"flashcards": [{"question": "...", "answer": "..."}]}'
        )
        content = self._complete(prompt, request.content[:MAX_CONTENT_CHARS], temperature=0.3)
        data = extract_json(content)
        raw_cards = data.get("flashcards", []) if isinstance(data, dict) else data
        items: List[GeneratedItem] = []
        for raw in raw_cards or []:
            if not isinstance(raw, dict):
                continue
            question = str(raw.get("question") or "").strip()
            answer = str(raw.get("answer") or "").strip()
            if not question or not answer:
                continue
            items.append(GeneratedItem(question=question, answer=answer, subtype=subtype))
        logger.info("Flashcards generated | requested=%s received=%s model=%s", count, len(items), self.model)
        return GenerationResult(items=items[:count], model_id=self.model, retry_count=0)


class LLMDistractorGenerator(_OpenAIBacked):
    """Produces plausible wrong answers for multiple-choice study."""

    def generate(self, question: str, answer: str, count: int = DISTRACTOR_COUNT) -> List[str]:
        question = question[:MAX_QUESTION_CHARS].strip()
        answer = answer[:MAX_ANSWER_CHARS].strip()
        if not question or not answer:
            raise ValueError("Question and answer must be non-empty")
        prompt = (
            "You are generating multiple choice options for a flashcard study system. "
            f"Generate exactly {count} plausible but INCORRECT answer options for the flashcard. "
            "Each option must be related to the topic, similar in length and format to the correct answer, "
            "distinct from the others and different from the correct answer.\n"
            "Respond with ONLY a JSON object in this exact format:\n"
            '{"distractors": ["option1", "option2", "option3"]}'
        )
        content = self._complete(prompt, f"Question: {question}\nCorrect Answer: {answer}", temperature=0.9)
        data = extract_json(content)
        distractors = [str(d).strip() for d in (data.get("distractors") or [])] if isinstance(data, dict) else []
        if not validate_distractors(distractors, answer, count=count):
            raise ValueError("Generated distractors failed validation")
        return distractors


def validate_distractors(distractors: Sequence[str], correct_answer: str, *, count: int = DISTRACTOR_COUNT) -> bool:
    """Exactly ``count`` non-empty, distinct options, none equal to the answer (case-insensitive)."""
    if len(distractors) != count:
        return False
    if any(not d.strip() for d in distractors):
        return False
    normalized = [d.strip().lower() for d in distractors]
    if correct_answer.strip().lower() in normalized:
        return False
    return len(set(normalized)) == count


def extract_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        for opener, closer in (("{", "}"), ("[", "]")):
            try:
                start = content.index(opener)
                end = content.rindex(closer)
                return json.loads(content[start : end + 1])
            except ValueError:
                continue
        logger.warning("Failed to parse JSON content: %s", content)
        return {}
