import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from reflectline.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

COMPLETION_PROMPT = """You decide whether a person has finished answering a spoken reflection prompt.
The answer comes from live speech-to-text, so expect natural speech patterns and missing punctuation.

Rules:
- An answer is complete if it meaningfully addresses the prompt. Brief, genuine answers count.
- Trailing off, a dangling conjunction, or a clear mid-sentence stop means the person is still talking.
- Longer pauses (more than 3 seconds) suggest the person is done.

Return ONLY valid JSON: {"isComplete": true|false, "confidence": 0.0-1.0, "reasoning": "short explanation"}"""

RATING_PROMPT = """The person was asked to rate their day on a scale of 1 to 10 and answered out loud.
Read the rating they gave.

Return ONLY valid JSON: {"rating": 1-10 or null, "confidence": 0.0-1.0}"""

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}


@dataclass(frozen=True)
class Verdict:
    is_complete: bool
    confidence: float
    reason: str = ""


class JudgmentError(Exception):
    """The judgment service was unreachable or returned something unusable."""


def _parse_confidence(raw) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise JudgmentError(f"confidence is not a number: {raw!r}")
    if not 0.0 <= raw <= 1.0:
        raise JudgmentError(f"confidence out of range: {raw!r}")
    return float(raw)


def parse_verdict(content: str) -> Verdict:
    """Parse the model's JSON reply into a Verdict, rejecting malformed output."""
    match = re.search(r"\{.*\}", content or "", re.DOTALL)
    if not match:
        raise JudgmentError("no JSON object in judgment reply")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise JudgmentError(f"invalid JSON in judgment reply: {e}") from e
    is_complete = data.get("isComplete")
    if not isinstance(is_complete, bool):
        raise JudgmentError(f"isComplete is not a boolean: {is_complete!r}")
    return Verdict(
        is_complete=is_complete,
        confidence=_parse_confidence(data.get("confidence")),
        reason=str(data.get("reasoning", "")),
    )


def parse_rating(text: str) -> tuple[Optional[int], float]:
    """Local reading of a spoken 1-10 rating, used when the judgment service is down."""
    lower = (text or "").lower()
    for match in re.finditer(r"\b(\d{1,2})\b", lower):
        value = int(match.group(1))
        if 1 <= value <= 10:
            return value, 0.6
    for word in re.findall(r"[a-z]+", lower):
        if word in NUMBER_WORDS:
            return NUMBER_WORDS[word], 0.6
    return None, 0.0


class SemanticJudge:
    """OpenAI-backed judgment client.

    Wrapped in a circuit breaker: after 3 consecutive failures the service is
    skipped for 60s and callers get a ``JudgmentError`` immediately, which the
    completion detector answers with its local heuristics.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "",
        timeout: float = 4.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.model = model or os.getenv("JUDGE_MODEL", "gpt-4o-mini")
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="judgment",
        )
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    async def close(self):
        await self._client.aclose()

    async def _ask(self, system: str, user: str, max_tokens: int) -> str:
        if not self._circuit.should_try():
            raise JudgmentError("judgment circuit breaker open")
        try:
            resp = await self._client.post(
                OPENAI_CHAT_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "temperature": 0.1,
                    "max_tokens": max_tokens,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            self._circuit.record_failure()
            raise JudgmentError(f"judgment request failed: {e}") from e
        self._circuit.record_success()
        return content

    async def judge(self, prompt_text: str, answer_text: str, silence_seconds: float) -> Verdict:
        content = await self._ask(
            COMPLETION_PROMPT,
            f'Prompt: "{prompt_text}"\n\n'
            f'Answer so far: "{answer_text}"\n\n'
            f"Pause duration: {silence_seconds:.1f} seconds\n\n"
            f"Is this answer complete?",
            max_tokens=120,
        )
        return parse_verdict(content)

    async def extract_rating(self, answer_text: str) -> tuple[Optional[int], float]:
        try:
            content = await self._ask(RATING_PROMPT, f'Answer: "{answer_text}"', max_tokens=40)
            data = json.loads(content)
            rating = data.get("rating")
            confidence = _parse_confidence(data.get("confidence"))
        except (JudgmentError, json.JSONDecodeError, AttributeError) as e:
            logger.warning("Rating extraction fell back to local parser: %s", e)
            return parse_rating(answer_text)
        if rating is None:
            return None, confidence
        if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 10:
            logger.warning("Rating extraction returned unusable value %r", rating)
            return parse_rating(answer_text)
        return int(rating), confidence
