"""Turn-completion detection.

Decides whether a spoken answer is finished.  Layers, in order:

  1. Still speaking: silence under ``min_silence`` is never complete and
     never reaches the judgment service.
  2. Hard ceiling: a long pause over a non-trivial answer is complete no
     matter what the judgment service would say.
  3. Semantic judgment: complete when the service says so with at least
     ``confidence_bar`` confidence.
  4. Heuristics: if the service is unreachable, times out or returns
     malformed output, a deterministic local rule decides.

Between them a conversation cannot stall on an indecisive or dead
judgment service.
"""

import asyncio
import logging
import re
from dataclasses import dataclass

from reflectline.judge import JudgmentError, Verdict

logger = logging.getLogger(__name__)

TERMINAL_PUNCTUATION = re.compile(r"[.!?]$")


@dataclass
class DetectorConfig:
    min_silence: float = 3.0
    hard_ceiling: float = 12.0
    ceiling_min_chars: int = 20
    confidence_bar: float = 0.75
    judge_timeout: float = 4.0

    # Fallback heuristics
    long_pause: float = 5.0
    medium_pause: float = 3.0
    fallback_min_chars: int = 10

    @classmethod
    def from_settings(cls, settings) -> "DetectorConfig":
        return cls(
            min_silence=settings.min_silence_seconds,
            hard_ceiling=settings.hard_ceiling_seconds,
            ceiling_min_chars=settings.ceiling_min_chars,
            confidence_bar=settings.confidence_bar,
            judge_timeout=settings.judge_timeout_seconds,
        )


def heuristic_verdict(answer_text: str, silence_seconds: float, config: DetectorConfig) -> Verdict:
    text = (answer_text or "").strip()
    has_content = len(text) > config.fallback_min_chars

    if silence_seconds > config.long_pause and has_content:
        return Verdict(True, 0.7, "fallback: long pause with content")
    if silence_seconds > config.medium_pause and has_content and TERMINAL_PUNCTUATION.search(text):
        return Verdict(True, 0.6, "fallback: finished sentence with pause")
    return Verdict(False, 0.5, "fallback: not enough signal")


class CompletionDetector:
    def __init__(self, judge, config: DetectorConfig | None = None):
        self.judge = judge
        self.config = config or DetectorConfig()

    async def check(self, prompt_text: str, answer_text: str, silence_seconds: float) -> Verdict:
        cfg = self.config
        content = (answer_text or "").strip()

        if silence_seconds < cfg.min_silence:
            return Verdict(False, 0.0, "still speaking")

        if silence_seconds > cfg.hard_ceiling and len(content) > cfg.ceiling_min_chars:
            logger.info("Hard ceiling reached after %.1fs of silence", silence_seconds)
            return Verdict(True, 1.0, "hard ceiling")

        try:
            verdict = await asyncio.wait_for(
                self.judge.judge(prompt_text, content, silence_seconds),
                timeout=cfg.judge_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Judgment timed out after %.1fs, using heuristics", cfg.judge_timeout)
            return heuristic_verdict(content, silence_seconds, cfg)
        except JudgmentError as e:
            logger.warning("Judgment unavailable (%s), using heuristics", e)
            return heuristic_verdict(content, silence_seconds, cfg)
        except Exception:
            logger.exception("Judgment client raised, using heuristics")
            return heuristic_verdict(content, silence_seconds, cfg)

        if not isinstance(verdict, Verdict):
            logger.warning("Judgment returned %r, using heuristics", verdict)
            return heuristic_verdict(content, silence_seconds, cfg)

        if verdict.is_complete and verdict.confidence >= cfg.confidence_bar:
            return verdict
        return Verdict(False, verdict.confidence, verdict.reason or "judgment: not complete")
