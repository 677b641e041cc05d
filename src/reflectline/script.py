"""What a call says: the prompt list plus the greeting and closing lines."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reflectline.session import Prompt

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

DEFAULT_PROMPTS = [
    Prompt("What are you grateful for today?", prompt_id="gratitude"),
    Prompt("What is one thing you learned today?", prompt_id="learning"),
    Prompt("On a scale of 1 to 10, how would you rate your day?", prompt_id="rating", is_rating=True),
]


@dataclass
class CallScript:
    prompts: list = field(default_factory=lambda: list(DEFAULT_PROMPTS))
    display_name: str = ""
    name_pronunciation: str = ""
    timezone: str = DEFAULT_TIMEZONE


def greeting(script: CallScript) -> str:
    name = script.name_pronunciation or script.display_name or "there"
    return f"Hi {name}, it's time for your daily journal entry!"


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def closing(script: CallScript, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    try:
        local = now.astimezone(ZoneInfo(script.timezone))
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Unknown timezone {script.timezone!r}: {e}")
        return "Thank you for taking the time to reflect. Have a wonderful day!"
    return f"Thank you for taking the time to reflect. Have a wonderful {time_of_day(local.hour)}!"


class StaticScriptProvider:
    """Hands every call the same prompt set."""

    def __init__(self, prompts: Optional[list] = None, timezone_name: str = DEFAULT_TIMEZONE):
        self.prompts = list(prompts or DEFAULT_PROMPTS)
        self.timezone_name = timezone_name

    async def script_for(self, queued_call) -> CallScript:
        return CallScript(prompts=list(self.prompts), timezone=self.timezone_name)
