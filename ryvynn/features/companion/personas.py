"""
Avatar personas, age tiers and personality sliders.

Every transform here is a pure function of (text, profile). The composer
applies them in a fixed order: persona, then age tier, then sliders.
"""

import re
from typing import Dict, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field

PERSONAS = ("feminine", "masculine", "nonbinary")
AGE_TIERS = ("youth", "young_adult", "adult", "mature")

DEFAULT_PERSONA = "nonbinary"
DEFAULT_AGE_TIER = "adult"
DEFAULT_AVATAR_NAME = "Flame"

PersonaId = Literal["feminine", "masculine", "nonbinary"]
AgeTierId = Literal["youth", "young_adult", "adult", "mature"]


class PersonalitySliders(BaseModel):
    """1-10 dials.

    An unset dial leaves text alone, and so does a mid-range value (4-6; up
    to 7 for directness and formality). is_neutral() is true only when every
    dial is unset.
    """
    model_config = ConfigDict(frozen=True)

    warmth: Optional[int] = Field(default=None, ge=1, le=10)
    directness: Optional[int] = Field(default=None, ge=1, le=10)
    humor: Optional[int] = Field(default=None, ge=1, le=10)
    formality: Optional[int] = Field(default=None, ge=1, le=10)

    def is_neutral(self) -> bool:
        return all(v is None for v in (self.warmth, self.directness, self.humor, self.formality))


class AvatarProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    gender_persona: PersonaId = DEFAULT_PERSONA
    age_tier: AgeTierId = DEFAULT_AGE_TIER
    avatar_name: str = Field(default=DEFAULT_AVATAR_NAME, min_length=1, max_length=100)
    sliders: PersonalitySliders = PersonalitySliders()


PERSONA_STYLES: Dict[str, Dict[str, str]] = {
    "feminine": {
        "opener": "Thank you for sharing this with me.",
        "validation": "Your feelings make a lot of sense.",
    },
    "masculine": {
        "opener": "Thanks for telling me.",
        "validation": "That's a real thing to deal with.",
    },
    "nonbinary": {
        "opener": "I'm glad you reached out.",
        "validation": "What you're feeling is valid.",
    },
}

AGE_TIER_CONTEXT: Dict[str, Dict[str, str]] = {
    "youth": {
        "work": "school",
        "closing": "You can also talk to a trusted adult, like a parent, teacher or school counselor.",
    },
    "young_adult": {
        "work": "school or work",
        "closing": "Small steps still count, even on busy days.",
    },
    "adult": {
        "work": "work",
        "closing": "You know yourself best. Take what helps and leave the rest.",
    },
    "mature": {
        "work": "your daily routine",
        "closing": "You have handled hard seasons before, and that experience counts.",
    },
}

WARM_CLOSING = "You're not alone in this, friend. 💙"
HUMOR_BREATHE = "breathe (yes, that thing we all forget to do!)"

_EXPANSIONS = (
    ("you're", "you are"),
    ("You're", "You are"),
    ("can't", "cannot"),
    ("don't", "do not"),
    ("won't", "will not"),
    ("it's", "it is"),
    ("I'm", "I am"),
    ("That's", "That is"),
    ("you've", "you have"),
)


def _paragraphs(text: str):
    return text.split("\n\n")


def _join(paragraphs) -> str:
    return "\n\n".join(p for p in paragraphs if p)


def apply_persona(text: str, persona: str) -> str:
    """Wrap the reflection (first paragraph) in the persona's opener and validation."""
    style = PERSONA_STYLES.get(persona, PERSONA_STYLES[DEFAULT_PERSONA])
    paragraphs = _paragraphs(text)
    paragraphs[0] = f"{style['opener']} {paragraphs[0]} {style['validation']}"
    return _join(paragraphs)


def apply_age_tier(text: str, age_tier: str) -> str:
    """Swap generic context words for age-appropriate ones and add a closing line."""
    context = AGE_TIER_CONTEXT.get(age_tier, AGE_TIER_CONTEXT[DEFAULT_AGE_TIER])
    text = re.sub(r"\bwork\b", context["work"], text)
    return _join(_paragraphs(text) + [context["closing"]])


def apply_sliders(text: str, sliders: PersonalitySliders, persona: str = DEFAULT_PERSONA) -> str:
    adjusted = text

    if sliders.warmth is not None:
        if sliders.warmth > 6:
            adjusted = _join(_paragraphs(adjusted) + [WARM_CLOSING])
        elif sliders.warmth < 4:
            validation = PERSONA_STYLES.get(persona, PERSONA_STYLES[DEFAULT_PERSONA])["validation"]
            adjusted = adjusted.replace(f" {validation}", "")

    if sliders.directness is not None:
        if sliders.directness > 7:
            adjusted = re.sub(r"\byou might\b", "you should", adjusted)
            adjusted = re.sub(r"\bTry\b", "Do", adjusted)
            adjusted = re.sub(r"\btry to\b", "do your best to", adjusted)
        elif sliders.directness < 4:
            adjusted = re.sub(r"\bshould\b", "might want to", adjusted)
            adjusted = re.sub(r"\bTake\b", "Maybe take", adjusted)

    if sliders.humor is not None and sliders.humor > 6:
        adjusted = re.sub(r"\bbreathe\b", HUMOR_BREATHE, adjusted, count=1)

    if sliders.formality is not None:
        if sliders.formality > 7:
            for short, long in _EXPANSIONS:
                adjusted = re.sub(rf"\b{re.escape(short)}\b", long, adjusted)
        elif sliders.formality < 4:
            for short, long in _EXPANSIONS:
                adjusted = re.sub(rf"\b{re.escape(long)}\b", short, adjusted)

    return adjusted
