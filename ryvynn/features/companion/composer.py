"""
Response composer.

Picks one reflection, one next step and one coping tool for an emotion
using an injected random source, then applies persona, age-tier and
(optionally) slider transforms in that order.
"""

import random
from dataclasses import dataclass
from typing import List, Optional

from ryvynn.features.companion.classifier import DEFAULT_EMOTION
from ryvynn.features.companion.personas import (
    PersonalitySliders,
    apply_age_tier,
    apply_persona,
    apply_sliders,
)
from ryvynn.features.companion.templates import COPING_TOOLS, NEXT_STEPS, REFLECTIONS


@dataclass(frozen=True)
class ComposerOptions:
    reflections: List[str]
    next_steps: List[str]
    coping_tools: List[str]


@dataclass(frozen=True)
class BaseReply:
    reflection: str
    next_step: str
    coping_tool: str

    def render(self) -> str:
        return f"{self.reflection}\n\n{self.next_step}\n\n{self.coping_tool}"


class ResponseComposer:
    def __init__(self, rng: Optional[random.Random] = None):
        # Tests pass a seeded Random; production gets a fresh one
        self.rng = rng if rng is not None else random.Random()

    def options_for(self, emotion: Optional[str]) -> ComposerOptions:
        key = emotion if emotion in REFLECTIONS else DEFAULT_EMOTION
        return ComposerOptions(
            reflections=list(REFLECTIONS[key]),
            next_steps=list(NEXT_STEPS[key]),
            coping_tools=list(COPING_TOOLS[key]),
        )

    def pick(self, emotion: Optional[str]) -> BaseReply:
        options = self.options_for(emotion)
        return BaseReply(
            reflection=self.rng.choice(options.reflections),
            next_step=self.rng.choice(options.next_steps),
            coping_tool=self.rng.choice(options.coping_tools),
        )

    def compose(
        self,
        emotion: Optional[str],
        age_tier: str,
        persona: str,
        sliders: Optional[PersonalitySliders] = None,
    ) -> str:
        text = self.pick(emotion).render()
        text = apply_persona(text, persona)
        text = apply_age_tier(text, age_tier)
        if sliders is not None and not sliders.is_neutral():
            text = apply_sliders(text, sliders, persona)
        return text
