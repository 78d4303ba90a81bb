"""
Crisis and emotion keyword classifier.

Pure, deterministic keyword matching over lower-cased text. High-level
crisis keywords are checked before medium before low, and within a level
the first keyword in list order wins. No learning and no external calls.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

CRISIS_HIGH = "high"
CRISIS_MEDIUM = "medium"
CRISIS_LOW = "low"

DEFAULT_EMOTION = "general"

# Priority order matters: first level with a hit wins
CRISIS_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (CRISIS_HIGH, (
        "kill myself",
        "end my life",
        "suicide",
        "want to die",
        "better off dead",
        "end it all",
        "no reason to live",
        "hurt myself",
        "take my life",
    )),
    (CRISIS_MEDIUM, (
        "self harm",
        "cut myself",
        "harm myself",
        "hate myself",
        "worthless",
        "hopeless",
        "no point",
        "give up",
    )),
    (CRISIS_LOW, (
        "depressed",
        "anxious",
        "scared",
        "alone",
        "sad",
        "worried",
        "stressed",
    )),
)

# Checked in this order; "lonely" hits the sad bucket first
EMOTION_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("anxious", ("anxious", "worried", "nervous", "scared", "panic", "afraid")),
    ("sad", ("sad", "down", "depressed", "lonely", "empty", "numb")),
    ("angry", ("angry", "mad", "furious", "frustrated", "irritated", "rage")),
    ("overwhelmed", ("overwhelmed", "too much", "can't handle", "breaking down")),
    ("stressed", ("stressed", "pressure", "tense", "strained")),
    ("lonely", ("lonely", "alone", "isolated", "nobody", "abandoned")),
)

EMOTIONS: Tuple[str, ...] = tuple(name for name, _ in EMOTION_PATTERNS) + (DEFAULT_EMOTION,)

SAFETY_MESSAGES: Dict[str, str] = {
    CRISIS_HIGH: (
        "If you are thinking about hurting yourself or ending your life, please reach out "
        "for help right now. Call 988 (Suicide and Crisis Lifeline) in the US, or your local "
        "emergency number. You can also text \"HELLO\" to 741741 (Crisis Text Line). "
        "You deserve support."
    ),
    CRISIS_MEDIUM: (
        "It sounds like you might be thinking about harming yourself. Please talk to someone "
        "who can help. You can call 988 in the US or your local crisis line. You don't have "
        "to go through this alone."
    ),
    CRISIS_LOW: (
        "If you need immediate help, call 988 (US) or your local crisis line. There are "
        "people ready to support you."
    ),
}


@dataclass(frozen=True)
class Classification:
    is_crisis: bool
    crisis_level: Optional[str]
    emotion: Optional[str]


def _normalize(text: str) -> str:
    # Curly apostrophes from mobile keyboards
    return (text or "").lower().replace("’", "'")


def detect_crisis_level(text: str, extra_keywords: Tuple[str, ...] = ()) -> Optional[str]:
    """Return "high", "medium", "low" or None.

    ``extra_keywords`` are treated as high-level matches.
    """
    lowered = _normalize(text)
    for level, keywords in CRISIS_KEYWORDS:
        if level == CRISIS_HIGH:
            keywords = keywords + tuple(extra_keywords)
        for keyword in keywords:
            if keyword in lowered:
                return level
    return None


def detect_emotion(text: str) -> str:
    lowered = _normalize(text)
    for emotion, keywords in EMOTION_PATTERNS:
        for keyword in keywords:
            if keyword in lowered:
                return emotion
    return DEFAULT_EMOTION


def classify(text: str) -> Classification:
    level = detect_crisis_level(text)
    if level in (CRISIS_HIGH, CRISIS_MEDIUM):
        # Safety message only; no styled reply is built
        return Classification(is_crisis=True, crisis_level=level, emotion=None)
    return Classification(is_crisis=False, crisis_level=level, emotion=detect_emotion(text))


def safety_message(level: str) -> str:
    """Fixed support text for a crisis level. Never personalised."""
    return SAFETY_MESSAGES.get(level, SAFETY_MESSAGES[CRISIS_LOW])
