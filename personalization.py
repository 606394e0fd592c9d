"""Learner-facing message catalogue for encouragement and completion screens."""

from __future__ import annotations

import json
import os
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass(frozen=True)
class MessageCatalogue:
    learner_name: str = "Learner"
    motivational: List[str] = field(
        default_factory=lambda: [
            "Great job, {name}! You're getting smarter every day!",
            "Wow {name}, that was fantastic! Keep it up!",
            "You're brilliant, {name}! Let's keep learning together!",
            "Excellent thinking, {name}! You're becoming such a smart student!",
        ]
    )
    achievements: Dict[str, str] = field(
        default_factory=lambda: {
            "excellent": "Outstanding work, {name}! You're a superstar!",
            "good": "Well done, {name}! You're learning so well!",
            "improving": "Keep going, {name}! You're getting better and better!",
            "encouragement": "That's okay, {name}! Every mistake helps you learn!",
        }
    )
    subject_intros: Dict[str, str] = field(
        default_factory=lambda: {
            "math": "Let's explore the magical world of numbers, {name}!",
            "english": "Time for some word adventures, {name}! Ready to read and write?",
            "science": "Let's discover amazing things about our world, {name}!",
        }
    )

    def _fill(self, template: str) -> str:
        return template.format(name=self.learner_name)

    def motivational_message(self, rng: Optional[random.Random] = None) -> str:
        return self._fill((rng or random).choice(self.motivational))

    def encouragement(self) -> str:
        return self._fill(self.achievements["encouragement"])

    def achievement_message(self, accuracy: int) -> str:
        if accuracy >= 90:
            key = "excellent"
        elif accuracy >= 70:
            key = "good"
        else:
            key = "improving"
        return self._fill(self.achievements[key])

    def subject_intro(self, subject: str) -> Optional[str]:
        template = self.subject_intros.get(subject)
        return self._fill(template) if template else None

    def feedback_toast(self, is_correct: bool, rng: Optional[random.Random] = None) -> str:
        return self.motivational_message(rng) if is_correct else self.encouragement()


def load_catalogue(path: str | Path | None = None) -> MessageCatalogue:
    """Build the catalogue from ``LEARNER_NAME`` and an optional JSON override file."""

    name = os.getenv("LEARNER_NAME") or "Learner"
    if path is None:
        return MessageCatalogue(learner_name=name)

    with Path(path).open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError("Message catalogue file must contain a JSON object")
    defaults = MessageCatalogue()
    return MessageCatalogue(
        learner_name=str(raw.get("learnerName") or name),
        motivational=list(raw.get("motivational") or defaults.motivational),
        achievements={**defaults.achievements, **(raw.get("achievements") or {})},
        subject_intros={**defaults.subject_intros, **(raw.get("subjectIntros") or {})},
    )
