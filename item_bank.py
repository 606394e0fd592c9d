"""Question bank: loads curriculum content and serves questions and sets by id."""
from __future__ import annotations

import json
import logging
import os
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
import yaml

from engines.base import QuestionRepository
from engines.validation import ContentValidationError, MissingQuestionError, parse_app_data, validate_app_data
from schemas import SUBJECTS, AppData, Question, QuestionSet

logger = logging.getLogger("qb.content")

COMPREHENSIVE_FILE = "comprehensive-questions.json"
_BUNDLE_SUFFIXES = (".json", ".yaml", ".yml")


# ----------------------------------------------------------------------
# file loading
# ----------------------------------------------------------------------
def _load_structured(path: Path) -> Any:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    try:
        if suffix in {".yml", ".yaml"}:
            return yaml.safe_load(text)
        if suffix == ".json":
            return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ContentValidationError(f"Could not parse {path}: {exc}") from exc
    raise ContentValidationError(f"Unsupported content format: {path}")


def _is_legacy_payload(raw: Any) -> bool:
    if not isinstance(raw, dict) or "grade" not in raw or "sets" in raw:
        return False
    questions = raw.get("questions") or []
    return bool(questions) and isinstance(questions[0], dict) and "options" in questions[0]


def _difficulty_for_grade(grade: int) -> str:
    if grade <= 2:
        return "easy"
    if grade <= 4:
        return "medium"
    return "hard"


def convert_legacy_file(raw: Dict[str, Any]) -> AppData:
    """Convert a flat ``grade-<n>-<subject>.json`` file into a bundle.

    Each entry becomes an mcq_single question whose answer is the text of
    the correct option; the file becomes one random-order set with one
    minute allowed per question.
    """

    try:
        grade = int(raw["grade"])
        subject = str(raw["subject"])
        entries = list(raw.get("questions") or [])
    except (KeyError, TypeError, ValueError) as exc:
        raise ContentValidationError(f"Legacy question file is missing grade/subject: {exc}") from exc

    questions: List[Dict[str, Any]] = []
    for entry in entries:
        options = [str(option) for option in entry.get("options") or []]
        correct = entry.get("correct")
        if not isinstance(correct, int) or not 0 <= correct < len(options):
            raise ContentValidationError(f"Legacy question {entry.get('id')} has an invalid 'correct' index")
        qid = str(entry["id"])
        questions.append(
            {
                "id": qid,
                "subject": subject,
                "topic": f"Grade {grade}",
                "skill": subject[:1].upper() + subject[1:],
                "prompt": entry.get("question", ""),
                "type": "mcq_single",
                "choices": [{"id": f"{qid}_choice_{i}", "text": option} for i, option in enumerate(options)],
                "answer": options[correct],
                "explanation": entry.get("explanation"),
                "difficulty": _difficulty_for_grade(grade),
                "tags": [f"grade-{grade}", subject],
            }
        )

    sets = [
        {
            "id": f"grade-{grade}-{subject}",
            "title": raw.get("title") or f"Grade {grade} {subject}",
            "subject": subject,
            "description": raw.get("description"),
            "questionIds": [q["id"] for q in questions],
            "recommendedOrder": "random",
            "timeLimitSeconds": len(questions) * 60 or None,
        }
    ]
    return parse_app_data({"questions": questions, "sets": sets})


def load_bundle_file(path: str | Path) -> AppData:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Question file not found: {path}")
    raw = _load_structured(path)
    if _is_legacy_payload(raw):
        return convert_legacy_file(raw)
    return parse_app_data(raw)


def _subject_file(subject_dir: Path, subject: str) -> Optional[Path]:
    for suffix in _BUNDLE_SUFFIXES:
        candidate = subject_dir / f"{subject}-questions{suffix}"
        if candidate.exists():
            return candidate
    return None


def _combine(bundles: Iterable[AppData]) -> AppData:
    questions: List[Question] = []
    sets: List[QuestionSet] = []
    for bundle in bundles:
        questions.extend(bundle.questions)
        sets.extend(bundle.sets)
    combined = AppData(questions=questions, sets=sets)
    validate_app_data(combined)
    return combined


def has_grade_data(root: str | Path, grade: int) -> bool:
    root = Path(root)
    if (root / f"grade-{grade}").is_dir():
        return True
    return any((root / f"grade-{grade}-{subject}.json").exists() for subject in SUBJECTS)


def load_grade_data(root: str | Path, grade: int) -> AppData:
    grade_dir = Path(root) / f"grade-{grade}"
    if not has_grade_data(root, grade):
        raise FileNotFoundError(f"Grade {grade} data not found")

    bundles: List[AppData] = []
    for subject in SUBJECTS:
        subject_file = _subject_file(grade_dir / subject, subject)
        legacy_file = Path(root) / f"grade-{grade}-{subject}.json"
        if subject_file is not None:
            bundle = load_bundle_file(subject_file)
        elif legacy_file.exists():
            bundle = load_bundle_file(legacy_file)
        else:
            logger.warning("%s data not found for Grade %d", subject, grade)
            continue
        logger.info("Loaded %d %s questions, %d sets", len(bundle.questions), subject, len(bundle.sets))
        bundles.append(bundle)
    return _combine(bundles)


def available_grades(root: str | Path) -> List[int]:
    root = Path(root)
    if not root.is_dir():
        return []
    grades: set[int] = set()
    for entry in root.iterdir():
        if entry.is_dir() and entry.name.startswith("grade-"):
            try:
                grades.add(int(entry.name[len("grade-"):]))
            except ValueError:
                continue
    return sorted(grades)


def grade_metadata(root: str | Path, grade: int) -> Dict[str, Any]:
    data = load_grade_data(root, grade)
    counts = {subject: sum(1 for q in data.questions if q.subject == subject) for subject in SUBJECTS}
    return {
        "grade": grade,
        "totalQuestions": len(data.questions),
        "totalSets": len(data.sets),
        "subjects": list(SUBJECTS),
        "questionCounts": counts,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "description": f"Grade {grade} content",
    }


def fetch_remote_bundle(url: str, *, timeout: float = 10.0) -> AppData:
    """Download and validate a bundle served as JSON (e.g. by ``GET /questions``)."""

    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    try:
        raw = response.json()
    except ValueError as exc:
        raise ContentValidationError(f"Remote question bank at {url} did not return JSON") from exc
    data = parse_app_data(raw)
    if not data.questions:
        raise ContentValidationError(f"No questions found in remote question bank at {url}")
    return data


# ----------------------------------------------------------------------
# bank
# ----------------------------------------------------------------------
class QuestionBank(QuestionRepository):
    """In-memory repository of validated questions and sets."""

    def __init__(self, data: AppData | None = None, *, source: str = "<in-memory>") -> None:
        self.source = source
        self._questions: Dict[str, Question] = {}
        self._sets: Dict[str, QuestionSet] = {}
        if data is not None:
            validate_app_data(data)
            self._index(data.questions, data.sets)

    def _index(self, questions: Iterable[Question], sets: Iterable[QuestionSet]) -> None:
        for question in questions:
            self._questions[question.id] = question
        for qset in sets:
            self._sets[qset.id] = qset

    # ------------------------------------------------------------------
    # alternative constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_file(cls, path: str | Path) -> "QuestionBank":
        return cls(load_bundle_file(path), source=str(path))

    @classmethod
    def from_url(cls, url: str, *, timeout: float = 10.0) -> "QuestionBank":
        data = fetch_remote_bundle(url, timeout=timeout)
        logger.info("Loaded %d questions and %d sets from %s", len(data.questions), len(data.sets), url)
        return cls(data, source=url)

    @classmethod
    def from_directory(cls, root: str | Path, grade: int = 1) -> "QuestionBank":
        """Load ``grade-<n>`` content, falling back to the comprehensive bundle.

        An empty bank is returned (and logged) when neither exists.
        """

        root = Path(root)
        if has_grade_data(root, grade):
            data = load_grade_data(root, grade)
            logger.info("Total loaded: %d questions, %d sets for grade %d", len(data.questions), len(data.sets), grade)
            return cls(data, source=str(root / f"grade-{grade}"))

        logger.warning("Grade %d directory not found, falling back to comprehensive data", grade)
        comprehensive = root / COMPREHENSIVE_FILE
        if comprehensive.exists():
            logger.info("Loaded comprehensive data as fallback")
            return cls.from_file(comprehensive)

        logger.error("No question data found under %s", root)
        return cls(source=str(root))

    # ------------------------------------------------------------------
    # repository contract
    # ------------------------------------------------------------------
    def get_set(self, set_id: str) -> Optional[QuestionSet]:
        return self._sets.get(set_id)

    def get_question(self, question_id: str) -> Optional[Question]:
        return self._questions.get(question_id)

    def get_questions(self, ids: Sequence[str]) -> List[Question]:
        missing = [qid for qid in ids if qid not in self._questions]
        if missing:
            raise MissingQuestionError(missing)
        return [self._questions[qid] for qid in ids]

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def questions(self) -> List[Question]:
        return list(self._questions.values())

    @property
    def sets(self) -> List[QuestionSet]:
        return list(self._sets.values())

    def to_app_data(self) -> AppData:
        return AppData(questions=self.questions, sets=self.sets)

    def filter_questions(
        self,
        *,
        subject: Optional[str] = None,
        topic: Optional[str] = None,
        skill: Optional[str] = None,
        difficulty: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[Question]:
        results = self.questions
        if subject:
            results = [q for q in results if q.subject == subject]
        if topic:
            results = [q for q in results if q.topic == topic]
        if skill:
            results = [q for q in results if q.skill == skill]
        if difficulty:
            results = [q for q in results if q.difficulty == difficulty]
        if tags:
            wanted = set(tags)
            results = [q for q in results if wanted.intersection(q.tags or ())]
        return results

    def sets_for_subject(self, subject: str) -> List[QuestionSet]:
        return [s for s in self._sets.values() if s.subject == subject]

    def subject_data(self) -> Dict[str, Dict[str, Any]]:
        summary: Dict[str, Dict[str, Any]] = {}
        for subject in SUBJECTS:
            questions = self.filter_questions(subject=subject)
            topics: List[str] = []
            for question in questions:
                if question.topic not in topics:
                    topics.append(question.topic)
            summary[subject] = {
                "questions": questions,
                "sets": self.sets_for_subject(subject),
                "topics": topics,
            }
        return summary

    def available_subjects(self) -> List[str]:
        seen: List[str] = []
        for question in self._questions.values():
            if question.subject not in seen:
                seen.append(question.subject)
        return seen

    def get_set_data(
        self,
        set_id: str,
        *,
        max_questions: int = 20,
        rng: Optional[random.Random] = None,
    ) -> Optional[Tuple[QuestionSet, List[Question]]]:
        """Return a set narrowed to at most ``max_questions`` questions.

        Larger sets are sampled at random and the returned set's
        ``question_ids`` is rewritten to the drawn questions.
        """

        qset = self.get_set(set_id)
        if qset is None:
            return None
        questions = self.get_questions(qset.question_ids)
        if max_questions > 0 and len(questions) > max_questions:
            drawn = list(questions)
            (rng or random.Random()).shuffle(drawn)
            questions = drawn[:max_questions]
            qset = qset.model_copy(update={"question_ids": [q.id for q in questions]})
        return qset, questions

    # ------------------------------------------------------------------
    # uploads
    # ------------------------------------------------------------------
    def conflicts_with(self, data: AppData) -> List[str]:
        conflicts = [q.id for q in data.questions if q.id in self._questions]
        conflicts += [s.id for s in data.sets if s.id in self._sets]
        return conflicts

    def merge(self, data: AppData, *, replace: bool = False) -> Dict[str, int]:
        """Merge a validated upload into the bank.

        Conflicting ids abort the merge unless ``replace`` is set, in which
        case the incoming records win. Sets in the merged bank must still
        resolve every question they reference.
        """

        validate_app_data(data)
        conflicts = self.conflicts_with(data)
        if conflicts and not replace:
            raise ContentValidationError(
                f"Found {len(conflicts)} items with existing IDs: {', '.join(conflicts)}",
                conflicts,
            )

        merged_questions = dict(self._questions)
        merged_sets = dict(self._sets)
        for question in data.questions:
            merged_questions[question.id] = question
        for qset in data.sets:
            merged_sets[qset.id] = qset
        validate_app_data(AppData(questions=list(merged_questions.values()), sets=list(merged_sets.values())))

        self._questions = merged_questions
        self._sets = merged_sets
        logger.info(
            "Merged %d questions and %d sets (%d replaced)",
            len(data.questions),
            len(data.sets),
            len(conflicts),
        )
        return {"questions": len(data.questions), "sets": len(data.sets), "replaced": len(conflicts)}


_DEFAULT_BANK: Optional[QuestionBank] = None


def load_configured_bank() -> QuestionBank:
    """Build a bank from ``QUESTION_BANK_URL`` or ``QUESTION_DATA_DIR``/``CURRENT_GRADE``."""

    url = os.getenv("QUESTION_BANK_URL")
    if url:
        return QuestionBank.from_url(url)
    root = os.getenv("QUESTION_DATA_DIR", "data/questions")
    grade = int(os.getenv("CURRENT_GRADE", "1"))
    return QuestionBank.from_directory(root, grade)


def get_default_bank() -> QuestionBank:
    global _DEFAULT_BANK
    if _DEFAULT_BANK is None:
        _DEFAULT_BANK = load_configured_bank()
    return _DEFAULT_BANK


def set_default_bank(bank: Optional[QuestionBank]) -> None:
    global _DEFAULT_BANK
    _DEFAULT_BANK = bank
