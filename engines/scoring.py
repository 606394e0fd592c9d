"""Answer scoring rules for every supported question type.

``score_question`` is pure: it never raises for absent or mis-shaped user
answers, it only turns them into a zero-credit :class:`ScoreResult` with a
short guidance message.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from schemas import MatchPair, Question, ScoreResult

_TRY_AGAIN = "Not quite right. Try again!"


def _result(is_correct: bool, score: float, feedback: str, partial: Optional[float] = None) -> ScoreResult:
    # partial credit is only reported strictly between 0 and 1
    if partial is not None and not 0.0 < partial < 1.0:
        partial = None
    return ScoreResult(is_correct=is_correct, score=score, partial_credit=partial, feedback=feedback)


def _as_str_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, (list, tuple)):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return list(value)


def _unique(items: Sequence[Any]) -> List[Any]:
    seen: set = set()
    out: List[Any] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _pair_token(pair: Any) -> Optional[Tuple[str, str]]:
    if isinstance(pair, MatchPair):
        return pair.left_id, pair.right_id
    if isinstance(pair, Mapping):
        left = pair.get("leftId", pair.get("left_id"))
        right = pair.get("rightId", pair.get("right_id"))
        if isinstance(left, str) and isinstance(right, str):
            return left, right
    return None


def longest_common_subsequence(first: Sequence[Any], second: Sequence[Any]) -> int:
    """Length of the longest common subsequence using two DP rows."""

    if len(second) > len(first):
        first, second = second, first
    previous = [0] * (len(second) + 1)
    for item in first:
        current = [0] * (len(second) + 1)
        for j, other in enumerate(second, start=1):
            if item == other:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current
    return previous[-1]


def score_mcq_single(correct: Any, given: Any) -> ScoreResult:
    if given is None or given == "":
        return _result(False, 0.0, "Please select an answer.")
    is_correct = correct == given
    return _result(is_correct, 1.0 if is_correct else 0.0, "Correct!" if is_correct else _TRY_AGAIN)


def score_mcq_multi(correct: Any, given: Any) -> ScoreResult:
    selections = _as_str_list(given)
    if not selections:
        return _result(False, 0.0, "Please select at least one answer.")

    correct_list = _unique(_as_str_list(correct) or [])
    if not correct_list:
        return _result(False, 0.0, _TRY_AGAIN)
    correct_set = set(correct_list)
    chosen = _unique(selections)

    right = sum(1 for item in chosen if item in correct_set)
    wrong = len(chosen) - right
    if right == len(correct_set) and wrong == 0:
        return _result(True, 1.0, "Perfect! You got all the right answers!")

    partial = max(0.0, (right - wrong) / len(correct_set))
    if partial > 0:
        feedback = f"Good try! You got {right} out of {len(correct_set)} correct."
    else:
        feedback = _TRY_AGAIN
    return _result(False, partial, feedback, partial)


def score_short_answer(correct: Any, given: Any) -> ScoreResult:
    if not isinstance(given, str) or not given.strip():
        return _result(False, 0.0, "Please provide an answer.")

    if isinstance(correct, (list, tuple)):
        accepted = {str(item).strip().lower() for item in correct}
    else:
        accepted = {str(correct).strip().lower()}
    is_correct = given.strip().lower() in accepted
    return _result(
        is_correct,
        1.0 if is_correct else 0.0,
        "Excellent!" if is_correct else "Not quite right. Check your spelling and try again!",
    )


def score_fill_blank(correct: Any, given: Any) -> ScoreResult:
    return score_short_answer(correct, given)


def score_true_false(correct: Any, given: Any) -> ScoreResult:
    if not isinstance(given, bool):
        return _result(False, 0.0, "Please select True or False.")
    is_correct = correct is given
    return _result(is_correct, 1.0 if is_correct else 0.0, "Correct!" if is_correct else _TRY_AGAIN)


def score_match(correct: Any, given: Any) -> ScoreResult:
    if not isinstance(given, (list, tuple)) or not given:
        return _result(False, 0.0, "Please match all items.")

    correct_pairs = _unique([t for t in (_pair_token(p) for p in correct or ()) if t is not None])
    if not correct_pairs:
        return _result(False, 0.0, "Try again! Look carefully at each item.")
    user_pairs = _unique([t for t in (_pair_token(p) for p in given) if t is not None])

    correct_set = set(correct_pairs)
    matched = sum(1 for pair in user_pairs if pair in correct_set)
    if matched == len(correct_set) and len(user_pairs) == len(correct_set):
        return _result(True, 1.0, "Perfect matching!")

    partial = matched / len(correct_set)
    if partial > 0:
        feedback = f"Good try! You got {matched} out of {len(correct_set)} matches correct."
    else:
        feedback = "Try again! Look carefully at each item."
    return _result(False, partial, feedback, partial)


def score_order(correct: Any, given: Any) -> ScoreResult:
    sequence = _as_str_list(given)
    if sequence is None:
        return _result(False, 0.0, "Please arrange all items in order.")

    expected = _as_str_list(correct) or []
    if len(sequence) != len(expected) or not expected:
        return _result(False, 0.0, "Please include all items in your answer.")

    if sequence == expected:
        return _result(True, 1.0, "Perfect order!")

    partial = longest_common_subsequence(expected, sequence) / len(expected)
    if partial > 0.5:
        feedback = "Close! You got some of the order right."
    else:
        feedback = "Not quite right. Think about the correct sequence."
    return _result(False, partial, feedback, partial)


SCORERS: Dict[str, Callable[[Any, Any], ScoreResult]] = {
    "mcq_single": score_mcq_single,
    "mcq_multi": score_mcq_multi,
    "short_answer": score_short_answer,
    "true_false": score_true_false,
    "fill_blank": score_fill_blank,
    "match": score_match,
    "order": score_order,
}


def score_question(question: Question, user_answer: Any) -> ScoreResult:
    """Score ``user_answer`` against the canonical answer of ``question``."""

    scorer = SCORERS.get(getattr(question, "type", None))
    if scorer is None:
        return _result(False, 0.0, "Unknown question type")
    return scorer(question.answer, user_answer)
