# scoring.py
# -----------------------------------------------------------------------------
# Pure scoring: no I/O, no clock. Rounds half-up so scores match what the
# web client has always shown (JS Math.round), not Python's banker's rounding.
# -----------------------------------------------------------------------------

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from exam_models import (
    SECTION_MATH, SECTION_READING_WRITING, ModuleResult,
    is_answer_correct, section_for_module,
)

MIN_SECTION_SCORE = 200
SECTION_SCORE_SPAN = 600


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def scaled_section_score(correct: int, total: int) -> int:
    """200-800 in steps of 10. An empty section divides by 1 and scores 200."""
    denom = total or 1
    raw = MIN_SECTION_SCORE + SECTION_SCORE_SPAN * (correct / denom)
    return round_half_up(raw / 10) * 10


def score_exam(outcomes: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """outcomes: ordered {"isCorrect": bool, "moduleNumber": int} records."""
    correct = total = 0
    per: Dict[str, Dict[str, int]] = {
        SECTION_READING_WRITING: {"correct": 0, "total": 0},
        SECTION_MATH: {"correct": 0, "total": 0},
    }
    for o in outcomes:
        ok = bool(o.get("isCorrect"))
        bucket = per[section_for_module(o.get("moduleNumber") or 0)]
        total += 1
        bucket["total"] += 1
        if ok:
            correct += 1
            bucket["correct"] += 1

    overall = round_half_up(100.0 * correct / total) if total else 0
    return {
        "overallScore": overall,
        "scores": {
            SECTION_READING_WRITING: scaled_section_score(**per[SECTION_READING_WRITING]),
            SECTION_MATH: scaled_section_score(**per[SECTION_MATH]),
        },
        "correctAnswers": correct,
        "totalQuestions": total,
    }


def grade_module_result(result: ModuleResult, timestamp: Optional[str] = None) -> List[Dict[str, Any]]:
    """One response record per question in the module's own question snapshot.
    Unanswered questions are graded (incorrect) with userAnswer None."""
    ts = timestamp or datetime.now(timezone.utc).isoformat()
    out: List[Dict[str, Any]] = []
    mod_key = result.module_id or f"module-{result.module_number}"
    for idx, q in enumerate(result.questions):
        answer = result.answers.get(idx)
        try:
            ok = is_answer_correct(q, answer)
        except Exception as e:
            # a bad record must not sink the whole session
            print(f"[scoring] could not grade question {q.id!r}: {e}")
            ok = False
        out.append({
            "questionId": q.id or f"practice-{mod_key}-q-{idx}",
            "userAnswer": answer,
            "correctAnswer": q.correct_answer,
            "isCorrect": ok,
            "moduleId": result.module_id,
            "moduleNumber": result.module_number,
            "subcategoryId": q.subcategory_id,
            "timestamp": ts,
        })
    return out


def infer_level_from_accuracy(accuracy: float = 0) -> int:
    if accuracy >= 80:
        return 3
    if accuracy >= 50:
        return 2
    return 1


def subcategory_rollups(responses: Iterable[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Group answered responses by subcategoryId for progress tracking."""
    out: Dict[str, Dict[str, Any]] = {}
    for r in responses:
        sub = r.get("subcategoryId")
        answer = r.get("userAnswer")
        if not sub or answer is None or not str(answer).strip():
            continue
        node = out.setdefault(str(sub), {
            "correct": 0, "total": 0, "questionIds": [], "questionResults": {},
        })
        qid = str(r.get("questionId"))
        node["total"] += 1
        if r.get("isCorrect"):
            node["correct"] += 1
        if qid not in node["questionResults"]:
            node["questionIds"].append(qid)
        node["questionResults"][qid] = bool(r.get("isCorrect"))
    for node in out.values():
        node["accuracy"] = round(100.0 * node["correct"] / (node["total"] or 1), 2)
        node["level"] = infer_level_from_accuracy(node["accuracy"])
    return out


__all__ = [
    "round_half_up", "scaled_section_score", "score_exam",
    "grade_module_result", "infer_level_from_accuracy", "subcategory_rollups",
]
