# exam_models.py
# -----------------------------------------------------------------------------
# Records shared by the exam engine: questions, modules, module/exam results.
# - Question documents arrive loosely shaped; normalize once at the boundary
# - Correctness resolution never raises (malformed items grade as incorrect)
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import string
from dataclasses import dataclass, field
from fractions import Fraction
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

QUESTION_TYPE_MC = "multiple-choice"
QUESTION_TYPE_INPUT = "user-input"

OPTION_LETTERS = string.ascii_uppercase
DEFAULT_TIME_LIMIT_SECONDS = 32 * 60

SECTION_READING_WRITING = "readingWriting"
SECTION_MATH = "math"


def section_for_module(module_number: int) -> str:
    """Modules 1-2 are Reading & Writing; 3 and later are Math."""
    return SECTION_READING_WRITING if int(module_number or 0) <= 2 else SECTION_MATH


def _first(doc: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in doc and doc[k] is not None:
            return doc[k]
    return default


def _as_json(raw: Any, fallback: Any) -> Any:
    if raw is None:
        return fallback
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except Exception:
        return fallback


# ------------------------------- Question Record -------------------------------
@dataclass(frozen=True)
class QuestionRecord:
    id: str
    text: str
    options: Tuple[str, ...]
    correct_answer: Any
    question_type: str
    subcategory_id: Optional[str] = None
    accepted_answers: Tuple[str, ...] = ()
    graph_url: Optional[str] = None
    graph_description: Optional[str] = None
    explanation: Optional[str] = None
    input_type: Optional[str] = None
    answer_format: Optional[str] = None

    @property
    def is_multiple_choice(self) -> bool:
        return self.question_type == QUESTION_TYPE_MC

    @classmethod
    def from_doc(cls, doc: Any, fallback_id: str = "") -> "QuestionRecord":
        """Build from a stored document (camelCase or snake_case keys)."""
        doc = _as_json(doc, {})
        if not isinstance(doc, dict):
            doc = {}
        raw_opts = _first(doc, "options", "choices", default=[]) or []
        if isinstance(raw_opts, dict):
            # {"A": "...", "B": "..."} -> ordered by letter
            raw_opts = [raw_opts[k] for k in sorted(raw_opts)]
        options = tuple(str(o) for o in raw_opts) if isinstance(raw_opts, (list, tuple)) else ()

        qtype = str(_first(doc, "questionType", "question_type", default="") or "").strip().lower()
        if qtype not in (QUESTION_TYPE_MC, QUESTION_TYPE_INPUT):
            qtype = QUESTION_TYPE_MC if options else QUESTION_TYPE_INPUT

        accepted = _first(doc, "acceptedAnswers", "accepted_answers", default=[]) or []
        if not isinstance(accepted, (list, tuple)):
            accepted = [accepted]

        qid = _first(doc, "id", "questionId", "question_id", default="") or fallback_id
        return cls(
            id=str(qid),
            text=str(_first(doc, "text", "prompt", default="") or ""),
            options=options,
            correct_answer=_first(doc, "correctAnswer", "correct_answer", "answer", "correct"),
            question_type=qtype,
            subcategory_id=_first(doc, "subcategoryId", "subcategory_id"),
            accepted_answers=tuple(str(a) for a in accepted),
            graph_url=_first(doc, "graphUrl", "graph_url"),
            graph_description=_first(doc, "graphDescription", "graph_description"),
            explanation=_first(doc, "explanation"),
            input_type=_first(doc, "inputType", "input_type"),
            answer_format=_first(doc, "answerFormat", "answer_format"),
        )

    def public_view(self) -> Dict[str, Any]:
        """What a test-taker may see while the module is running."""
        out: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "options": list(self.options),
            "questionType": self.question_type,
            "subcategoryId": self.subcategory_id,
        }
        if self.graph_url:
            out["graphUrl"] = self.graph_url
        if self.graph_description:
            out["graphDescription"] = self.graph_description
        if not self.is_multiple_choice:
            out["inputType"] = self.input_type or "number"
            if self.answer_format:
                out["answerFormat"] = self.answer_format
        return out


def _option_index(q: QuestionRecord, key: Any) -> Optional[int]:
    """Index named by a correct-answer key: int or digit string first, then letter."""
    n = len(q.options)
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if 0 <= key < n else None
    if isinstance(key, float) and key.is_integer():
        return _option_index(q, int(key))
    if not isinstance(key, str):
        return None
    k = key.strip()
    if k.isdigit() and int(k) < n:
        return int(k)
    if len(k) == 1 and k.upper() in OPTION_LETTERS:
        idx = OPTION_LETTERS.index(k.upper())
        if idx < n:
            return idx
    return None


def resolve_correct_value(q: QuestionRecord) -> Optional[str]:
    """Literal value a response must equal, or None when it cannot be determined."""
    ca = q.correct_answer
    if ca is None or (isinstance(ca, str) and not ca.strip()):
        return None
    if q.is_multiple_choice:
        idx = _option_index(q, ca)
        if idx is not None:
            return q.options[idx]
        return ca if isinstance(ca, str) else None
    return str(ca).strip()


def _as_number(value: Any) -> Optional[Fraction]:
    s = str(value).strip().replace(",", "")
    if not s:
        return None
    try:
        return Fraction(s)
    except (ValueError, ZeroDivisionError):
        return None


def is_answer_correct(q: QuestionRecord, answer: Any) -> bool:
    if answer is None:
        return False
    given = str(answer)
    if not given.strip():
        return False
    expected = resolve_correct_value(q)
    if q.is_multiple_choice:
        # responses are option text, never letters or indexes
        return expected is not None and given == expected

    if expected is not None:
        if given.strip() == expected:
            return True
        a, b = _as_number(given), _as_number(expected)
        if a is not None and b is not None and abs(float(a) - float(b)) < 1e-4:
            return True
    return any(given.strip() == acc.strip() for acc in q.accepted_answers)


# ----------------------------------- Module -----------------------------------
@dataclass(frozen=True)
class ExamModule:
    module_number: int
    title: str
    time_limit_seconds: int = DEFAULT_TIME_LIMIT_SECONDS
    calculator_allowed: bool = False
    questions: Tuple[QuestionRecord, ...] = ()
    id: Optional[str] = None
    description: str = ""

    @property
    def section(self) -> str:
        return section_for_module(self.module_number)

    @classmethod
    def from_row(cls, row: Mapping[str, Any],
                 questions: Tuple[QuestionRecord, ...] = (),
                 default_time_limit: int = DEFAULT_TIME_LIMIT_SECONDS) -> "ExamModule":
        number = int(_first(row, "module_number", "moduleNumber", default=0) or 0)
        return cls(
            module_number=number,
            title=str(_first(row, "title", default="") or f"Module {number}"),
            time_limit_seconds=int(_first(row, "time_limit_seconds", "timeLimit", default=0) or default_time_limit),
            calculator_allowed=bool(_first(row, "calculator_allowed", "calculatorAllowed", default=False)),
            questions=tuple(questions),
            id=(str(row["id"]) if row.get("id") is not None else None),
            description=str(_first(row, "description", default="") or ""),
        )

    def meta(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "moduleNumber": self.module_number,
            "calculatorAllowed": self.calculator_allowed,
            "section": self.section,
        }


# ---------------------------------- Results -----------------------------------
@dataclass(frozen=True)
class ModuleResult:
    module_number: int
    module_id: Optional[str]
    answers: Mapping[int, str]
    crossed_out: Mapping[str, bool]
    marked_for_review: frozenset
    questions: Tuple[QuestionRecord, ...]
    remaining_seconds: int = 0
    expired: bool = False

    def __post_init__(self):
        # read-only copies; later ledger mutation cannot leak in
        object.__setattr__(self, "answers", MappingProxyType(dict(self.answers)))
        object.__setattr__(self, "crossed_out", MappingProxyType(dict(self.crossed_out)))
        object.__setattr__(self, "marked_for_review", frozenset(self.marked_for_review))


@dataclass
class ExamResult:
    exam_id: Optional[str]
    exam_title: str
    overall_score: int
    scores: Dict[str, int]
    total_questions: int
    correct_answers: int
    modules: List[Dict[str, Any]] = field(default_factory=list)
    responses: List[Dict[str, Any]] = field(default_factory=list)
    completed_at: Optional[str] = None
    result_id: Optional[str] = None
    progress_save_failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resultId": self.result_id,
            "examId": self.exam_id,
            "examTitle": self.exam_title,
            "overallScore": self.overall_score,
            "scores": dict(self.scores),
            "totalQuestions": self.total_questions,
            "correctAnswers": self.correct_answers,
            "modules": list(self.modules),
            "responses": list(self.responses),
            "completedAt": self.completed_at,
            "progressSaveFailed": self.progress_save_failed,
        }


__all__ = [
    "QUESTION_TYPE_MC", "QUESTION_TYPE_INPUT", "DEFAULT_TIME_LIMIT_SECONDS",
    "SECTION_READING_WRITING", "SECTION_MATH", "section_for_module",
    "QuestionRecord", "ExamModule", "ModuleResult", "ExamResult",
    "resolve_correct_value", "is_answer_correct",
]
