# module_runner.py
# -----------------------------------------------------------------------------
# Drives one timed module: current question, navigation, annotations, and
# the single completion that hands a ModuleResult to the orchestrator.
# -----------------------------------------------------------------------------

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from exam_models import OPTION_LETTERS, ExamModule, ModuleResult
from session_state import AnswerLedger, SessionClock


class ModuleCompletedError(RuntimeError):
    pass


_UNSET = object()


class ModuleRunner:
    def __init__(self, module: ExamModule,
                 ledger: Optional[AnswerLedger] = None,
                 remaining_seconds: Optional[int] = None,
                 on_complete: Optional[Callable[[ModuleResult], None]] = None,
                 current_index: int = 0,
                 time_source: Callable[[], float] = time.monotonic):
        self.module = module
        self.ledger = ledger or AnswerLedger()
        self.on_complete = on_complete
        budget = module.time_limit_seconds if remaining_seconds is None else remaining_seconds
        self.clock = SessionClock(budget, on_expire=self._on_clock_expired, time_source=time_source)
        self.completed = False
        self.result: Optional[ModuleResult] = None
        self.current_index = self._clamp(current_index)
        self._displayed: Optional[str] = self.ledger.get_answer(self.current_index)

    # ---- helpers --------------------------------------------------------------
    @property
    def question_count(self) -> int:
        return len(self.module.questions)

    def _clamp(self, index: Any) -> int:
        n = self.question_count
        if n == 0:
            return 0
        try:
            i = int(index)
        except (TypeError, ValueError):
            i = 0
        return max(0, min(i, n - 1))

    def _check_open(self):
        if self.completed:
            raise ModuleCompletedError(f"module {self.module.module_number} is already completed")

    def _persist_current(self) -> None:
        if self._displayed is not None and self.question_count:
            self.ledger.set_answer(self.current_index, self._displayed)

    def _show(self, index: int) -> None:
        self.current_index = self._clamp(index)
        self._displayed = self.ledger.get_answer(self.current_index)

    def _target(self, question_index: Optional[int]) -> int:
        return self.current_index if question_index is None else self._clamp(question_index)

    # ---- lifecycle ------------------------------------------------------------
    def start(self) -> None:
        if self.completed:
            return
        if self.question_count == 0:
            self.complete()
            return
        self.clock.start()

    def sync(self, now: Optional[float] = None) -> None:
        if not self.completed:
            self.clock.catch_up(now)

    def pause(self) -> None:
        self._check_open()
        self.clock.pause()

    def resume(self) -> None:
        self._check_open()
        self.clock.resume()

    # ---- answers & annotations ------------------------------------------------
    def select_answer(self, value: Any) -> None:
        self._check_open()
        self._displayed = "" if value is None else str(value)
        self._persist_current()

    @property
    def selected_answer(self) -> Optional[str]:
        return self._displayed

    def toggle_cross_out(self, option_letter: str, question_index: Optional[int] = None) -> bool:
        self._check_open()
        return self.ledger.toggle_crossed_out(self._target(question_index), option_letter)

    def toggle_marked_for_review(self, question_index: Optional[int] = None) -> bool:
        self._check_open()
        return self.ledger.toggle_marked_for_review(self._target(question_index))

    # ---- navigation -----------------------------------------------------------
    # Navigation on a completed module is a no-op so a late "Next"/"Finish"
    # racing clock expiry is harmless.
    def go_to_question(self, index: int, answer: Any = _UNSET) -> bool:
        if self.completed:
            return False
        if answer is not _UNSET:
            self._displayed = None if answer is None else str(answer)
        self._persist_current()
        self._show(index)
        return True

    def next(self, answer: Any = _UNSET) -> bool:
        if self.completed:
            return False
        if answer is not _UNSET:
            self._displayed = None if answer is None else str(answer)
        self._persist_current()
        if self.current_index >= self.question_count - 1:
            self.complete()
        else:
            self._show(self.current_index + 1)
        return True

    def prev(self, answer: Any = _UNSET) -> bool:
        if self.completed:
            return False
        if answer is not _UNSET:
            self._displayed = None if answer is None else str(answer)
        self._persist_current()
        if self.current_index > 0:
            self._show(self.current_index - 1)
        return True

    # ---- completion -----------------------------------------------------------
    def complete(self, expired: bool = False) -> Optional[ModuleResult]:
        """Finalize once. Later calls return None and change nothing."""
        if self.completed:
            return None
        self.completed = True
        self._persist_current()
        self.clock.stop()
        self.ledger.freeze()
        snap = self.ledger.snapshot()
        self.result = ModuleResult(
            module_number=self.module.module_number,
            module_id=self.module.id,
            answers=snap.answers,
            crossed_out=snap.crossed_out,
            marked_for_review=snap.marked_for_review,
            questions=self.module.questions,
            remaining_seconds=self.clock.remaining_seconds,
            expired=expired,
        )
        if self.on_complete:
            self.on_complete(self.result)
        return self.result

    def _on_clock_expired(self) -> None:
        self.complete(expired=True)

    # ---- serialization --------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        # a checkpoint keeps the in-flight answer as well
        ledger = self.ledger.snapshot().to_dict()
        if self._displayed is not None and self.question_count and not self.completed:
            ledger["answers"][str(self.current_index)] = self._displayed
        return {
            "moduleNumber": self.module.module_number,
            "currentQuestion": self.current_index,
            "remainingSeconds": self.clock.remaining_seconds,
            "ledger": ledger,
            "completed": self.completed,
        }

    def view(self) -> Dict[str, Any]:
        q = self.module.questions[self.current_index] if self.question_count else None
        letters: List[str] = list(OPTION_LETTERS[:len(q.options)]) if q else []
        tracker = [
            {
                "index": i,
                "answered": bool((self.ledger.get_answer(i) or "").strip()),
                "markedForReview": self.ledger.is_marked(i),
            }
            for i in range(self.question_count)
        ]
        return {
            "moduleNumber": self.module.module_number,
            "moduleTitle": self.module.title,
            "calculatorAllowed": self.module.calculator_allowed,
            "questionIndex": self.current_index,
            "totalQuestions": self.question_count,
            "question": q.public_view() if q else None,
            "selectedAnswer": self._displayed or "",
            "crossedOut": {l: self.ledger.is_crossed_out(self.current_index, l) for l in letters},
            "markedForReview": self.ledger.is_marked(self.current_index),
            "answeredCount": self.ledger.answered_count(),
            "remainingSeconds": self.clock.remaining_seconds,
            "paused": self.clock.paused,
            "isFirstQuestion": self.current_index == 0,
            "isLastQuestion": self.current_index >= self.question_count - 1,
            "completed": self.completed,
            "tracker": tracker,
        }
