# orchestrator.py
# -----------------------------------------------------------------------------
# Session Orchestrator: sequences the modules of one practice exam attempt.
#   loading -> intro -> in-progress(i) [-> intermission] -> ... -> completed
# - Intermission after the group boundary (module 2 by default), timed and skippable
# - Finalize once: grade, score, one batched write; failure is flagged, not raised
# - checkpoint()/resume() make the whole attempt serializable
# -----------------------------------------------------------------------------

from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from exam_models import DEFAULT_TIME_LIMIT_SECONDS, ExamModule, ExamResult, ModuleResult
from module_runner import ModuleRunner
from scoring import grade_module_result, score_exam, subcategory_rollups
from session_state import AnswerLedger, SessionClock

STATE_LOADING = "loading"
STATE_INTRO = "intro"
STATE_IN_PROGRESS = "in-progress"
STATE_INTERMISSION = "intermission"
STATE_COMPLETED = "completed"

DEFAULT_INTERMISSION_SECONDS = 10 * 60
DEFAULT_INTERMISSION_AFTER = 2


class SessionStateError(RuntimeError):
    pass


class ExamNotFoundError(LookupError):
    pass


def _module_sort_key(m: ExamModule):
    return (m.module_number or float("inf"), m.title.lower())


def _exam_title(title: Optional[str], when: datetime) -> str:
    date_str = f"{when.strftime('%b')} {when.day}, {when.year}"
    return f"{title} - {date_str}" if title else f"Practice Exam - {date_str}"


class SessionOrchestrator:
    def __init__(self, exam_id: str, store: Any,
                 user_id: Optional[int] = None,
                 intermission_seconds: int = DEFAULT_INTERMISSION_SECONDS,
                 intermission_after: int = DEFAULT_INTERMISSION_AFTER,
                 default_time_limit: int = DEFAULT_TIME_LIMIT_SECONDS,
                 time_source: Callable[[], float] = time.monotonic):
        self.exam_id = str(exam_id)
        self.store = store
        self.user_id = user_id
        self.intermission_seconds = int(intermission_seconds)
        self.intermission_after = int(intermission_after)
        self.default_time_limit = int(default_time_limit)
        self._time = time_source

        self.state = STATE_LOADING
        self.exam: Dict[str, Any] = {}
        self.modules: List[ExamModule] = []
        self.module_index = 0
        self.results: List[ModuleResult] = []
        self.runner: Optional[ModuleRunner] = None
        self.intermission: Optional[SessionClock] = None
        self.exam_result: Optional[ExamResult] = None

    # ---- loading --------------------------------------------------------------
    def load(self) -> "SessionOrchestrator":
        exam = self.store.load_exam(self.exam_id)
        if not exam:
            raise ExamNotFoundError(f"exam {self.exam_id} not found")
        modules: List[ExamModule] = []
        for listed in self.store.list_modules(self.exam_id):
            m = self.store.load_module(self.exam_id, listed.module_number) if listed.module_number else None
            if m is None or m.id != listed.id:
                # unnumbered or duplicate numbers: fall back to the listed row
                questions = tuple(self.store.load_questions(listed.id)) if listed.id is not None else ()
                m = replace(listed, questions=questions)
            modules.append(replace(m, time_limit_seconds=m.time_limit_seconds or self.default_time_limit))
        if not modules:
            raise ExamNotFoundError(f"exam {self.exam_id} has no modules")
        self.exam = dict(exam)
        self.modules = sorted(modules, key=_module_sort_key)
        self.state = STATE_INTRO
        print(f"[exam] loaded exam {self.exam_id}: {len(self.modules)} modules, "
              f"{sum(len(m.questions) for m in self.modules)} questions")
        return self

    def overview(self) -> Dict[str, Any]:
        total_q = sum(len(m.questions) for m in self.modules)
        total_t = sum(m.time_limit_seconds for m in self.modules)
        return {
            "examId": self.exam_id,
            "title": self.exam.get("title") or "Practice Exam",
            "description": self.exam.get("description") or "",
            "totalQuestions": total_q,
            "totalMinutes": total_t // 60,
            "modules": [
                {**m.meta(), "questionCount": len(m.questions),
                 "timeLimitSeconds": m.time_limit_seconds}
                for m in self.modules
            ],
        }

    # ---- transitions ----------------------------------------------------------
    def _require(self, *states: str) -> None:
        if self.state not in states:
            raise SessionStateError(f"action not allowed while {self.state}")

    def start(self) -> None:
        self._require(STATE_INTRO)
        self._begin_module(0)

    def _begin_module(self, index: int, ledger: Optional[AnswerLedger] = None,
                      remaining_seconds: Optional[int] = None, current_question: int = 0) -> None:
        self.module_index = index
        self.state = STATE_IN_PROGRESS
        self.intermission = None
        self.runner = ModuleRunner(
            self.modules[index],
            ledger=ledger,
            remaining_seconds=remaining_seconds,
            on_complete=self._on_module_complete,
            current_index=current_question,
            time_source=self._time,
        )
        self.runner.start()

    def _on_module_complete(self, result: ModuleResult) -> None:
        if self.state != STATE_IN_PROGRESS:
            return
        self.results.append(result)
        print(f"[exam] module {result.module_number} complete "
              f"({len(result.answers)} answers{', time expired' if result.expired else ''})")
        last = self.module_index >= len(self.modules) - 1
        if last:
            self._finalize()
        elif self.modules[self.module_index].module_number == self.intermission_after:
            self._begin_intermission(self.intermission_seconds)
        else:
            self._begin_module(self.module_index + 1)

    def _begin_intermission(self, seconds: int) -> None:
        self.state = STATE_INTERMISSION
        self.runner = None
        self.intermission = SessionClock(seconds, on_expire=self.continue_after_intermission,
                                         time_source=self._time)
        self.intermission.start()

    def continue_after_intermission(self) -> None:
        # expiry and the "resume testing" button both land here; first one wins
        if self.state != STATE_INTERMISSION:
            return
        if self.intermission:
            self.intermission.stop()
        self._begin_module(self.module_index + 1)

    def sync(self, now: Optional[float] = None) -> None:
        if self.state == STATE_IN_PROGRESS and self.runner:
            self.runner.sync(now)
        elif self.state == STATE_INTERMISSION and self.intermission:
            self.intermission.catch_up(now)

    def pause(self) -> None:
        self._require(STATE_IN_PROGRESS, STATE_INTERMISSION)
        if self.state == STATE_IN_PROGRESS:
            self.runner.pause()
        else:
            self.intermission.pause()

    def resume_clock(self) -> None:
        self._require(STATE_IN_PROGRESS, STATE_INTERMISSION)
        if self.state == STATE_IN_PROGRESS:
            self.runner.resume()
        else:
            self.intermission.resume()

    def current_runner(self) -> ModuleRunner:
        self._require(STATE_IN_PROGRESS)
        return self.runner

    # ---- finalize -------------------------------------------------------------
    def _finalize(self) -> None:
        self.state = STATE_COMPLETED
        self.runner = None
        now = datetime.now(timezone.utc)
        ts = now.isoformat()

        responses: List[Dict[str, Any]] = []
        for r in self.results:
            responses.extend(grade_module_result(r, timestamp=ts))
        summary = score_exam(responses)
        done = {r.module_number for r in self.results}
        result = ExamResult(
            exam_id=self.exam_id,
            exam_title=_exam_title(self.exam.get("title"), now),
            overall_score=summary["overallScore"],
            scores=summary["scores"],
            total_questions=summary["totalQuestions"],
            correct_answers=summary["correctAnswers"],
            modules=[m.meta() for m in self.modules if m.module_number in done],
            responses=responses,
            completed_at=ts,
        )
        rollups = subcategory_rollups(responses)
        try:
            result.result_id = self.store.save_result(self.user_id, result, rollups)
        except Exception as e:
            print(f"[exam] saving result for exam {self.exam_id} failed: {e}")
            result.progress_save_failed = True
        self.exam_result = result
        print(f"[exam] exam {self.exam_id} finished: {result.overall_score}% "
              f"RW {result.scores.get('readingWriting')} / Math {result.scores.get('math')}")

    # ---- checkpoint / resume --------------------------------------------------
    def checkpoint(self) -> Dict[str, Any]:
        ledgers = [
            {"answers": {str(k): v for k, v in r.answers.items()},
             "crossedOut": dict(r.crossed_out),
             "markedForReview": sorted(r.marked_for_review)}
            for r in self.results
        ]
        snap: Dict[str, Any] = {
            "examId": self.exam_id,
            "state": self.state,
            "moduleIndex": self.module_index,
            "currentQuestion": 0,
            "remainingSeconds": None,
            "ledgerSnapshots": ledgers,
        }
        if self.state == STATE_IN_PROGRESS and self.runner:
            rs = self.runner.snapshot()
            ledgers.append(rs["ledger"])
            snap["currentQuestion"] = rs["currentQuestion"]
            snap["remainingSeconds"] = rs["remainingSeconds"]
        elif self.state == STATE_INTERMISSION and self.intermission:
            snap["remainingSeconds"] = self.intermission.remaining_seconds
        return snap

    def exit(self) -> Dict[str, Any]:
        """Best-effort checkpoint write; navigation proceeds whatever happens."""
        self.sync()
        snap = self.checkpoint()
        if self.state in (STATE_IN_PROGRESS, STATE_INTERMISSION):
            try:
                self.store.save_checkpoint(self.user_id, self.exam_id, snap)
            except Exception as e:
                print(f"[exam] checkpoint for exam {self.exam_id} failed (continuing): {e}")
        return snap

    @classmethod
    def resume(cls, exam_id: str, store: Any, snapshot: Dict[str, Any], **kwargs) -> "SessionOrchestrator":
        orch = cls(exam_id, store, **kwargs).load()
        n = len(orch.modules)
        state = snapshot.get("state") or STATE_IN_PROGRESS
        index = max(0, min(int(snapshot.get("moduleIndex") or 0), n - 1))
        ledgers = list(snapshot.get("ledgerSnapshots") or [])
        remaining = snapshot.get("remainingSeconds")

        if state == STATE_INTRO:
            return orch

        finished = index + 1 if state == STATE_INTERMISSION else index
        for i in range(min(finished, n)):
            led = AnswerLedger.from_dict(ledgers[i] if i < len(ledgers) else None).snapshot()
            m = orch.modules[i]
            orch.results.append(ModuleResult(
                module_number=m.module_number, module_id=m.id,
                answers=led.answers, crossed_out=led.crossed_out,
                marked_for_review=led.marked_for_review, questions=m.questions,
            ))

        if state == STATE_INTERMISSION and index < n - 1:
            orch.module_index = index
            orch._begin_intermission(orch.intermission_seconds if remaining is None else int(remaining))
        elif finished >= n:
            orch.module_index = n - 1
            orch.state = STATE_IN_PROGRESS
            orch._finalize()
        else:
            current = AnswerLedger.from_dict(ledgers[index] if index < len(ledgers) else None)
            orch._begin_module(index, ledger=current,
                               remaining_seconds=(None if remaining is None else int(remaining)),
                               current_question=int(snapshot.get("currentQuestion") or 0))
        print(f"[exam] resumed exam {exam_id} at module index {orch.module_index} ({orch.state})")
        return orch

    # ---- view -----------------------------------------------------------------
    def view(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "examId": self.exam_id,
            "state": self.state,
            "moduleIndex": self.module_index,
            "moduleCount": len(self.modules),
        }
        if self.state == STATE_IN_PROGRESS and self.runner:
            out["module"] = self.runner.view()
        elif self.state == STATE_INTERMISSION and self.intermission:
            out["intermission"] = {
                "remainingSeconds": self.intermission.remaining_seconds,
                "paused": self.intermission.paused,
                "nextModuleNumber": self.modules[self.module_index + 1].module_number,
            }
        elif self.state == STATE_COMPLETED and self.exam_result:
            out["result"] = self.exam_result.to_dict()
        return out
