# exam.py
# -----------------------------------------------------------------------------
# Practice exam API (JSON) over the session engine.
# - One live SessionOrchestrator per (user, exam) in a per-process registry
# - Clocks catch up on every request; no background timers
# - Exit writes a best-effort checkpoint; start resumes from it
# - Results are written once at finalize; reads come from the store
# -----------------------------------------------------------------------------

import os
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, request, jsonify, g

from exam_models import DEFAULT_TIME_LIMIT_SECONDS
from exam_store import ExamStore
from module_runner import ModuleCompletedError
from orchestrator import (
    STATE_COMPLETED, STATE_IN_PROGRESS, STATE_INTERMISSION,
    ExamNotFoundError, SessionOrchestrator, SessionStateError,
)
from session_state import LedgerFrozenError


class InvalidRequest(ValueError):
    pass


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/exams".
    Required deps: fetch_one, fetch_all, execute  (or a ready-made "store")
    Optional deps: execute_batch, time_source
    """
    url_prefix = (base_path or "") + "/exams"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Config --------------------------------------------------------------
    INTERMISSION_SECONDS = int(os.getenv("EXAM_INTERMISSION_SECONDS") or 600)
    INTERMISSION_AFTER   = int(os.getenv("EXAM_INTERMISSION_AFTER_MODULE") or 2)
    DEFAULT_TIME_LIMIT   = int(os.getenv("EXAM_DEFAULT_TIME_LIMIT_SEC") or DEFAULT_TIME_LIMIT_SECONDS)
    ANSWER_CHAR_LIMIT    = int(os.getenv("EXAM_ANSWER_CHAR_LIMIT") or 500)

    # ---- Deps ----------------------------------------------------------------
    store = deps.get("store") or ExamStore(deps, default_time_limit=DEFAULT_TIME_LIMIT)
    time_source: Callable[[], float] = deps.get("time_source") or time.monotonic

    # ---- Live sessions -------------------------------------------------------
    _sessions: Dict[Tuple[Any, str], SessionOrchestrator] = {}
    _lock = threading.Lock()

    def _orch_kwargs() -> Dict[str, Any]:
        return {
            "user_id": g.user_id,
            "intermission_seconds": INTERMISSION_SECONDS,
            "intermission_after": INTERMISSION_AFTER,
            "default_time_limit": DEFAULT_TIME_LIMIT,
            "time_source": time_source,
        }

    def _from_checkpoint(exam_id: str) -> Optional[SessionOrchestrator]:
        try:
            snap = store.load_checkpoint(g.user_id, exam_id)
        except Exception as e:
            print(f"[exam] checkpoint lookup failed for exam {exam_id}: {e}")
            return None
        if not snap:
            return None
        return SessionOrchestrator.resume(exam_id, store, snap, **_orch_kwargs())

    def _live(exam_id: str, restore: bool = True) -> Optional[SessionOrchestrator]:
        key = (g.user_id, exam_id)
        with _lock:
            orch = _sessions.get(key)
        if orch is None and restore:
            orch = _from_checkpoint(exam_id)
            if orch is not None:
                with _lock:
                    orch = _sessions.setdefault(key, orch)
        if orch is not None:
            orch.sync()
        return orch

    def _require_live(exam_id: str) -> SessionOrchestrator:
        orch = _live(exam_id)
        if orch is None:
            raise SessionStateError("no active session for this exam")
        return orch

    def _payload() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise InvalidRequest("JSON object expected")
        return data

    def _clamp_answer(raw: Any) -> Optional[str]:
        if raw is None:
            return None
        txt = str(raw.get("text") or "") if isinstance(raw, dict) else str(raw)
        return txt[:max(0, ANSWER_CHAR_LIMIT)]

    def _question_index(data: Dict[str, Any]) -> Optional[int]:
        raw = data.get("questionIndex")
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise InvalidRequest("questionIndex must be an integer")

    def _ok(orch: SessionOrchestrator, **extra):
        return jsonify({"ok": True, **extra, "session": orch.view()})

    # ---- Auth & error mapping ------------------------------------------------
    @bp.before_request
    def _require_user():
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401

    @bp.errorhandler(SessionStateError)
    @bp.errorhandler(ModuleCompletedError)
    @bp.errorhandler(LedgerFrozenError)
    def _conflict(e):
        return jsonify({"ok": False, "error": str(e)}), 409

    @bp.errorhandler(ExamNotFoundError)
    def _not_found(e):
        return jsonify({"ok": False, "error": str(e)}), 404

    @bp.errorhandler(InvalidRequest)
    def _bad_request(e):
        return jsonify({"ok": False, "error": str(e)}), 400

    # ---- Catalogue & results -------------------------------------------------
    @bp.get("/")
    def exam_list():
        return jsonify({"ok": True, "exams": store.list_exams()})

    @bp.get("/results")
    def result_list():
        return jsonify({"ok": True, "results": store.list_results(g.user_id)})

    @bp.get("/results/<result_id>")
    def result_detail(result_id: str):
        res = store.load_result(g.user_id, result_id)
        if not res:
            return jsonify({"ok": False, "error": "result not found"}), 404
        return jsonify({"ok": True, "result": res})

    # ---- Intro & lifecycle ---------------------------------------------------
    @bp.get("/<exam_id>")
    def exam_overview(exam_id: str):
        orch = _live(exam_id, restore=False)
        overview_src = orch if orch is not None else SessionOrchestrator(exam_id, store, **_orch_kwargs()).load()
        has_checkpoint = False
        if orch is None:
            try:
                has_checkpoint = bool(store.load_checkpoint(g.user_id, exam_id))
            except Exception as e:
                print(f"[exam] checkpoint lookup failed for exam {exam_id}: {e}")
        return jsonify({
            "ok": True,
            "exam": overview_src.overview(),
            "state": orch.state if orch is not None else None,
            "hasCheckpoint": has_checkpoint,
        })

    @bp.post("/<exam_id>/start")
    def exam_start(exam_id: str):
        data = _payload()
        key = (g.user_id, exam_id)
        if data.get("restart"):
            with _lock:
                _sessions.pop(key, None)
            try:
                store.clear_checkpoint(g.user_id, exam_id)
            except Exception as e:
                print(f"[exam] clearing checkpoint for exam {exam_id} failed: {e}")

        orch = _live(exam_id)
        if orch is not None and orch.state in (STATE_IN_PROGRESS, STATE_INTERMISSION):
            return _ok(orch, resumed=True)

        orch = SessionOrchestrator(exam_id, store, **_orch_kwargs()).load()
        orch.start()
        with _lock:
            _sessions[key] = orch
        print(f"[exam] user {g.user_id} started exam {exam_id}")
        return _ok(orch, resumed=False)

    @bp.get("/<exam_id>/state")
    def exam_state(exam_id: str):
        return _ok(_require_live(exam_id))

    @bp.post("/<exam_id>/exit")
    def exam_exit(exam_id: str):
        orch = _live(exam_id, restore=False)
        if orch is None:
            return jsonify({"ok": True, "checkpoint": None})
        snap = orch.exit()
        with _lock:
            _sessions.pop((g.user_id, exam_id), None)
        return jsonify({"ok": True, "checkpoint": snap})

    # ---- In-module actions ---------------------------------------------------
    @bp.post("/<exam_id>/answer")
    def exam_answer(exam_id: str):
        data = _payload()
        if "answer" not in data:
            raise InvalidRequest("answer is required")
        orch = _require_live(exam_id)
        orch.current_runner().select_answer(_clamp_answer(data.get("answer")))
        return _ok(orch)

    @bp.post("/<exam_id>/navigate")
    def exam_navigate(exam_id: str):
        data = _payload()
        action = str(data.get("action") or "").lower()
        if action not in ("next", "prev", "goto"):
            raise InvalidRequest("action must be next, prev or goto")
        kwargs = {"answer": _clamp_answer(data["answer"])} if "answer" in data else {}
        orch = _require_live(exam_id)
        runner = orch.current_runner()
        if action == "next":
            runner.next(**kwargs)
        elif action == "prev":
            runner.prev(**kwargs)
        else:
            idx = _question_index(data)
            if idx is None:
                raise InvalidRequest("questionIndex is required for goto")
            runner.go_to_question(idx, **kwargs)
        return _ok(orch)

    @bp.post("/<exam_id>/cross-out")
    def exam_cross_out(exam_id: str):
        data = _payload()
        letter = str(data.get("letter") or "").strip().upper()
        if len(letter) != 1 or not letter.isalpha():
            raise InvalidRequest("letter must be a single option letter")
        orch = _require_live(exam_id)
        crossed = orch.current_runner().toggle_cross_out(letter, _question_index(data))
        return _ok(orch, crossedOut=crossed)

    @bp.post("/<exam_id>/review-mark")
    def exam_review_mark(exam_id: str):
        data = _payload()
        orch = _require_live(exam_id)
        marked = orch.current_runner().toggle_marked_for_review(_question_index(data))
        return _ok(orch, markedForReview=marked)

    @bp.post("/<exam_id>/pause")
    def exam_pause(exam_id: str):
        orch = _require_live(exam_id)
        orch.pause()
        return _ok(orch)

    @bp.post("/<exam_id>/resume")
    def exam_resume(exam_id: str):
        orch = _require_live(exam_id)
        orch.resume_clock()
        return _ok(orch)

    @bp.post("/<exam_id>/finish")
    def exam_finish_module(exam_id: str):
        data = _payload()
        orch = _require_live(exam_id)
        if orch.state == STATE_COMPLETED:
            return _ok(orch)
        runner = orch.current_runner()
        if "answer" in data:
            runner.select_answer(data.get("answer"))
        runner.complete()
        return _ok(orch)

    @bp.post("/<exam_id>/intermission/continue")
    def exam_continue(exam_id: str):
        orch = _require_live(exam_id)
        if orch.state != STATE_INTERMISSION:
            raise SessionStateError(f"not in intermission (state: {orch.state})")
        orch.continue_after_intermission()
        return _ok(orch)

    return bp
