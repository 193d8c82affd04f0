# exam_store.py
# -----------------------------------------------------------------------------
# PostgreSQL persistence for the exam engine (psycopg 3 via injected helpers).
# Required deps: fetch_one, fetch_all, execute
# Optional deps: execute_batch (one connection, one commit; falls back to
#                sequential execute when absent, e.g. in tests)
# -----------------------------------------------------------------------------

import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from exam_models import DEFAULT_TIME_LIMIT_SECONDS, ExamModule, ExamResult, QuestionRecord

SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS public.users (
        id         BIGSERIAL PRIMARY KEY,
        email      TEXT UNIQUE NOT NULL,
        full_name  TEXT,
        role       TEXT NOT NULL DEFAULT 'learner',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.practice_exams (
        id          TEXT PRIMARY KEY,
        title       TEXT NOT NULL,
        description TEXT,
        is_active   BOOLEAN NOT NULL DEFAULT TRUE,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_modules (
        id                 TEXT PRIMARY KEY,
        exam_id            TEXT NOT NULL REFERENCES public.practice_exams(id) ON DELETE CASCADE,
        module_number      INTEGER,
        title              TEXT,
        description        TEXT,
        time_limit_seconds INTEGER,
        calculator_allowed BOOLEAN NOT NULL DEFAULT FALSE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_questions (
        id             TEXT PRIMARY KEY,
        module_id      TEXT NOT NULL REFERENCES public.exam_modules(id) ON DELETE CASCADE,
        position       INTEGER NOT NULL DEFAULT 0,
        subcategory_id TEXT,
        payload        JSONB NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_results (
        id              TEXT PRIMARY KEY,
        user_id         BIGINT,
        exam_id         TEXT,
        exam_title      TEXT,
        overall_score   INTEGER NOT NULL,
        rw_score        INTEGER NOT NULL,
        math_score      INTEGER NOT NULL,
        total_questions INTEGER NOT NULL,
        correct_answers INTEGER NOT NULL,
        modules         JSONB NOT NULL DEFAULT '[]'::jsonb,
        completed_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_responses (
        id             BIGSERIAL PRIMARY KEY,
        result_id      TEXT NOT NULL REFERENCES public.exam_results(id) ON DELETE CASCADE,
        position       INTEGER NOT NULL,
        question_id    TEXT,
        module_id      TEXT,
        module_number  INTEGER,
        subcategory_id TEXT,
        user_answer    TEXT,
        correct_answer JSONB,
        is_correct     BOOLEAN NOT NULL,
        answered_at    TIMESTAMPTZ
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.subcategory_progress (
        user_id          BIGINT NOT NULL,
        subcategory_id   TEXT NOT NULL,
        correct          INTEGER NOT NULL DEFAULT 0,
        total            INTEGER NOT NULL DEFAULT 0,
        accuracy         NUMERIC(5,2) NOT NULL DEFAULT 0,
        level            INTEGER NOT NULL DEFAULT 1,
        question_results JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, subcategory_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_checkpoints (
        user_id    BIGINT NOT NULL,
        exam_id    TEXT NOT NULL,
        snapshot   JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, exam_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.assistant_chats (
        id          BIGSERIAL PRIMARY KEY,
        user_id     BIGINT,
        quiz_id     TEXT,
        question_id TEXT,
        role        TEXT NOT NULL,
        content     TEXT NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS exam_results_user_idx ON public.exam_results (user_id, completed_at DESC);",
]

Statement = Tuple[str, Tuple[Any, ...]]


def _json(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def _loads(raw: Any, fallback: Any) -> Any:
    if raw is None:
        return fallback
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except Exception:
        return fallback


def _iso(v: Any) -> Optional[str]:
    if v is None:
        return None
    return v.isoformat() if hasattr(v, "isoformat") else str(v)


class ExamStore:
    def __init__(self, deps: Dict[str, Any], default_time_limit: int = DEFAULT_TIME_LIMIT_SECONDS):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self._execute_batch: Optional[Callable] = deps.get("execute_batch")
        self.default_time_limit = int(default_time_limit)

    def execute_batch(self, statements: List[Statement]) -> None:
        if self._execute_batch:
            self._execute_batch(statements)
            return
        for q, params in statements:
            self.execute(q, params)

    # ---- schema -------------------------------------------------------------
    def ensure_schema(self) -> None:
        self.execute_batch([(sql, ()) for sql in SCHEMA_SQL])

    # ---- definitions --------------------------------------------------------
    def list_exams(self) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT e.id, e.title, e.description,
                   COUNT(DISTINCT m.id) AS module_count,
                   COUNT(q.id)          AS question_count
              FROM public.practice_exams e
              LEFT JOIN public.exam_modules m   ON m.exam_id = e.id
              LEFT JOIN public.exam_questions q ON q.module_id = m.id
             WHERE e.is_active
             GROUP BY e.id, e.title, e.description, e.created_at
             ORDER BY e.created_at DESC, e.title;
        """, ())
        return [{
            "id": r["id"],
            "title": r.get("title") or "Practice Exam",
            "description": r.get("description") or "",
            "moduleCount": int(r.get("module_count") or 0),
            "questionCount": int(r.get("question_count") or 0),
        } for r in (rows or [])]

    def load_exam(self, exam_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT id, title, description FROM public.practice_exams WHERE id = %s;",
            (str(exam_id),),
        )

    def list_modules(self, exam_id: str) -> List[ExamModule]:
        rows = self.fetch_all("""
            SELECT id, module_number, title, description, time_limit_seconds, calculator_allowed
              FROM public.exam_modules
             WHERE exam_id = %s
             ORDER BY module_number NULLS LAST, title;
        """, (str(exam_id),))
        return [ExamModule.from_row(r, default_time_limit=self.default_time_limit) for r in (rows or [])]

    def load_module(self, exam_id: str, module_number: int) -> Optional[ExamModule]:
        row = self.fetch_one("""
            SELECT id, module_number, title, description, time_limit_seconds, calculator_allowed
              FROM public.exam_modules
             WHERE exam_id = %s AND module_number = %s;
        """, (str(exam_id), int(module_number)))
        if not row:
            return None
        return ExamModule.from_row(row, questions=tuple(self.load_questions(row["id"])),
                                   default_time_limit=self.default_time_limit)

    def _question_from_row(self, row: Dict[str, Any], fallback_id: str) -> QuestionRecord:
        doc = _loads(row.get("payload"), {})
        if not isinstance(doc, dict):
            doc = {}
        doc = dict(doc)
        if row.get("id") and not doc.get("id"):
            doc["id"] = row["id"]
        if row.get("subcategory_id") and not (doc.get("subcategoryId") or doc.get("subcategory_id")):
            doc["subcategoryId"] = row["subcategory_id"]
        return QuestionRecord.from_doc(doc, fallback_id=fallback_id)

    def load_questions(self, module_id: str) -> List[QuestionRecord]:
        rows = self.fetch_all("""
            SELECT id, subcategory_id, payload
              FROM public.exam_questions
             WHERE module_id = %s
             ORDER BY position, id;
        """, (str(module_id),))
        return [self._question_from_row(r, f"practice-{module_id}-q-{i}") for i, r in enumerate(rows or [])]

    def load_question(self, question_id: str) -> Optional[QuestionRecord]:
        row = self.fetch_one(
            "SELECT id, subcategory_id, payload FROM public.exam_questions WHERE id = %s;",
            (str(question_id),),
        )
        return self._question_from_row(row, str(question_id)) if row else None

    # ---- results ------------------------------------------------------------
    def save_result(self, user_id: Optional[int], result: ExamResult,
                    rollups: Optional[Dict[str, Dict[str, Any]]] = None) -> str:
        """Result, responses, rollups and checkpoint removal in one transaction."""
        result_id = uuid.uuid4().hex
        stmts: List[Statement] = [("""
            INSERT INTO public.exam_results
                (id, user_id, exam_id, exam_title, overall_score, rw_score, math_score,
                 total_questions, correct_answers, modules, completed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, COALESCE(%s::timestamptz, now()));
        """, (
            result_id, user_id, result.exam_id, result.exam_title, result.overall_score,
            int(result.scores.get("readingWriting") or 0), int(result.scores.get("math") or 0),
            result.total_questions, result.correct_answers, _json(result.modules), result.completed_at,
        ))]

        for pos, r in enumerate(result.responses):
            stmts.append(("""
                INSERT INTO public.exam_responses
                    (result_id, position, question_id, module_id, module_number, subcategory_id,
                     user_answer, correct_answer, is_correct, answered_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s::timestamptz);
            """, (
                result_id, pos, r.get("questionId"), r.get("moduleId"), r.get("moduleNumber"),
                r.get("subcategoryId"), r.get("userAnswer"), _json(r.get("correctAnswer")),
                bool(r.get("isCorrect")), r.get("timestamp"),
            )))

        if user_id is not None:
            for sub, node in (rollups or {}).items():
                # counts accumulate; level is only inferred the first time
                stmts.append(("""
                    INSERT INTO public.subcategory_progress
                        (user_id, subcategory_id, correct, total, accuracy, level, question_results, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, now())
                    ON CONFLICT (user_id, subcategory_id) DO UPDATE SET
                        correct = subcategory_progress.correct + EXCLUDED.correct,
                        total   = subcategory_progress.total + EXCLUDED.total,
                        accuracy = ROUND(100.0 * (subcategory_progress.correct + EXCLUDED.correct)
                                         / GREATEST(subcategory_progress.total + EXCLUDED.total, 1), 2),
                        question_results = subcategory_progress.question_results || EXCLUDED.question_results,
                        updated_at = now();
                """, (
                    user_id, sub, int(node.get("correct") or 0), int(node.get("total") or 0),
                    node.get("accuracy") or 0, int(node.get("level") or 1),
                    _json(node.get("questionResults") or {}),
                )))
            stmts.append((
                "DELETE FROM public.exam_checkpoints WHERE user_id = %s AND exam_id = %s;",
                (user_id, result.exam_id),
            ))

        self.execute_batch(stmts)
        print(f"[store] saved result {result_id} ({len(result.responses)} responses, "
              f"{len(rollups or {})} subcategories)")
        return result_id

    def load_result(self, user_id: Optional[int], result_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetch_one("""
            SELECT id, exam_id, exam_title, overall_score, rw_score, math_score,
                   total_questions, correct_answers, modules, completed_at
              FROM public.exam_results
             WHERE id = %s AND user_id IS NOT DISTINCT FROM %s;
        """, (str(result_id), user_id))
        if not row:
            return None
        responses = self.fetch_all("""
            SELECT question_id, module_id, module_number, subcategory_id,
                   user_answer, correct_answer, is_correct, answered_at
              FROM public.exam_responses
             WHERE result_id = %s
             ORDER BY position;
        """, (row["id"],))
        out = self._result_summary(row)
        out["modules"] = _loads(row.get("modules"), [])
        out["responses"] = [{
            "questionId": r.get("question_id"),
            "userAnswer": r.get("user_answer"),
            "correctAnswer": _loads(r.get("correct_answer"), r.get("correct_answer")),
            "isCorrect": bool(r.get("is_correct")),
            "moduleId": r.get("module_id"),
            "moduleNumber": r.get("module_number"),
            "subcategoryId": r.get("subcategory_id"),
            "timestamp": _iso(r.get("answered_at")),
        } for r in (responses or [])]
        return out

    def list_results(self, user_id: Optional[int], limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT id, exam_id, exam_title, overall_score, rw_score, math_score,
                   total_questions, correct_answers, completed_at
              FROM public.exam_results
             WHERE user_id IS NOT DISTINCT FROM %s
             ORDER BY completed_at DESC
             LIMIT %s;
        """, (user_id, int(limit)))
        return [self._result_summary(r) for r in (rows or [])]

    @staticmethod
    def _result_summary(row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "resultId": row.get("id"),
            "examId": row.get("exam_id"),
            "examTitle": row.get("exam_title"),
            "overallScore": int(row.get("overall_score") or 0),
            "scores": {
                "readingWriting": int(row.get("rw_score") or 0),
                "math": int(row.get("math_score") or 0),
            },
            "totalQuestions": int(row.get("total_questions") or 0),
            "correctAnswers": int(row.get("correct_answers") or 0),
            "completedAt": _iso(row.get("completed_at")),
        }

    # ---- checkpoints --------------------------------------------------------
    def save_checkpoint(self, user_id: Optional[int], exam_id: str, snapshot: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.exam_checkpoints (user_id, exam_id, snapshot, updated_at)
            VALUES (%s, %s, %s::jsonb, now())
            ON CONFLICT (user_id, exam_id) DO UPDATE SET
                snapshot = EXCLUDED.snapshot, updated_at = now();
        """, (user_id, str(exam_id), _json(snapshot)))

    def load_checkpoint(self, user_id: Optional[int], exam_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetch_one(
            "SELECT snapshot FROM public.exam_checkpoints WHERE user_id = %s AND exam_id = %s;",
            (user_id, str(exam_id)),
        )
        if not row:
            return None
        snap = _loads(row.get("snapshot"), None)
        return snap if isinstance(snap, dict) else None

    def clear_checkpoint(self, user_id: Optional[int], exam_id: str) -> None:
        self.execute(
            "DELETE FROM public.exam_checkpoints WHERE user_id = %s AND exam_id = %s;",
            (user_id, str(exam_id)),
        )

    # ---- tutor history ------------------------------------------------------
    def save_chat_message(self, user_id: Optional[int], quiz_id: Optional[str],
                          question_id: Optional[str], role: str, content: str) -> None:
        self.execute("""
            INSERT INTO public.assistant_chats (user_id, quiz_id, question_id, role, content)
            VALUES (%s, %s, %s, %s, %s);
        """, (user_id, quiz_id, question_id, role, content))
