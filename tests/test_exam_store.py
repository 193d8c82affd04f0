import json

from exam_models import ExamResult
from exam_store import SCHEMA_SQL, ExamStore


class FakeDB:
    def __init__(self, one=None, rows=None):
        self.one = one or {}
        self.rows = rows or {}
        self.executed = []
        self.batches = []

    def _match(self, table, sql):
        for key, val in table.items():
            if key in sql:
                return val
        return None

    def fetch_one(self, sql, params=()):
        return self._match(self.one, sql)

    def fetch_all(self, sql, params=()):
        return self._match(self.rows, sql) or []

    def execute(self, sql, params=()):
        self.executed.append((sql, params))

    def execute_batch(self, statements):
        self.batches.append(list(statements))

    def deps(self, batch=True):
        d = {"fetch_one": self.fetch_one, "fetch_all": self.fetch_all, "execute": self.execute}
        if batch:
            d["execute_batch"] = self.execute_batch
        return d


def _result(responses):
    return ExamResult(
        exam_id="exam-1", exam_title="Practice Test 1 - May 1, 2024",
        overall_score=50, scores={"readingWriting": 500, "math": 200},
        total_questions=len(responses), correct_answers=1,
        modules=[{"id": "m1", "title": "Module 1", "moduleNumber": 1, "calculatorAllowed": False}],
        responses=responses, completed_at="2024-05-01T10:00:00+00:00",
    )


def test_ensure_schema_runs_as_one_batch():
    db = FakeDB()
    ExamStore(db.deps()).ensure_schema()
    assert len(db.batches) == 1
    sqls = [s for s, _ in db.batches[0]]
    assert sqls == SCHEMA_SQL
    assert any("exam_checkpoints" in s for s in sqls)


def test_load_questions_normalizes_payloads():
    db = FakeDB(rows={"FROM public.exam_questions": [
        {"id": "q-1", "subcategory_id": "algebra",
         "payload": json.dumps({"text": "2x = 4", "options": [], "correctAnswer": "2"})},
        {"id": None, "subcategory_id": None,
         "payload": {"id": "", "question": "x", "options": {"B": "two", "A": "one"}, "correct_answer": "B",
                     "subcategoryId": "words"}},
    ]})
    qs = ExamStore(db.deps()).load_questions("m1")

    assert qs[0].id == "q-1"
    assert qs[0].question_type == "user-input"
    assert qs[0].subcategory_id == "algebra"
    assert qs[1].id == "practice-m1-q-1"
    assert qs[1].options == ("one", "two")
    assert qs[1].is_multiple_choice
    assert qs[1].subcategory_id == "words"


def test_list_modules_applies_default_time_limit():
    db = FakeDB(rows={"FROM public.exam_modules": [
        {"id": "m1", "module_number": 1, "title": "Reading and Writing 1",
         "description": None, "time_limit_seconds": None, "calculator_allowed": False},
        {"id": "m3", "module_number": 3, "title": "Math 1",
         "description": "", "time_limit_seconds": 2100, "calculator_allowed": True},
    ]})
    mods = ExamStore(db.deps(), default_time_limit=1500).list_modules("exam-1")
    assert [m.time_limit_seconds for m in mods] == [1500, 2100]
    assert mods[1].calculator_allowed and mods[1].section == "math"


def test_load_module_by_number_carries_questions():
    db = FakeDB(
        one={"FROM public.exam_modules": {"id": "m3", "module_number": 3, "title": "Math 1",
                                          "description": "", "time_limit_seconds": 0,
                                          "calculator_allowed": True}},
        rows={"FROM public.exam_questions": [
            {"id": "q-1", "subcategory_id": "algebra",
             "payload": {"text": "2x = 4", "options": ["1", "2"], "correctAnswer": 1}},
        ]},
    )
    mod = ExamStore(db.deps(), default_time_limit=1500).load_module("exam-1", 3)
    assert mod.id == "m3"
    assert mod.time_limit_seconds == 1500
    assert [q.id for q in mod.questions] == ["q-1"]
    assert mod.meta()["section"] == "math"

    assert ExamStore(FakeDB().deps()).load_module("exam-1", 9) is None


def test_save_result_is_one_batch():
    db = FakeDB()
    responses = [
        {"questionId": "q1", "userAnswer": "one", "correctAnswer": 0, "isCorrect": True,
         "moduleId": "m1", "moduleNumber": 1, "subcategoryId": "words", "timestamp": "2024-05-01T10:00:00+00:00"},
        {"questionId": "q2", "userAnswer": None, "correctAnswer": 1, "isCorrect": False,
         "moduleId": "m1", "moduleNumber": 1, "subcategoryId": None, "timestamp": "2024-05-01T10:00:00+00:00"},
    ]
    rollups = {"words": {"correct": 1, "total": 1, "accuracy": 100.0, "level": 3,
                         "questionResults": {"q1": True}}}
    result_id = ExamStore(db.deps()).save_result(7, _result(responses), rollups)

    assert len(result_id) == 32
    assert db.executed == []
    (batch,) = db.batches
    sqls = [s for s, _ in batch]
    assert "INSERT INTO public.exam_results" in sqls[0]
    assert sum("INSERT INTO public.exam_responses" in s for s in sqls) == 2
    assert sum("subcategory_progress" in s for s in sqls) == 1
    assert "DELETE FROM public.exam_checkpoints" in sqls[-1]
    assert batch[0][1][0] == result_id
    assert batch[0][1][5:7] == (500, 200)
    assert json.loads(batch[-2][1][6]) == {"q1": True}


def test_save_result_without_batch_helper_runs_sequentially():
    db = FakeDB()
    ExamStore(db.deps(batch=False)).save_result(None, _result([]), {"words": {"correct": 1, "total": 1}})
    # anonymous results skip progress and checkpoint rows
    assert len(db.executed) == 1
    assert "INSERT INTO public.exam_results" in db.executed[0][0]


def test_checkpoint_round_trip_parses_json():
    snap = {"examId": "exam-1", "moduleIndex": 1, "ledgerSnapshots": []}
    db = FakeDB(one={"FROM public.exam_checkpoints": {"snapshot": json.dumps(snap)}})
    store = ExamStore(db.deps())
    store.save_checkpoint(7, "exam-1", snap)

    sql, params = db.executed[0]
    assert "ON CONFLICT (user_id, exam_id)" in sql
    assert json.loads(params[2]) == snap
    assert store.load_checkpoint(7, "exam-1") == snap


def test_load_result_maps_rows():
    db = FakeDB(
        one={"FROM public.exam_results": {
            "id": "abc", "exam_id": "exam-1", "exam_title": "Practice Test 1 - May 1, 2024",
            "overall_score": 50, "rw_score": 500, "math_score": 200, "total_questions": 2,
            "correct_answers": 1, "modules": "[]", "completed_at": None,
        }},
        rows={"FROM public.exam_responses": [
            {"question_id": "q1", "module_id": "m1", "module_number": 1, "subcategory_id": None,
             "user_answer": "one", "correct_answer": "0", "is_correct": True, "answered_at": None},
        ]},
    )
    res = ExamStore(db.deps()).load_result(7, "abc")
    assert res["resultId"] == "abc"
    assert res["scores"] == {"readingWriting": 500, "math": 200}
    assert res["responses"][0]["correctAnswer"] == 0
    assert res["responses"][0]["isCorrect"] is True
    assert ExamStore(FakeDB().deps()).load_result(7, "missing") is None
