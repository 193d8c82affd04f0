import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_models import ExamModule, QuestionRecord  # noqa: E402

OPTIONS = ("alpha", "beta", "gamma", "delta")


class FakeTime:
    def __init__(self, start=1000.0):
        self.t = start

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class FakeStore:
    """In-memory stand-in for ExamStore."""

    def __init__(self, exams):
        self.exams = exams
        self.saved = []
        self.checkpoints = {}
        self.chats = []
        self.module_lookups = []
        self.fail_save = False
        self.fail_checkpoint = False

    def list_exams(self):
        return [{"id": k, "title": v["title"], "description": "",
                 "moduleCount": len(v["modules"]), "questionCount": 0}
                for k, v in self.exams.items()]

    def load_exam(self, exam_id):
        e = self.exams.get(exam_id)
        return {"id": exam_id, "title": e["title"], "description": e.get("description", "")} if e else None

    def list_modules(self, exam_id):
        return [ExamModule(module_number=m.module_number, title=m.title,
                           time_limit_seconds=m.time_limit_seconds,
                           calculator_allowed=m.calculator_allowed, id=m.id)
                for m in self.exams[exam_id]["modules"]]

    def load_module(self, exam_id, module_number):
        self.module_lookups.append((exam_id, module_number))
        for m in self.exams[exam_id]["modules"]:
            if m.module_number == module_number:
                return m
        return None

    def load_questions(self, module_id):
        for e in self.exams.values():
            for m in e["modules"]:
                if m.id == module_id:
                    return list(m.questions)
        return []

    def load_question(self, question_id):
        for e in self.exams.values():
            for m in e["modules"]:
                for q in m.questions:
                    if q.id == question_id:
                        return q
        return None

    def save_result(self, user_id, result, rollups=None):
        if self.fail_save:
            raise RuntimeError("db down")
        result_id = f"r{len(self.saved) + 1}"
        self.saved.append({"user_id": user_id, "result": result, "rollups": rollups, "id": result_id})
        self.checkpoints.pop((user_id, result.exam_id), None)
        return result_id

    def list_results(self, user_id):
        return [{"resultId": s["id"], "overallScore": s["result"].overall_score}
                for s in self.saved if s["user_id"] == user_id]

    def load_result(self, user_id, result_id):
        for s in self.saved:
            if s["user_id"] == user_id and s["id"] == result_id:
                return s["result"].to_dict()
        return None

    def save_checkpoint(self, user_id, exam_id, snapshot):
        if self.fail_checkpoint:
            raise RuntimeError("db down")
        self.checkpoints[(user_id, exam_id)] = snapshot

    def load_checkpoint(self, user_id, exam_id):
        return self.checkpoints.get((user_id, exam_id))

    def clear_checkpoint(self, user_id, exam_id):
        self.checkpoints.pop((user_id, exam_id), None)

    def save_chat_message(self, user_id, quiz_id, question_id, role, content):
        self.chats.append((user_id, quiz_id, question_id, role, content))


def build_module(number, n_questions=2, time_limit=1920, module_id=None):
    mid = module_id or f"m{number}"
    questions = tuple(
        QuestionRecord(
            id=f"{mid}-q{j}", text=f"Question {j} of module {number}",
            options=OPTIONS, correct_answer=0, question_type="multiple-choice",
            subcategory_id=f"sub-{number}",
        )
        for j in range(n_questions)
    )
    return ExamModule(module_number=number, title=f"Module {number}",
                      time_limit_seconds=time_limit, calculator_allowed=number > 2,
                      questions=questions, id=mid)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def make_store():
    def _make(modules=None, exam_id="exam-1", title="Practice Test 1"):
        if modules is None:
            modules = [build_module(n) for n in (1, 2, 3, 4)]
        return FakeStore({exam_id: {"title": title, "modules": list(modules)}})
    return _make


@pytest.fixture
def module_factory():
    return build_module
