import pytest

from module_runner import ModuleCompletedError, ModuleRunner
from session_state import AnswerLedger


def _runner(module, fake_time, **kwargs):
    results = []
    runner = ModuleRunner(module, on_complete=results.append, time_source=fake_time, **kwargs)
    runner.start()
    return runner, results


def test_next_through_module_completes_exactly_once(module_factory, fake_time):
    runner, results = _runner(module_factory(1, n_questions=3), fake_time)
    for _ in range(3):
        runner.next()
    assert runner.completed
    assert len(results) == 1

    # a late expiry and further "Next" clicks are harmless
    runner._on_clock_expired()
    assert runner.next() is False
    fake_time.advance(5000)
    runner.sync()
    assert len(results) == 1
    assert results[0].expired is False


def test_expiry_then_navigation_emits_once(module_factory, fake_time):
    runner, results = _runner(module_factory(1, n_questions=3), fake_time, remaining_seconds=1)
    runner.select_answer("beta")
    runner.clock.tick()

    assert runner.completed
    assert runner.next() is False
    assert runner.complete() is None
    assert len(results) == 1
    assert results[0].expired is True
    assert results[0].answers == {0: "beta"}


def test_clock_expiry_through_sync(module_factory, fake_time):
    runner, results = _runner(module_factory(1, time_limit=60), fake_time)
    fake_time.advance(59)
    runner.sync()
    assert not runner.completed
    fake_time.advance(1)
    runner.sync()
    assert runner.completed
    assert results[0].remaining_seconds == 0


def test_complete_twice_leaves_frozen_ledger_unchanged(module_factory, fake_time):
    runner, results = _runner(module_factory(1), fake_time)
    runner.select_answer("alpha")
    first = runner.complete()
    before = runner.ledger.snapshot()

    assert runner.complete() is None
    assert runner.ledger.frozen
    assert runner.ledger.snapshot() == before
    assert results == [first]
    with pytest.raises(ModuleCompletedError):
        runner.select_answer("beta")
    with pytest.raises(ModuleCompletedError):
        runner.toggle_cross_out("A")
    with pytest.raises(ModuleCompletedError):
        runner.pause()


def test_navigation_persists_displayed_answer(module_factory, fake_time):
    runner, _ = _runner(module_factory(1, n_questions=3), fake_time)
    runner.select_answer("gamma")
    runner.next()
    assert runner.current_index == 1
    assert runner.selected_answer is None

    runner.next(answer="delta")
    runner.prev()
    assert runner.current_index == 1
    assert runner.selected_answer == "delta"

    runner.go_to_question(0)
    assert runner.selected_answer == "gamma"


def test_go_to_question_clamps(module_factory, fake_time):
    runner, _ = _runner(module_factory(1, n_questions=3), fake_time)
    runner.go_to_question(99)
    assert runner.current_index == 2
    runner.go_to_question(-4)
    assert runner.current_index == 0
    runner.prev()
    assert runner.current_index == 0


def test_annotations_show_in_view_without_answer_key(module_factory, fake_time):
    runner, _ = _runner(module_factory(3), fake_time)
    runner.toggle_cross_out("B")
    runner.toggle_marked_for_review()
    runner.select_answer("alpha")

    view = runner.view()
    assert view["crossedOut"] == {"A": False, "B": True, "C": False, "D": False}
    assert view["markedForReview"] is True
    assert view["selectedAnswer"] == "alpha"
    assert view["answeredCount"] == 1
    assert view["calculatorAllowed"] is True
    assert view["isFirstQuestion"] and not view["isLastQuestion"]
    assert "correctAnswer" not in view["question"]
    assert view["tracker"][0] == {"index": 0, "answered": True, "markedForReview": True}


def test_zero_question_module_completes_on_start(module_factory, fake_time):
    runner, results = _runner(module_factory(2, n_questions=0), fake_time)
    assert runner.completed
    assert len(results) == 1
    assert results[0].answers == {}


def test_pause_stops_the_clock(module_factory, fake_time):
    runner, _ = _runner(module_factory(1, time_limit=100), fake_time)
    fake_time.advance(10)
    runner.pause()
    fake_time.advance(50)
    runner.sync()
    assert runner.clock.remaining_seconds == 90
    assert runner.view()["paused"] is True
    runner.resume()
    fake_time.advance(5)
    runner.sync()
    assert runner.clock.remaining_seconds == 85


def test_preset_ledger_and_time(module_factory, fake_time):
    ledger = AnswerLedger({1: "beta"})
    runner, _ = _runner(module_factory(1, n_questions=3), fake_time,
                        ledger=ledger, remaining_seconds=400, current_index=1)
    assert runner.clock.remaining_seconds == 400
    assert runner.selected_answer == "beta"

    snap = runner.snapshot()
    assert snap["currentQuestion"] == 1
    assert snap["remainingSeconds"] == 400
    assert snap["ledger"]["answers"] == {"1": "beta"}
