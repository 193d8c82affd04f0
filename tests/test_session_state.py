import pytest

from session_state import AnswerLedger, LedgerFrozenError, SessionClock


def test_ledger_last_write_wins_and_unwritten_keys_absent():
    ledger = AnswerLedger()
    ledger.set_answer(0, "alpha")
    ledger.set_answer(0, "beta")
    ledger.set_answer(2, "gamma")

    snap = ledger.snapshot()
    assert dict(snap.answers) == {0: "beta", 2: "gamma"}
    assert 1 not in snap.answers


def test_snapshot_does_not_see_later_mutation():
    ledger = AnswerLedger()
    ledger.set_answer(0, "alpha")
    snap = ledger.snapshot()
    ledger.set_answer(0, "delta")
    ledger.toggle_marked_for_review(0)

    assert snap.answers[0] == "alpha"
    assert 0 not in snap.marked_for_review
    with pytest.raises(TypeError):
        snap.answers[1] = "x"


def test_cross_out_and_review_toggles():
    ledger = AnswerLedger()
    assert ledger.toggle_crossed_out(3, "b") is True
    assert ledger.is_crossed_out(3, "B")
    assert ledger.snapshot().crossed_out == {"3-B": True}
    assert ledger.toggle_crossed_out(3, "B") is False

    assert ledger.toggle_marked_for_review(1) is True
    assert ledger.is_marked(1)
    assert ledger.toggle_marked_for_review(1) is False
    assert not ledger.is_marked(1)


def test_frozen_ledger_rejects_mutation():
    ledger = AnswerLedger()
    ledger.set_answer(0, "alpha")
    ledger.freeze()
    with pytest.raises(LedgerFrozenError):
        ledger.set_answer(0, "beta")
    with pytest.raises(LedgerFrozenError):
        ledger.toggle_crossed_out(0, "A")
    with pytest.raises(LedgerFrozenError):
        ledger.toggle_marked_for_review(0)
    assert ledger.get_answer(0) == "alpha"


def test_list_backed_answers_are_normalized():
    ledger = AnswerLedger.from_dict({
        "answers": ["alpha", None, {"text": "12"}],
        "markedForReview": [2, "1"],
    })
    assert dict(ledger.snapshot().answers) == {0: "alpha", 2: "12"}
    assert ledger.snapshot().marked_for_review == frozenset({1, 2})


def test_snapshot_dict_round_trip_keeps_annotations():
    ledger = AnswerLedger()
    ledger.set_answer(1, "beta")
    ledger.toggle_crossed_out(1, "C")
    ledger.toggle_marked_for_review(1)

    data = ledger.snapshot().to_dict()
    assert data == {"answers": {"1": "beta"}, "crossedOut": {"1-C": True}, "markedForReview": [1]}
    assert AnswerLedger.from_dict(data).snapshot() == ledger.snapshot()


def test_answered_count_ignores_blank_answers():
    ledger = AnswerLedger({0: "alpha", 1: "  ", 3: "7"})
    assert ledger.answered_count() == 2


# ---- clock ------------------------------------------------------------------
def test_tick_at_one_second_expires_once(fake_time):
    fired = []
    clock = SessionClock(1, on_expire=lambda: fired.append(1), time_source=fake_time)
    clock.start()

    assert clock.tick() is True
    assert clock.remaining_seconds == 0
    assert clock.expired and not clock.running
    assert clock.tick() is False
    assert fired == [1]


def test_paused_clock_does_not_tick(fake_time):
    clock = SessionClock(10, time_source=fake_time)
    clock.start()
    clock.pause()
    clock.tick()
    fake_time.advance(5)
    clock.catch_up()
    assert clock.remaining_seconds == 10

    clock.resume()
    fake_time.advance(3)
    assert clock.catch_up() == 3
    assert clock.remaining_seconds == 7


def test_catch_up_counts_whole_seconds_only(fake_time):
    clock = SessionClock(100, time_source=fake_time)
    clock.start()
    fake_time.advance(2.5)
    clock.catch_up()
    assert clock.remaining_seconds == 98
    fake_time.advance(0.5)
    clock.catch_up()
    assert clock.remaining_seconds == 97


def test_catch_up_past_zero_fires_expiry_once(fake_time):
    fired = []
    clock = SessionClock(5, on_expire=lambda: fired.append(1), time_source=fake_time)
    clock.start()
    fake_time.advance(60)
    assert clock.catch_up() == 5
    clock.catch_up()
    assert clock.remaining_seconds == 0
    assert fired == [1]


def test_repeated_start_does_not_duplicate(fake_time):
    fired = []
    clock = SessionClock(3, on_expire=lambda: fired.append(1), time_source=fake_time)
    clock.start()
    fake_time.advance(1)
    clock.start()
    clock.catch_up()
    assert clock.remaining_seconds == 2
    fake_time.advance(2)
    clock.catch_up()
    clock.start()

    assert clock.remaining_seconds == 0
    assert fired == [1]


def test_zero_budget_expires_on_start(fake_time):
    fired = []
    clock = SessionClock(0, on_expire=lambda: fired.append(1), time_source=fake_time)
    clock.start()
    assert clock.expired
    assert fired == [1]


def test_stop_halts_without_expiry(fake_time):
    fired = []
    clock = SessionClock(5, on_expire=lambda: fired.append(1), time_source=fake_time)
    clock.start()
    clock.stop()
    fake_time.advance(10)
    clock.catch_up()
    assert clock.remaining_seconds == 5
    assert fired == []
