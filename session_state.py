# session_state.py
# -----------------------------------------------------------------------------
# Per-module mutable state: the Answer Ledger and the Session Clock.
# Both are plain in-memory objects; the orchestrator owns them and serializes
# their snapshots into checkpoints.
# -----------------------------------------------------------------------------

from __future__ import annotations

import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional


class LedgerFrozenError(RuntimeError):
    pass


def crossed_out_key(question_index: int, option_letter: str) -> str:
    return f"{int(question_index)}-{str(option_letter).strip().upper()}"


def normalize_answers(raw: Any) -> Dict[int, str]:
    """Accept list-backed or mapping-backed answers; return {int index: str}."""
    out: Dict[int, str] = {}
    if not raw:
        return out
    if isinstance(raw, (list, tuple)):
        items: Iterable = enumerate(raw)
    elif isinstance(raw, Mapping):
        items = raw.items()
    else:
        return out
    for k, v in items:
        if v is None:
            continue
        if isinstance(v, dict):
            # saved drafts may carry {"text": "..."}
            v = v.get("text")
            if v is None:
                continue
        try:
            idx = int(k)
        except (TypeError, ValueError):
            continue
        if idx < 0:
            continue
        out[idx] = str(v)
    return out


# -------------------------------- Answer Ledger --------------------------------
@dataclass(frozen=True)
class LedgerSnapshot:
    answers: Mapping[int, str]
    crossed_out: Mapping[str, bool]
    marked_for_review: frozenset

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answers": {str(k): v for k, v in sorted(self.answers.items())},
            "crossedOut": dict(self.crossed_out),
            "markedForReview": sorted(self.marked_for_review),
        }


class AnswerLedger:
    def __init__(self, answers: Any = None,
                 crossed_out: Optional[Mapping[str, Any]] = None,
                 marked_for_review: Optional[Iterable[Any]] = None):
        self._answers: Dict[int, str] = normalize_answers(answers)
        self._crossed_out: Dict[str, bool] = {str(k): bool(v) for k, v in (crossed_out or {}).items()}
        self._marked: set = set()
        for m in (marked_for_review or []):
            try:
                self._marked.add(int(m))
            except (TypeError, ValueError):
                continue
        self._frozen = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AnswerLedger":
        data = data or {}
        return cls(
            answers=data.get("answers"),
            crossed_out=data.get("crossedOut") or data.get("crossed_out"),
            marked_for_review=data.get("markedForReview") or data.get("marked_for_review"),
        )

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self):
        if self._frozen:
            raise LedgerFrozenError("answer ledger is frozen")

    def freeze(self) -> None:
        self._frozen = True

    def set_answer(self, question_index: int, value: Any) -> None:
        self._check_mutable()
        self._answers[int(question_index)] = "" if value is None else str(value)

    def get_answer(self, question_index: int) -> Optional[str]:
        return self._answers.get(int(question_index))

    def toggle_crossed_out(self, question_index: int, option_letter: str) -> bool:
        self._check_mutable()
        key = crossed_out_key(question_index, option_letter)
        self._crossed_out[key] = not self._crossed_out.get(key, False)
        return self._crossed_out[key]

    def is_crossed_out(self, question_index: int, option_letter: str) -> bool:
        return self._crossed_out.get(crossed_out_key(question_index, option_letter), False)

    def toggle_marked_for_review(self, question_index: int) -> bool:
        self._check_mutable()
        idx = int(question_index)
        if idx in self._marked:
            self._marked.discard(idx)
            return False
        self._marked.add(idx)
        return True

    def is_marked(self, question_index: int) -> bool:
        return int(question_index) in self._marked

    def answered_count(self) -> int:
        return sum(1 for v in self._answers.values() if v.strip())

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            answers=MappingProxyType(dict(self._answers)),
            crossed_out=MappingProxyType(dict(self._crossed_out)),
            marked_for_review=frozenset(self._marked),
        )


# -------------------------------- Session Clock --------------------------------
class SessionClock:
    """Countdown in whole seconds.

    Nothing ticks on its own: callers either invoke tick() directly or call
    catch_up() with the current time, which converts elapsed wall time into
    ticks. Expiry fires the callback exactly once.
    """

    def __init__(self, remaining_seconds: int,
                 on_expire: Optional[Callable[[], None]] = None,
                 time_source: Callable[[], float] = time.monotonic):
        self.remaining_seconds = max(0, int(remaining_seconds or 0))
        self.running = False
        self.paused = False
        self._on_expire = on_expire
        self._expired = False
        self._time = time_source
        self._anchor: Optional[float] = None

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self) -> None:
        if self.running or self._expired:
            return
        self.running = True
        self.paused = False
        self._anchor = self._time()
        if self.remaining_seconds <= 0:
            self._expire()

    def tick(self) -> bool:
        """One second of countdown. Returns True if this tick expired the clock."""
        if not self.running or self.paused or self._expired:
            return False
        self.remaining_seconds = max(0, self.remaining_seconds - 1)
        if self.remaining_seconds == 0:
            self._expire()
            return True
        return False

    def catch_up(self, now: Optional[float] = None) -> int:
        if not self.running or self.paused or self._anchor is None:
            return 0
        now = self._time() if now is None else now
        whole = int(now - self._anchor)
        if whole <= 0:
            return 0
        self._anchor += whole
        ticks = 0
        for _ in range(whole):
            ticks += 1
            if self.tick():
                break
        return ticks

    def pause(self) -> None:
        if not self.running or self.paused:
            return
        self.catch_up()
        if not self.running:
            return
        self.paused = True

    def resume(self) -> None:
        if not self.running or not self.paused:
            return
        self.paused = False
        self._anchor = self._time()

    def stop(self) -> None:
        """Halt without firing expiry."""
        self.running = False
        self._anchor = None

    def _expire(self) -> None:
        if self._expired:
            return
        self._expired = True
        self.running = False
        self._anchor = None
        if self._on_expire:
            self._on_expire()

    def snapshot(self) -> Dict[str, Any]:
        return {"remainingSeconds": self.remaining_seconds, "running": self.running, "paused": self.paused}
