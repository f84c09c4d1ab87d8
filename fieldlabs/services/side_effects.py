"""
Deferred side-effect runner.

Work that must not block or fail the caller (auto-linking a freshly
confirmed observation, for example) is submitted here instead of being
fired off as a detached coroutine or thread.

Modes (app.config["SIDE_EFFECTS_MODE"]):
    inline  Run immediately, after the caller has committed, inside a
            savepoint. A failure rolls back only that task's writes.
    queued  Hold tasks in a bounded FIFO until drain() is called. When the
            queue is full the oldest task is run to make room.

Either way a failing task is logged and never re-raised. The last
SIDE_EFFECT_QUEUE_LIMIT failures stay inspectable on ``failures``. Tests can
call drain() to deterministically wait for queued work.

Usage:
    from fieldlabs.services.side_effects import get_side_effects

    get_side_effects().submit("observation_linking", link_fn, observation_id)
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from flask import current_app

from fieldlabs.models import db

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "fieldlabs_side_effects"
_VALID_MODES = ("inline", "queued")


@dataclass
class SideEffect:
    """One unit of deferred work."""

    label: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SideEffectOutcome:
    label: str
    ok: bool
    error: str | None = None


class SideEffectQueue:
    """Runs or queues side effects and records their outcomes."""

    def __init__(self, mode: str = "inline", limit: int = 100):
        if mode not in _VALID_MODES:
            raise ValueError(f"SIDE_EFFECTS_MODE must be one of: {', '.join(_VALID_MODES)}")
        self.mode = mode
        self.limit = max(1, limit)
        self._pending: deque[SideEffect] = deque()
        # Most recent failures only; older ones are already in the log
        self.failures: deque[SideEffectOutcome] = deque(maxlen=self.limit)

    def submit(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        """Run (inline) or enqueue (queued) ``fn(*args, **kwargs)``."""
        effect = SideEffect(label=label, fn=fn, args=args, kwargs=kwargs)
        if self.mode == "inline":
            self._run(effect)
            return

        while len(self._pending) >= self.limit:
            self._run(self._pending.popleft())
        self._pending.append(effect)

    def drain(self) -> list[SideEffectOutcome]:
        """Run every queued side effect in submission order."""
        outcomes = []
        while self._pending:
            outcomes.append(self._run(self._pending.popleft()))
        return outcomes

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear(self) -> None:
        """Discard queued work and recorded failures."""
        self._pending.clear()
        self.failures.clear()

    def _run(self, effect: SideEffect) -> SideEffectOutcome:
        try:
            with db.session.begin_nested():
                effect.fn(*effect.args, **effect.kwargs)
            db.session.commit()
        except Exception as exc:
            logger.exception(
                "Side effect %s failed", effect.label,
                extra={"side_effect": effect.label},
            )
            outcome = SideEffectOutcome(label=effect.label, ok=False, error=str(exc))
            self.failures.append(outcome)
            return outcome
        return SideEffectOutcome(label=effect.label, ok=True)


def init_side_effects(app) -> SideEffectQueue:
    """Attach a SideEffectQueue to the app (called from create_app)."""
    queue = SideEffectQueue(
        mode=app.config.get("SIDE_EFFECTS_MODE", "inline"),
        limit=app.config.get("SIDE_EFFECT_QUEUE_LIMIT", 100),
    )
    app.extensions[_EXTENSION_KEY] = queue
    return queue


def get_side_effects() -> SideEffectQueue:
    """Return the current app's SideEffectQueue."""
    return current_app.extensions[_EXTENSION_KEY]
