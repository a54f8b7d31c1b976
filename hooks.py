"""Observer hooks for the interpreter.

Handlers are registered per event name and run in priority order (highest
first). Step rules run after every ``every_n``-th recorded step. Hooks can
observe the live interpreter but are not part of the recorded trace; a handler
that raises aborts the run with a ``HOOK`` runtime error.

Events: ``program_start``, ``before_statement``, ``after_statement``,
``before_call``, ``after_call``, ``on_error``, ``program_end``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from heap import TraceError


EVENTS = frozenset(
    {
        "program_start",
        "before_statement",
        "after_statement",
        "before_call",
        "after_call",
        "on_error",
        "program_end",
    }
)


class HookError(TraceError):
    pass


@dataclass(frozen=True)
class StepContext:
    step_index: int
    label: str
    line: int


@dataclass
class HookRegistry:
    # event -> list[(priority, handler)]
    _events: Dict[str, List[Tuple[int, Callable[..., None]]]] = field(default_factory=dict)
    # list[(every_n, handler, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if event not in EVENTS:
            raise HookError(f"Unknown event '{event}'")
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self.on_event(event, fn, priority=priority)
                return fn
            return deco
        self._events.setdefault(event, []).append((priority, handler))
        self._events[event].sort(key=lambda t: t[0], reverse=True)
        return handler

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, every_n: int, handler: Callable[[Any, StepContext], None], name: str = "") -> None:
        if every_n <= 0:
            raise HookError("every_n must be >= 1")
        self._step_rules.append((every_n, handler, name or getattr(handler, "__name__", "rule")))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)
