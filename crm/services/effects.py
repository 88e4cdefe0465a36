"""
Best-effort side effects.

Route handlers commit their primary change first, then hand a list of effects
(notifications, realtime pushes, emails) to `run_effects`. Each effect runs in
isolation: a failure is logged and the next effect still runs, so a side
channel can never turn a committed mutation into an error response.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from fastapi import BackgroundTasks


@dataclass
class Effect:
    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EffectResult:
    name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


def run_effects(effects: Iterable[Effect]) -> List[EffectResult]:
    log = structlog.get_logger()
    results: List[EffectResult] = []
    for effect in effects:
        try:
            value = effect.fn(*effect.args, **effect.kwargs)
            results.append(EffectResult(effect.name, True, value))
        except Exception as e:
            log.warning("effect_failed", effect=effect.name, error=str(e))
            results.append(EffectResult(effect.name, False, error=str(e)))
    return results


def defer_effects(background_tasks: Optional[BackgroundTasks], effects: List[Effect]) -> None:
    """Run effects after the response is sent (email and other slow I/O)."""
    if not effects:
        return
    if background_tasks is None:
        run_effects(effects)
        return
    background_tasks.add_task(run_effects, effects)
