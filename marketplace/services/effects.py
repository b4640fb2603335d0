import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Effect:
    """A side effect queued by a unit of work, run only after it commits."""

    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)


class EffectsDispatcher:
    """Runs post-commit effects best-effort.

    Effects go to ``executor`` when one is given and run inline otherwise.
    An effect that raises is logged and dropped; it never reaches the caller
    and never undoes committed state.
    """

    def __init__(self, executor: Executor | None = None):
        self._executor = executor

    def dispatch(self, effects: list[Effect]) -> None:
        for effect in effects:
            if self._executor is None:
                self._run(effect)
            else:
                self._executor.submit(self._run, effect)

    def _run(self, effect: Effect) -> bool:
        try:
            effect.fn(*effect.args, **effect.kwargs)
        except Exception:
            logger.exception("Post-commit effect %s failed", effect.name)
            return False
        logger.debug("Post-commit effect %s completed", effect.name)
        return True


def build_default_dispatcher(max_workers: int) -> EffectsDispatcher:
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="effects")
    return EffectsDispatcher(executor=executor)
