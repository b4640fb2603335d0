import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from marketplace.services.effects import Effect, EffectsDispatcher

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One atomic database transaction plus the effects it unlocks.

    Usage::

        with UnitOfWork(db, dispatcher) as uow:
            db.add(order)
            uow.add_effect("notify", notifier.order_placed, notice)

    The session is committed when the block exits cleanly and rolled back when
    it raises. Queued effects are handed to the dispatcher only after the
    commit succeeded; on rollback they are discarded. Code inside the block
    must not perform non-transactional I/O itself.
    """

    def __init__(self, db: Session, dispatcher: EffectsDispatcher | None = None):
        self.db = db
        self._dispatcher = dispatcher
        self._effects: list[Effect] = []

    def add_effect(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        self._effects.append(Effect(name=name, fn=fn, args=args, kwargs=kwargs))

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.db.rollback()
            self._effects.clear()
            return False

        try:
            self.db.commit()
        except Exception:
            logger.exception("Commit failed, rolling back unit of work")
            self.db.rollback()
            self._effects.clear()
            raise

        effects, self._effects = self._effects, []
        if effects and self._dispatcher is not None:
            self._dispatcher.dispatch(effects)
        return False
