from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from marketplace.models import Product
from marketplace.services.effects import Effect, EffectsDispatcher
from marketplace.services.unit_of_work import UnitOfWork


def test_effects_run_after_commit(db, seller):
    calls = []
    dispatcher = EffectsDispatcher()

    with UnitOfWork(db, dispatcher) as uow:
        db.add(Product(seller_id=seller.id, name="Lamp", price=12, stock_quantity=1))
        uow.add_effect("record", calls.append, "sent")
        assert calls == []

    assert calls == ["sent"]
    assert db.query(Product).filter(Product.name == "Lamp").count() == 1


def test_effects_are_discarded_on_rollback(db, seller):
    effect = MagicMock()
    dispatcher = EffectsDispatcher()

    with pytest.raises(RuntimeError):
        with UnitOfWork(db, dispatcher) as uow:
            db.add(Product(seller_id=seller.id, name="Lamp", price=12, stock_quantity=1))
            uow.add_effect("never", effect)
            raise RuntimeError("boom")

    effect.assert_not_called()
    assert db.query(Product).filter(Product.name == "Lamp").count() == 0


def test_failing_effect_is_logged_and_does_not_stop_the_rest(caplog):
    survivor = MagicMock()
    dispatcher = EffectsDispatcher()

    dispatcher.dispatch(
        [
            Effect(name="broken", fn=MagicMock(side_effect=RuntimeError("smtp down"))),
            Effect(name="survivor", fn=survivor, args=(1,), kwargs={"flag": True}),
        ]
    )

    survivor.assert_called_once_with(1, flag=True)
    assert "Post-commit effect broken failed" in caplog.text


def test_effects_can_run_on_an_executor():
    done = MagicMock()
    with ThreadPoolExecutor(max_workers=1) as executor:
        EffectsDispatcher(executor=executor).dispatch([Effect(name="async", fn=done)])
    done.assert_called_once()
