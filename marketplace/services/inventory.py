import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketplace.models import Product, User
from marketplace.services.errors import (
    InsufficientStockError,
    ProductUnavailableError,
    UnverifiedSellerError,
)

logger = logging.getLogger(__name__)


class InventoryGuard:
    """Availability checks and atomic stock counters for products."""

    def check(self, db: Session, product_id: int, quantity: int) -> Product:
        """Validate that ``quantity`` units of the product can be ordered right now.

        Returns the current product row. Read-only: the authoritative guard
        against overselling is :meth:`reserve`.
        """
        product = (
            db.query(Product)
            .filter(Product.id == product_id, Product.is_active.is_(True))
            .first()
        )
        if product is None:
            raise ProductUnavailableError(product_id)

        seller = db.query(User).filter(User.id == product.seller_id).first()
        if seller is None or not seller.is_verified or not seller.is_active:
            raise UnverifiedSellerError(product_id)

        if product.stock_quantity < quantity:
            raise InsufficientStockError(product_id, quantity, product.name)
        return product

    def reserve(self, db: Session, product_id: int, quantity: int) -> None:
        """Decrement stock only if at least ``quantity`` units remain.

        Issued as one conditional UPDATE so concurrent reservations for the
        same product serialize on the row instead of racing a read.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        result = db.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.stock_quantity >= quantity,
            )
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug("Reserved %s unit(s) of product %s", quantity, product_id)
            return

        product = db.query(Product).populate_existing().filter(Product.id == product_id).first()
        if product is None or not product.is_active:
            raise ProductUnavailableError(product_id)
        logger.info(
            "Stock reservation rejected for product %s: requested=%s available=%s",
            product_id,
            quantity,
            product.stock_quantity,
        )
        raise InsufficientStockError(product_id, quantity, product.name)

    def release(self, db: Session, product_id: int, quantity: int) -> None:
        """Return previously reserved units to stock."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        logger.debug("Released %s unit(s) of product %s", quantity, product_id)
