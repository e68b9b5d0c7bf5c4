from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from salesbot.logging_config import get_logger
from salesbot.models import Product
from salesbot.schemas.product import PriceRange, ProductItem

logger = get_logger("inventory_service")


class Inventory:
    """Immutable catalog snapshot used for one turn."""

    def __init__(self, products: Sequence[ProductItem] = ()):
        self.products: tuple[ProductItem, ...] = tuple(products)
        self._by_id = {p.id: p for p in self.products}

    def find(self, product_id: Optional[str]) -> Optional[ProductItem]:
        if not product_id:
            return None
        return self._by_id.get(str(product_id).strip())

    def __len__(self) -> int:
        return len(self.products)

    def __iter__(self):
        return iter(self.products)


class InventoryStore:
    """Product catalog kept in SQL; readers get a consistent snapshot."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory
        self._snapshot = Inventory()

    def load(self) -> int:
        if self._session_factory is None:
            return len(self._snapshot)
        db = self._session_factory()
        try:
            rows = db.query(Product).order_by(Product.position).all()
            self._snapshot = Inventory([_to_item(row) for row in rows])
        except Exception as exc:
            logger.error("Inventory load failed", extra={"context": {"error": str(exc)}})
            self._snapshot = Inventory()
        finally:
            db.close()
        logger.info(f"Loaded {len(self._snapshot)} inventory items")
        return len(self._snapshot)

    def snapshot(self) -> Inventory:
        return self._snapshot

    def replace(self, products: Sequence[ProductItem]) -> Inventory:
        """Swap the whole catalog. The new snapshot is visible only after the write succeeds."""
        if self._session_factory is not None:
            db = self._session_factory()
            try:
                db.query(Product).delete()
                for position, item in enumerate(products):
                    db.add(
                        Product(
                            id=item.id,
                            position=position,
                            category=item.category,
                            name=item.name,
                            price_min=item.price_range.min,
                            price_max=item.price_range.max,
                            description=item.description,
                            specs=dict(item.specs),
                            images=list(item.images),
                        )
                    )
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        self._snapshot = Inventory(products)
        logger.info(f"Inventory replaced with {len(self._snapshot)} items")
        return self._snapshot


def _to_item(row: Product) -> ProductItem:
    return ProductItem(
        id=row.id,
        category=row.category,
        name=row.name,
        price_range=PriceRange(min=row.price_min, max=row.price_max),
        description=row.description or "",
        specs=row.specs or {},
        images=row.images or [],
    )
