"""
Find-or-create resolution of submitted product and store names.
"""

import logging

from .models import DEFAULT_UNIT, ContributionDatabase, EntityKind, Product, Store
from .normalizer import normalize

logger = logging.getLogger(__name__)


class EntityResolver:
    """
    Maps submitted names onto canonical Product/Store records.

    A candidate matches only when its normalized name equals the
    normalized submission (and, for products, quantity and unit are
    identical). Otherwise a new entity is created with the raw name.
    Existing names are never rewritten.
    """

    def __init__(self, db: ContributionDatabase):
        self.db = db

    async def resolve_product(
        self,
        name: str,
        quantity: float | None = None,
        unit: str | None = None,
    ) -> Product:
        quantity = quantity or 1
        unit = unit or DEFAULT_UNIT
        key = normalize(name)

        for candidate in await self.db.find_entities(EntityKind.PRODUCT, name):
            if (
                candidate.normalized_name == key
                and float(candidate.quantity) == float(quantity)
                and candidate.unit == unit
            ):
                return candidate

        product = await self.db.create_entity(
            EntityKind.PRODUCT,
            {"name": name, "quantity": quantity, "unit": unit},
        )
        logger.info(f"Created product {product.id}")
        logger.debug(f"Product {product.id}: {name!r} ({quantity} {unit})")
        return product

    async def resolve_store(self, name: str) -> Store:
        key = normalize(name)

        for candidate in await self.db.find_entities(EntityKind.STORE, name):
            if candidate.normalized_name == key:
                return candidate

        store = await self.db.create_entity(EntityKind.STORE, {"name": name})
        logger.info(f"Created store {store.id}")
        logger.debug(f"Store {store.id}: {name!r}")
        return store
