"""
catalog.py
==========
Read-only view of products, prices and promotion rules backed by the database.

The engine only needs an object with these methods, so tests can hand it any
stand-in with the same shape:

    resolve_products(refs)  -> {ref: CatalogProduct}   (missing refs are absent)
    resolve_product(ref)    -> CatalogProduct          (raises ProductNotFound)
    get_current_price(ref)  -> Decimal                 (raises ProductNotFound)
    list_rules(kind)        -> [RuleSnapshot]          (unfiltered; the engine filters)

Any storage failure surfaces as CatalogUnavailable. Nothing here is cached
between calls.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

import models
from exceptions import CatalogUnavailable, InvalidRuleData, ProductNotFound
from schemas import CatalogProduct, RuleKind, RuleSnapshot

logger = logging.getLogger(__name__)


class SqlCatalog:
    def __init__(self, db: Session):
        self.db = db

    def resolve_products(self, refs: Iterable[str]) -> Dict[str, CatalogProduct]:
        refs = set(refs)
        if not refs:
            return {}
        try:
            rows = self.db.query(models.Product).filter(models.Product.ref.in_(refs)).all()
        except SQLAlchemyError as e:
            logger.error(f"Product lookup failed for {sorted(refs)}: {e}")
            raise CatalogUnavailable("Product catalog is unavailable") from e
        return {row.ref: CatalogProduct.model_validate(row) for row in rows}

    def resolve_product(self, ref: str) -> CatalogProduct:
        product = self.resolve_products([ref]).get(ref)
        if product is None:
            raise ProductNotFound(ref)
        return product

    def get_current_price(self, ref: str) -> Decimal:
        return self.resolve_product(ref).price

    def list_rules(self, kind: RuleKind) -> List[RuleSnapshot]:
        try:
            rows = (
                self.db.query(models.PromotionRule)
                .options(joinedload(models.PromotionRule.campaign))
                .filter(models.PromotionRule.kind == kind.value)
                .order_by(models.PromotionRule.id)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Rule lookup failed for kind {kind.value}: {e}")
            raise CatalogUnavailable("Promotion rule store is unavailable") from e
        snapshots = []
        for row in rows:
            try:
                snapshots.append(RuleSnapshot.model_validate(row))
            except ValidationError as e:
                # e.g. a rule whose campaign row is gone
                error = InvalidRuleData(row.id, e.errors()[0]["msg"])
                logger.warning(f"Skipping promotion rule {row.code}: {error.message}")
        return snapshots
