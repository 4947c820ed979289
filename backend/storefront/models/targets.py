from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union


TARGET_ALL = "all"
TARGET_PRODUCT = "product"
TARGET_CATEGORY = "category"

VALID_TARGET_TYPES = [TARGET_ALL, TARGET_PRODUCT, TARGET_CATEGORY]


@dataclass(frozen=True)
class AllTarget:
    """Every product in the catalog."""

    type = TARGET_ALL

    def matches(self, product_id: int, category_ids: Iterable[int]) -> bool:
        return True


@dataclass(frozen=True)
class ProductTarget:
    product_id: int

    type = TARGET_PRODUCT

    def matches(self, product_id: int, category_ids: Iterable[int]) -> bool:
        return product_id == self.product_id


@dataclass(frozen=True)
class CategoryTarget:
    category_id: int

    type = TARGET_CATEGORY

    def matches(self, product_id: int, category_ids: Iterable[int]) -> bool:
        return self.category_id in set(category_ids)


Target = Union[AllTarget, ProductTarget, CategoryTarget]


def target_from_columns(target_type: str | None, target_id: int | None) -> Target:
    """Rebuild the target from its (type, id) storage pair."""
    if target_type in (None, TARGET_ALL):
        return AllTarget()
    if target_id is None:
        raise ValueError(f"{target_type} target requires an id")
    if target_type == TARGET_PRODUCT:
        return ProductTarget(target_id)
    if target_type == TARGET_CATEGORY:
        return CategoryTarget(target_id)
    raise ValueError(f"Invalid target type: {target_type}. Must be one of {VALID_TARGET_TYPES}")


def target_id_of(target: Target) -> int | None:
    if isinstance(target, ProductTarget):
        return target.product_id
    if isinstance(target, CategoryTarget):
        return target.category_id
    return None


def target_to_dict(target: Target) -> dict:
    return {"type": target.type, "id": target_id_of(target)}
