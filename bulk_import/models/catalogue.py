from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any

"""Target product schema: the closed catalogue every source column is mapped onto.

Each target field declares its data type, whether it is required and the list of
known source-name variations used by exact / fuzzy matching.
"""

__all__ = [
    "DataType",
    "TargetField",
    "PRODUCT_FIELDS",
    "TARGET_FIELD_NAMES",
    "REQUIRED_TARGET_FIELDS",
    "VALID_STATUSES",
    "ProductRecord",
    "is_target_field",
]


class DataType(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True)
class TargetField:
    """One field of the target product schema."""
    name: str
    data_type: DataType
    required: bool
    description: str
    variations: tuple[str, ...] = ()
    integer: bool = False  # NUMBER かつ整数のみ許容 (stock 系)


def _f(name: str, data_type: DataType, description: str, variations: tuple[str, ...],
       required: bool = False, integer: bool = False) -> TargetField:
    return TargetField(name, data_type, required, description, variations, integer)


# "cost" is deliberately absent from price variations: it is resolved by the
# statistical keyword stage (price, 80).
PRODUCT_FIELDS: dict[str, TargetField] = {
    f.name: f
    for f in (
        _f("name", DataType.STRING, "Product name or title",
           ("product_name", "title", "item_name", "product_title", "item_title"), required=True),
        _f("slug", DataType.STRING, "URL-friendly product identifier",
           ("product_slug", "url_slug", "permalink", "handle")),
        _f("sku", DataType.STRING, "Stock keeping unit identifier",
           ("product_code", "item_code", "part_number", "product_id", "item_number")),
        _f("gtin", DataType.STRING, "Global trade item number (barcode)",
           ("barcode", "ean", "upc", "isbn", "product_barcode")),
        _f("shortDescription", DataType.STRING, "Brief product description",
           ("short_desc", "brief_description", "summary", "excerpt", "tagline")),
        _f("longDescription", DataType.STRING, "Detailed product description",
           ("description", "long_desc", "detailed_description", "full_description",
            "details", "product_description")),
        _f("story", DataType.STRING, "Product or brand story",
           ("product_story", "brand_story", "narrative", "background")),
        _f("price", DataType.NUMBER, "Product selling price",
           ("retail_price", "unit_price", "selling_price", "current_price", "list_price")),
        _f("compareAtPrice", DataType.NUMBER, "Original or compare-at price",
           ("compare_at_price", "original_price", "msrp", "rrp", "was_price", "crossed_price")),
        _f("stock", DataType.NUMBER, "Available stock quantity",
           ("inventory", "quantity", "qty", "stock_level", "available", "in_stock"), integer=True),
        _f("lowStockThreshold", DataType.NUMBER, "Low stock alert threshold",
           ("low_stock_threshold", "min_stock", "reorder_level", "low_stock_alert"), integer=True),
        _f("brandId", DataType.STRING, "Brand identifier or name",
           ("brand_id", "brand", "manufacturer", "brand_name", "vendor")),
        _f("status", DataType.STRING, "Product status (draft, review, live, archived)",
           ("product_status", "state", "active", "published", "visibility")),
        _f("isVariant", DataType.BOOLEAN, "Whether this is a product variant",
           ("is_variant", "has_variants", "variant", "is_child")),
        _f("parentId", DataType.STRING, "Parent product reference for variants",
           ("parent_id", "parent_sku", "master_product", "variant_parent")),
    )
}

TARGET_FIELD_NAMES: tuple[str, ...] = tuple(PRODUCT_FIELDS)
REQUIRED_TARGET_FIELDS: tuple[str, ...] = tuple(n for n, f in PRODUCT_FIELDS.items() if f.required)
VALID_STATUSES: tuple[str, ...] = ("draft", "review", "live", "archived")


def is_target_field(name: str) -> bool:
    return name in PRODUCT_FIELDS


@dataclass(frozen=True)
class ProductRecord:
    """Typed target-side record handed to the product store."""
    name: str | None = None
    slug: str | None = None
    sku: str | None = None
    gtin: str | None = None
    shortDescription: str | None = None
    longDescription: str | None = None
    story: str | None = None
    price: float | None = None
    compareAtPrice: float | None = None
    stock: int | None = None
    lowStockThreshold: int | None = None
    brandId: str | None = None
    status: str | None = None
    isVariant: bool | None = None
    parentId: str | None = None
    id: Any = None  # 既存商品 ID (指定時は update)

    @classmethod
    def from_mapped(cls, values: dict[str, Any]) -> ProductRecord:
        """Build from a mapped (target-keyed) record, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            if key not in known:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            kwargs[key] = value
        return cls(**kwargs)

    def to_payload(self) -> dict[str, Any]:
        """Non-null fields only, without the id."""
        return {k: v for k, v in asdict(self).items() if v is not None and k != "id"}
