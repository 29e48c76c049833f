"""
Catalog store: products, variants and categories.

Reads serve the storefront and the order pipeline. Writes are the admin
back office; they never go below zero stock and keep slugs and active
variant (size, color) pairs unique.
"""
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, oid_to_str, to_object_id
from errors import Conflict, NotFound, ValidationError
from schemas import Category, Product, ProductUpdate, ProductVariant, VariantIn, VariantUpdate

logger = logging.getLogger(__name__)

SORT_OPTIONS = {
    "newest": [("created_at", DESCENDING)],
    "oldest": [("created_at", ASCENDING)],
    "price-low": [("price", ASCENDING)],
    "price-high": [("price", DESCENDING)],
    "name-asc": [("name", ASCENDING)],
    "name-desc": [("name", DESCENDING)],
    "featured": [("is_featured", DESCENDING), ("created_at", DESCENDING)],
}


class ProductQuery(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(12, ge=1, le=100)
    sort: str = "newest"
    search: Optional[str] = None
    category: Optional[str] = None
    featured: bool = False
    min_price: Optional[int] = Field(None, ge=0)
    max_price: Optional[int] = Field(None, ge=0)
    in_stock: bool = False


def variant_label(variant: Optional[Dict[str, Any]]) -> Optional[str]:
    if not variant:
        return None
    parts = []
    if variant.get("size"):
        parts.append(f"Size: {variant['size']}")
    if variant.get("color"):
        parts.append(f"Color: {variant['color']}")
    return ", ".join(parts) or None


# ---------------------- Reads ----------------------

def get_product(db: Database, product_id: str) -> Optional[Dict[str, Any]]:
    return db["product"].find_one({"_id": to_object_id(product_id, "product id")})


def get_variant(db: Database, variant_id: str) -> Optional[Dict[str, Any]]:
    return db["product_variant"].find_one({"_id": to_object_id(variant_id, "variant id")})


def active_variants(db: Database, product_id: str) -> List[Dict[str, Any]]:
    docs = db["product_variant"].find({"product_id": product_id, "is_active": True})
    return [oid_to_str(v) for v in docs]


def _with_variants(db: Database, product: Dict[str, Any]) -> Dict[str, Any]:
    out = oid_to_str(product)
    out["variants"] = active_variants(db, out["id"])
    return out


def list_products(db: Database, query: ProductQuery) -> Dict[str, Any]:
    where: Dict[str, Any] = {"is_active": True}

    if query.search:
        pattern = re.escape(query.search)
        where["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    if query.category:
        category = db["category"].find_one({"slug": query.category})
        if category is None:
            return _page([], 0, query)
        where["category_id"] = str(category["_id"])

    if query.featured:
        where["is_featured"] = True

    if query.min_price is not None or query.max_price is not None:
        where["price"] = {}
        if query.min_price is not None:
            where["price"]["$gte"] = query.min_price
        if query.max_price is not None:
            where["price"]["$lte"] = query.max_price

    if query.in_stock:
        where["stock"] = {"$gt": 0}

    sort = SORT_OPTIONS.get(query.sort, SORT_OPTIONS["newest"])
    skip = (query.page - 1) * query.limit
    docs = db["product"].find(where).sort(sort).skip(skip).limit(query.limit)
    products = [_with_variants(db, p) for p in docs]
    total_count = db["product"].count_documents(where)
    return _page(products, total_count, query)


def _page(products: List[Dict[str, Any]], total_count: int, query: ProductQuery) -> Dict[str, Any]:
    total_pages = math.ceil(total_count / query.limit)
    return {
        "products": products,
        "pagination": {
            "page": query.page,
            "limit": query.limit,
            "total_count": total_count,
            "total_pages": total_pages,
            "has_next": query.page < total_pages,
            "has_prev": query.page > 1,
        },
    }


def get_product_by_slug(db: Database, slug: str) -> Dict[str, Any]:
    doc = db["product"].find_one({"slug": slug, "is_active": True})
    if not doc:
        raise NotFound("Product not found")
    product = _with_variants(db, doc)
    if doc.get("category_id"):
        category = db["category"].find_one({"_id": to_object_id(doc["category_id"], "category id")})
        product["category"] = oid_to_str(category)
    return product


def list_categories(db: Database) -> List[Dict[str, Any]]:
    categories = []
    for doc in get_documents("category", {"is_active": True}, sort=[("name", ASCENDING)], database=db):
        category = oid_to_str(doc)
        category["product_count"] = db["product"].count_documents(
            {"category_id": category["id"], "is_active": True}
        )
        categories.append(category)
    return categories


def get_category_by_slug(db: Database, slug: str) -> Dict[str, Any]:
    doc = db["category"].find_one({"slug": slug, "is_active": True})
    if not doc:
        raise NotFound("Category not found")
    category = oid_to_str(doc)
    category["product_count"] = db["product"].count_documents(
        {"category_id": category["id"], "is_active": True}
    )
    return category


# ---------------------- Admin writes ----------------------

def slug_available(db: Database, slug: str, exclude_id: Optional[str] = None) -> bool:
    where: Dict[str, Any] = {"slug": slug}
    if exclude_id:
        where["_id"] = {"$ne": to_object_id(exclude_id, "product id")}
    return db["product"].count_documents(where) == 0


def create_category(db: Database, category: Category) -> Dict[str, Any]:
    if db["category"].count_documents({"slug": category.slug}):
        raise Conflict(f"Category slug '{category.slug}' is already in use")
    inserted_id = create_document("category", category, database=db)
    return oid_to_str(db["category"].find_one({"_id": to_object_id(inserted_id)}))


def create_product(db: Database, product: Product) -> Dict[str, Any]:
    if not slug_available(db, product.slug):
        raise Conflict(f"Slug '{product.slug}' is already in use")
    if product.category_id:
        _require_category(db, product.category_id)
    inserted_id = create_document("product", product, database=db)
    logger.info("Product %s created with stock %d", product.slug, product.stock)
    return _with_variants(db, db["product"].find_one({"_id": to_object_id(inserted_id)}))


def update_product(db: Database, product_id: str, changes: ProductUpdate) -> Dict[str, Any]:
    existing = get_product(db, product_id)
    if not existing:
        raise NotFound("Product not found")

    update = changes.model_dump(exclude_unset=True)
    merged = {k: v for k, v in existing.items() if k in Product.model_fields}
    merged.update(update)
    try:
        Product(**merged)
    except ValueError as e:
        raise ValidationError(str(e))

    if "slug" in update and not slug_available(db, update["slug"], exclude_id=product_id):
        raise Conflict(f"Slug '{update['slug']}' is already in use")
    if update.get("category_id"):
        _require_category(db, update["category_id"])
    if "stock" in update and update["stock"] != existing.get("stock"):
        logger.info("Stock of %s corrected from %s to %d", existing.get("slug"), existing.get("stock"), update["stock"])

    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": existing["_id"]}, {"$set": update})
    return _with_variants(db, db["product"].find_one({"_id": existing["_id"]}))


def create_variant(db: Database, product_id: str, variant: VariantIn) -> Dict[str, Any]:
    product = get_product(db, product_id)
    if not product:
        raise NotFound("Product not found")
    doc = ProductVariant(product_id=str(product["_id"]), **variant.model_dump())
    if doc.is_active:
        _require_unique_option(db, doc.product_id, doc.size, doc.color)
    inserted_id = create_document("product_variant", doc, database=db)
    return oid_to_str(db["product_variant"].find_one({"_id": to_object_id(inserted_id)}))


def update_variant(db: Database, variant_id: str, changes: VariantUpdate) -> Dict[str, Any]:
    existing = get_variant(db, variant_id)
    if not existing:
        raise NotFound("Variant not found")
    update = changes.model_dump(exclude_unset=True)
    merged = {**existing, **update}
    if merged.get("is_active", True):
        _require_unique_option(db, existing["product_id"], merged.get("size"), merged.get("color"), exclude_id=existing["_id"])
    update["updated_at"] = datetime.now(timezone.utc)
    db["product_variant"].update_one({"_id": existing["_id"]}, {"$set": update})
    return oid_to_str(db["product_variant"].find_one({"_id": existing["_id"]}))


def _require_category(db: Database, category_id: str) -> None:
    if not db["category"].find_one({"_id": to_object_id(category_id, "category id")}):
        raise ValidationError("Category not found")


def _require_unique_option(db: Database, product_id: str, size: Optional[str], color: Optional[str], exclude_id=None) -> None:
    where: Dict[str, Any] = {"product_id": product_id, "is_active": True, "size": size, "color": color}
    if exclude_id is not None:
        where["_id"] = {"$ne": exclude_id}
    if db["product_variant"].count_documents(where):
        raise Conflict(f"An active variant with size={size} color={color} already exists")
