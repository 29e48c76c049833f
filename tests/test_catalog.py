import pytest

import catalog
from errors import Conflict, NotFound, ValidationError
from schemas import Category, Product, ProductUpdate, VariantIn, VariantUpdate


def test_discount_must_be_below_price():
    with pytest.raises(ValueError):
        Product(name="Tenun", slug="tenun", price=100000, discount_price=100000)


def test_slugs_are_unique(db, make_product):
    make_product(slug="kebaya-kutubaru")

    with pytest.raises(Conflict):
        make_product(slug="kebaya-kutubaru")
    assert catalog.slug_available(db, "kebaya-kutubaru") is False
    assert catalog.slug_available(db, "kebaya-encim") is True


def test_update_revalidates_discount(db, make_product):
    product = make_product(price=100000, discount_price=90000)

    with pytest.raises(ValidationError):
        catalog.update_product(db, product["id"], ProductUpdate(price=80000))


def test_manual_stock_correction(db, make_product):
    product = make_product(stock=3)
    updated = catalog.update_product(db, product["id"], ProductUpdate(stock=12))
    assert updated["stock"] == 12


def test_active_variant_options_are_unique(db, make_product, make_variant):
    product = make_product()
    make_variant(product, size="M", color="Red")
    make_variant(product, size="L", color="Red")
    make_variant(make_product(), size="M", color="Red")

    with pytest.raises(Conflict):
        make_variant(product, size="M", color="Red")


def test_inactive_variant_frees_its_option(db, make_product, make_variant):
    product = make_product()
    old = make_variant(product, size="M", color="Red")
    catalog.update_variant(db, old["id"], VariantUpdate(is_active=False))

    replacement = make_variant(product, size="M", color="Red")

    assert replacement["is_active"] is True
    with pytest.raises(Conflict):
        catalog.update_variant(db, old["id"], VariantUpdate(is_active=True))


def test_variant_for_missing_product(db):
    with pytest.raises(NotFound):
        catalog.create_variant(db, "5f1d7f0c2b3a4c5d6e7f8091", VariantIn())


def test_list_products_filters_and_paginates(db, make_product, make_variant):
    dress = make_product(name="Red Dress", price=150000, stock=0, is_featured=True)
    make_product(name="Blue Dress", price=90000, stock=4)
    make_product(name="Sarong", price=60000, stock=2, description="A red sarong")
    make_product(name="Hidden Dress", price=70000, is_active=False)
    make_variant(dress, size="S")

    reds = catalog.list_products(db, catalog.ProductQuery(search="red", sort="price-high"))
    assert [p["name"] for p in reds["products"]] == ["Red Dress", "Sarong"]
    assert reds["products"][0]["variants"][0]["size"] == "S"

    in_stock = catalog.list_products(db, catalog.ProductQuery(in_stock=True, min_price=70000))
    assert [p["name"] for p in in_stock["products"]] == ["Blue Dress"]

    featured = catalog.list_products(db, catalog.ProductQuery(featured=True))
    assert [p["name"] for p in featured["products"]] == ["Red Dress"]

    page = catalog.list_products(db, catalog.ProductQuery(limit=2, page=2, sort="price-low"))
    assert [p["name"] for p in page["products"]] == ["Red Dress"]
    assert page["pagination"] == {
        "page": 2, "limit": 2, "total_count": 3, "total_pages": 2, "has_next": False, "has_prev": True,
    }


def test_category_filter_and_counts(db, category, make_product):
    make_product(name="In Category")
    catalog.create_product(db, Product(name="Loose", slug="loose", price=1000))

    listed = catalog.list_products(db, catalog.ProductQuery(category="dresses"))
    assert [p["name"] for p in listed["products"]] == ["In Category"]
    assert catalog.list_products(db, catalog.ProductQuery(category="missing"))["products"] == []
    assert catalog.list_categories(db)[0]["product_count"] == 1
    assert catalog.get_category_by_slug(db, "dresses")["name"] == "Dresses"


def test_product_by_slug_hides_inactive(db, make_product):
    make_product(slug="visible")
    make_product(slug="hidden", is_active=False)

    product = catalog.get_product_by_slug(db, "visible")
    assert product["category"]["slug"] == "dresses"
    with pytest.raises(NotFound):
        catalog.get_product_by_slug(db, "hidden")


def test_categories_are_listed_by_name(db, category):
    catalog.create_category(db, Category(name="Accessories", slug="accessories"))
    catalog.create_category(db, Category(name="Archived", slug="archived", is_active=False))

    assert [c["slug"] for c in catalog.list_categories(db)] == ["accessories", "dresses"]
