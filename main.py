import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import database
import orders
from cart import Cart, CartLine
from config import Settings, configure_logging, get_settings
from database import ensure_indexes, get_db
from errors import StoreError
from payments import Sha512SignatureVerifier, SignatureVerifier, handle_payment_notification
from schemas import (
    Category,
    OrderRequest,
    OrderStatus,
    OrderUpdate,
    PaymentStatus,
    Product,
    ProductUpdate,
    VariantIn,
    VariantUpdate,
)

configure_logging(get_settings().log_level)
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db, get_settings().idempotency_ttl_seconds)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; store endpoints will answer 503")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------- Error envelope ----------------------

def failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(StoreError)
async def store_error_handler(request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return failure(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return failure(400, message)


@app.exception_handler(PyMongoError)
async def store_unavailable_handler(request, exc: PyMongoError):
    logger.error("Store failure on %s", request.url.path, exc_info=exc)
    return failure(503, "Store temporarily unavailable, please retry")


# ---------------------- Dependencies ----------------------

def require_admin(
    x_admin_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access is disabled")
    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Admin access required")


def get_verifier(settings: Settings = Depends(get_settings)) -> SignatureVerifier:
    return Sha512SignatureVerifier(settings.midtrans_server_key)


def ok(data: Any, status_code: int = 200, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data, **extra})


# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            try:
                response["collections"] = database.db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except PyMongoError as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ---------------------- Catalog ----------------------

@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort: str = "newest",
    search: Optional[str] = None,
    category: Optional[str] = None,
    featured: bool = False,
    min_price: Optional[int] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[int] = Query(None, alias="maxPrice", ge=0),
    in_stock: bool = Query(False, alias="inStock"),
    db: Database = Depends(get_db),
):
    query = catalog.ProductQuery(
        page=page, limit=limit, sort=sort, search=search, category=category,
        featured=featured, min_price=min_price, max_price=max_price, in_stock=in_stock,
    )
    return ok(catalog.list_products(db, query))


@app.get("/api/products/{slug}")
def get_product(slug: str, db: Database = Depends(get_db)):
    return ok(catalog.get_product_by_slug(db, slug))


@app.get("/api/categories")
def list_categories(db: Database = Depends(get_db)):
    return ok(catalog.list_categories(db))


@app.get("/api/categories/{slug}")
def get_category(slug: str, db: Database = Depends(get_db)):
    return ok(catalog.get_category_by_slug(db, slug))


# ---------------------- Cart ----------------------

class CartIn(BaseModel):
    items: List[CartLine] = []


@app.post("/api/cart/summary")
def cart_summary(cart_in: CartIn, settings: Settings = Depends(get_settings)):
    cart = Cart(settings, cart_in.items)
    return ok({
        "items": [line.model_dump(by_alias=True) for line in cart.items],
        "summary": cart.summary().model_dump(by_alias=True),
    })


# ---------------------- Orders ----------------------

@app.post("/api/orders")
def create_order(
    order: OrderRequest,
    idempotency_key: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    confirmation = orders.submit_order(db, order, settings, idempotency_key=idempotency_key)
    return ok(confirmation.model_dump(by_alias=True), status_code=201)


@app.get("/api/orders")
def lookup_orders(
    order_number: Optional[str] = Query(None, alias="orderNumber"),
    email: Optional[str] = None,
    db: Database = Depends(get_db),
):
    return ok({"orders": orders.find_orders(db, order_number=order_number, email=email)})


# ---------------------- Payments ----------------------

@app.post("/api/webhooks/midtrans")
def midtrans_notification(
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    verifier: SignatureVerifier = Depends(get_verifier),
):
    ack = handle_payment_notification(db, payload, payload.get("signature_key"), verifier)
    return JSONResponse(content={
        "success": True,
        "message": "Notification already processed" if ack.already_processed else "Notification processed successfully",
        "data": ack.model_dump(mode="json", by_alias=True),
    })


# ---------------------- Admin ----------------------

@app.post("/api/admin/categories", dependencies=[Depends(require_admin)])
def admin_create_category(category: Category, db: Database = Depends(get_db)):
    return ok(catalog.create_category(db, category), status_code=201)


@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
def admin_create_product(product: Product, db: Database = Depends(get_db)):
    return ok(catalog.create_product(db, product), status_code=201)


@app.get("/api/admin/products/check-slug", dependencies=[Depends(require_admin)])
def admin_check_slug(slug: str, exclude_id: Optional[str] = Query(None, alias="excludeId"), db: Database = Depends(get_db)):
    return ok({"slug": slug, "available": catalog.slug_available(db, slug, exclude_id=exclude_id)})


@app.put("/api/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def admin_update_product(product_id: str, changes: ProductUpdate, db: Database = Depends(get_db)):
    return ok(catalog.update_product(db, product_id, changes))


@app.post("/api/admin/products/{product_id}/variants", dependencies=[Depends(require_admin)])
def admin_create_variant(product_id: str, variant: VariantIn, db: Database = Depends(get_db)):
    return ok(catalog.create_variant(db, product_id, variant), status_code=201)


@app.put("/api/admin/variants/{variant_id}", dependencies=[Depends(require_admin)])
def admin_update_variant(variant_id: str, changes: VariantUpdate, db: Database = Depends(get_db)):
    return ok(catalog.update_variant(db, variant_id, changes))


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
def admin_list_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    return ok(orders.list_orders(db, status=status, payment_status=payment_status, search=search, page=page, limit=limit))


@app.get("/api/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
def admin_get_order(order_id: str, db: Database = Depends(get_db)):
    return ok(orders.get_order(db, order_id))


@app.put("/api/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
def admin_update_order(order_id: str, changes: OrderUpdate, db: Database = Depends(get_db)):
    return ok(orders.update_order(db, order_id, changes), message="Order updated successfully")


@app.delete("/api/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
def admin_delete_order(order_id: str, db: Database = Depends(get_db)):
    orders.delete_order(db, order_id)
    return JSONResponse(content={"success": True, "message": "Order deleted successfully"})


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
