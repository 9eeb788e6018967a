"""Inventory service API built with FastAPI.

This module exposes the product catalog and stock of the shop: product
reads by SKU, all-or-nothing stock reservation and release for orders, and
the upserts used by the ERP mirror (categories, ERP products, ERP stock).
Validation is performed with Pydantic models, while persistence is delegated
to the SQLAlchemy-backed repository in ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

Sku = constr(pattern=r"^[A-Z0-9_-]{3,32}$")
# logger JSON
logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # brief wait until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


def get_repo() -> InventoryRepo:
    return InventoryRepo()


class Item(BaseModel):
    """A quantity of one product.

    Attributes:
        sku: Product SKU matching the allowed pattern.
        quantity: Positive integer quantity.
    """

    sku: Sku
    quantity: int = Field(gt=0)


class StockRequest(BaseModel):
    """Request body for ``/reserve`` and ``/release``."""

    items: List[Item] = Field(min_length=1)


class ReserveResponse(BaseModel):
    reserved: bool
    detail: Optional[str] = None


class ProductIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: int = Field(ge=0)
    discount_price: int = Field(default=0, ge=0)
    stock: int = Field(default=0, ge=0)
    track_inventory: bool = True
    erp_code: Optional[str] = Field(default=None, max_length=64)
    erp_item_code: Optional[str] = Field(default=None, max_length=64)


class CategoryIn(BaseModel):
    name: str = Field(default="", max_length=255)
    parent_code: Optional[str] = Field(default=None, max_length=64)
    is_main: bool = False


class ErpProductIn(BaseModel):
    name: str = Field(default="", max_length=255)
    price: int = Field(default=0, ge=0)
    compare_price: int = Field(default=0, ge=0)
    stock: int = 0
    erp_item_code: Optional[str] = Field(default=None, max_length=64)
    category_code: Optional[str] = Field(default=None, max_length=64)
    unit: str = Field(default="", max_length=32)
    update_all: bool = False


class StockIn(BaseModel):
    stock: int


@app.get("/health")
def health():
    """Liveness/health check endpoint."""
    return {"ok": True}


@app.get("/products")
def list_products(sku: List[str] = Query(default=[]), repo: InventoryRepo = Depends(get_repo)):
    """Products for the requested SKUs; unknown SKUs are left out."""
    return {"products": repo.get_many([s.upper() for s in sku])}


@app.get("/products/{sku}")
def get_product(sku: str, repo: InventoryRepo = Depends(get_repo)):
    product = repo.get(sku.upper())
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return product


@app.put("/products/{sku}")
def put_product(sku: Sku, body: ProductIn, repo: InventoryRepo = Depends(get_repo)):
    product, created = repo.upsert(sku, body.model_dump())
    logger.info("product upserted", extra={"sku": sku, "was_created": created})
    return {**product, "created": created}


@app.post("/reserve", response_model=ReserveResponse)
def reserve(req: StockRequest, repo: InventoryRepo = Depends(get_repo)):
    """Reserve stock for a batch of items.

    Delegates to ``InventoryRepo.reserve``, which performs a transactional,
    locked check to prevent overselling.

    Raises:
        HTTPException: 422 with the short SKUs when any item cannot be covered.
    """
    short = repo.reserve([(it.sku, it.quantity) for it in req.items])
    if short:
        logger.info("reservation refused", extra={"skus": short})
        raise HTTPException(
            status_code=422,
            detail={"reserved": False, "detail": "INSUFFICIENT_STOCK", "skus": short},
        )
    return ReserveResponse(reserved=True)


@app.post("/release")
def release(req: StockRequest, repo: InventoryRepo = Depends(get_repo)):
    repo.release([(it.sku, it.quantity) for it in req.items])
    return {"released": True}


@app.put("/categories/{code}")
def put_category(code: str, body: CategoryIn, repo: InventoryRepo = Depends(get_repo)):
    created = repo.upsert_category(code, body.name, body.parent_code, body.is_main)
    return {"created": created}


@app.get("/categories/{code}")
def get_category(code: str, repo: InventoryRepo = Depends(get_repo)):
    category = repo.get_category(code)
    if category is None:
        raise HTTPException(status_code=404, detail="CATEGORY_NOT_FOUND")
    return category


@app.put("/erp/products/{erp_code}")
def put_erp_product(erp_code: str, body: ErpProductIn, repo: InventoryRepo = Depends(get_repo)):
    fields = body.model_dump(exclude={"update_all"})
    result = repo.upsert_erp_product(erp_code, fields, body.update_all)
    return {"result": result}


@app.put("/erp/products/{erp_code}/stock")
def put_erp_stock(erp_code: str, body: StockIn, repo: InventoryRepo = Depends(get_repo)):
    sku = repo.set_stock_by_erp_code(erp_code, body.stock)
    if sku is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    logger.info("erp stock applied", extra={"sku": sku, "erp_code": erp_code, "stock": body.stock})
    return {"sku": sku}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
