"""SQLAlchemy repository for the product catalog and stock.

This module persists products (price, stock, sold counter, ERP codes) and
categories mirrored from the ERP. Stock changes are batch operations: a
reservation locks every row it touches with ``SELECT ... FOR UPDATE``, checks
all lines and then decrements all of them, or changes nothing. A check
constraint keeps stock from ever going negative.

The database is configured with ``INVENTORY_DATABASE_URL`` or, when unset,
the ``DB_*`` variables of the PostgreSQL container.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "INVENTORY_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)


def make_engine(url: str, **kwargs) -> Engine:
    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class Category(Base):
    """Product category, keyed by its ERP group code."""

    __tablename__ = "categories"
    code = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(255), nullable=False, default="")
    parent_code = mapped_column(String(64), nullable=True)
    is_main = mapped_column(Boolean, nullable=False, default=False)
    synced_at = mapped_column(DateTime(timezone=True), nullable=True)


class Product(Base):
    """A sellable product.

    Attributes:
        sku: Product reference (primary key).
        price: List price in Tomans.
        discount_price: Sale price, 0 when there is none.
        stock: Units available; never negative.
        sold: Units sold so far; never negative.
        track_inventory: When False, stock is not checked nor decremented.
        erp_code: Holoo ``ErpCode`` for products mirrored from the ERP.
        erp_item_code: Holoo human readable ``Code``.
    """

    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="products_stock_non_negative"),
        CheckConstraint("sold >= 0", name="products_sold_non_negative"),
    )

    sku = mapped_column(String(32), primary_key=True)
    name = mapped_column(String(255), nullable=False, default="")
    price = mapped_column(BigInteger, nullable=False, default=0)
    discount_price = mapped_column(BigInteger, nullable=False, default=0)
    compare_price = mapped_column(BigInteger, nullable=False, default=0)
    stock = mapped_column(Integer, nullable=False, default=0)
    sold = mapped_column(Integer, nullable=False, default=0)
    track_inventory = mapped_column(Boolean, nullable=False, default=True)
    erp_code = mapped_column(String(64), nullable=True, unique=True, index=True)
    erp_item_code = mapped_column(String(64), nullable=True)
    category_code = mapped_column(String(64), nullable=True)
    unit = mapped_column(String(32), nullable=False, default="")
    synced_at = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "name": self.name,
            "price": self.price,
            "discount_price": self.discount_price,
            "compare_price": self.compare_price,
            "stock": self.stock,
            "sold": self.sold,
            "track_inventory": self.track_inventory,
            "in_stock": (not self.track_inventory) or self.stock > 0,
            "erp_code": self.erp_code,
            "erp_item_code": self.erp_item_code,
            "category_code": self.category_code,
            "unit": self.unit,
        }


def init_db(bind: Optional[Engine] = None) -> None:
    Base.metadata.create_all(bind or engine)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aggregate(items: Iterable[tuple[str, int]]) -> dict[str, int]:
    wanted: dict[str, int] = {}
    for sku, qty in items:
        wanted[sku] = wanted.get(sku, 0) + qty
    return wanted


class InventoryRepo:
    """Repository for catalog and stock operations.

    Args:
        bind: Engine to use; defaults to the module engine.
    """

    def __init__(self, bind: Optional[Engine] = None):
        self.engine = bind or engine

    @contextmanager
    def session(self):
        """Yield a session that is closed when the block exits."""
        with Session(self.engine) as s:
            yield s

    # ---- products ----
    def get_many(self, skus: list[str]) -> list[dict]:
        if not skus:
            return []
        with self.session() as s:
            rows = s.scalars(select(Product).where(Product.sku.in_(skus)).order_by(Product.sku)).all()
            return [r.to_dict() for r in rows]

    def get(self, sku: str) -> Optional[dict]:
        with self.session() as s:
            obj = s.get(Product, sku)
            return obj.to_dict() if obj else None

    def upsert(self, sku: str, fields: dict) -> tuple[dict, bool]:
        """Create or replace the editable fields of a product.

        Returns:
            tuple[dict, bool]: The product and whether it was created.
        """
        with self.session() as s:
            obj = s.get(Product, sku)
            created = obj is None
            if created:
                obj = Product(sku=sku, sold=0)
                s.add(obj)
            for key, value in fields.items():
                setattr(obj, key, value)
            s.commit()
            return obj.to_dict(), created

    def reserve(self, items: list[tuple[str, int]]) -> list[str]:
        """Atomically take stock for multiple SKUs.

        Rows are locked in SKU order with SELECT FOR UPDATE. Either every
        line is applied or none (rolled back on any shortage).

        Args:
            items: ``(sku, quantity)`` pairs; repeated SKUs are summed.

        Returns:
            list[str]: SKUs that are unknown or short, in request order.
            Empty when the reservation was applied.
        """
        wanted = _aggregate(items)
        with self.session() as s:
            rows = s.scalars(
                select(Product).where(Product.sku.in_(list(wanted))).order_by(Product.sku).with_for_update()
            ).all()
            found = {r.sku: r for r in rows}
            short = [
                sku
                for sku, qty in wanted.items()
                if sku not in found or (found[sku].track_inventory and found[sku].stock < qty)
            ]
            if short:
                s.rollback()
                return short
            for sku, qty in wanted.items():
                row = found[sku]
                if row.track_inventory:
                    row.stock -= qty
                row.sold += qty
            s.commit()
            return []

    def release(self, items: list[tuple[str, int]]) -> None:
        """Give stock back; unknown SKUs are ignored and ``sold`` floors at zero."""
        wanted = _aggregate(items)
        with self.session() as s:
            rows = s.scalars(
                select(Product).where(Product.sku.in_(list(wanted))).order_by(Product.sku).with_for_update()
            ).all()
            for row in rows:
                qty = wanted[row.sku]
                if row.track_inventory:
                    row.stock += qty
                row.sold = max(0, row.sold - qty)
            s.commit()

    # ---- ERP mirror ----
    def upsert_category(self, code: str, name: str, parent_code: Optional[str], is_main: bool) -> bool:
        with self.session() as s:
            obj = s.get(Category, code)
            created = obj is None
            if created:
                obj = Category(code=code)
                s.add(obj)
            obj.name = name
            obj.parent_code = parent_code
            obj.is_main = is_main
            obj.synced_at = _now()
            s.commit()
            return created

    def category_exists(self, code: str) -> bool:
        with self.session() as s:
            return s.get(Category, code) is not None

    def get_category(self, code: str) -> Optional[dict]:
        with self.session() as s:
            obj = s.get(Category, code)
            if obj is None:
                return None
            return {"code": obj.code, "name": obj.name, "parent_code": obj.parent_code, "is_main": obj.is_main}

    def upsert_erp_product(self, erp_code: str, fields: dict, update_all: bool = False) -> str:
        """Create or update the product mirrored from ``erp_code``.

        New products get the SKU ``ERP-<erp_code>``. Existing products only
        take the ERP stock and prices, and only when stock or price changed
        or ``update_all`` is set.

        Returns:
            str: ``created``, ``updated`` or ``skipped``.
        """
        with self.session() as s:
            obj = s.scalars(select(Product).where(Product.erp_code == erp_code).with_for_update()).first()
            category = fields.get("category_code")
            if category and s.get(Category, category) is None:
                category = None

            if obj is None:
                s.add(
                    Product(
                        sku=f"ERP-{erp_code}".upper(),
                        name=fields.get("name", ""),
                        price=fields.get("price", 0),
                        compare_price=fields.get("compare_price", 0),
                        stock=max(0, fields.get("stock", 0)),
                        sold=0,
                        erp_code=erp_code,
                        erp_item_code=fields.get("erp_item_code"),
                        category_code=category,
                        unit=fields.get("unit", ""),
                        synced_at=_now(),
                    )
                )
                s.commit()
                return "created"

            stock = max(0, fields.get("stock", obj.stock))
            price = fields.get("price", obj.price)
            if not update_all and stock == obj.stock and price == obj.price:
                return "skipped"
            obj.stock = stock
            obj.price = price
            obj.compare_price = fields.get("compare_price", obj.compare_price)
            obj.synced_at = _now()
            s.commit()
            return "updated"

    def set_stock_by_erp_code(self, erp_code: str, stock: int) -> Optional[str]:
        with self.session() as s:
            obj = s.scalars(select(Product).where(Product.erp_code == erp_code).with_for_update()).first()
            if obj is None:
                return None
            obj.stock = max(0, stock)
            obj.synced_at = _now()
            s.commit()
            return obj.sku
