"""
Store and product master data.

Populated by the external store-master / product sync; the engine only reads
these tables.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey, UniqueConstraint
from datetime import datetime

from rebalancer.models.base import Base


class Store(Base):
    """A selling location or a central warehouse"""
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    code = Column(String, nullable=False)
    name = Column(String, nullable=True)
    tier = Column(String(1), nullable=False, default="B")  # A, B, C
    capacity = Column(Integer, nullable=False, default=0)  # 0 = unknown
    active = Column(Boolean, nullable=False, default=True)
    location_type = Column(String, nullable=False, default="store")  # store, central_warehouse

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'code', name='uq_store_tenant_code'),
    )


class Product(Base):
    """Product family (style) owning one SKU per size"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    code = Column(String, nullable=False)
    name = Column(String, nullable=True)
    category = Column(String, index=True, nullable=True)
    season = Column(String, nullable=True)
    collection_id = Column(String, nullable=True)

    # Realized average selling price across all sizes
    avg_unit_price = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'code', name='uq_product_tenant_code'),
    )


class ProductSku(Base):
    """One size of a product. The set of size codes is the canonical size run."""
    __tablename__ = "product_skus"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)

    sku = Column(String, nullable=False)
    size_code = Column(String, nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('product_id', 'sku', name='uq_product_sku'),
    )


class SkuPrice(Base):
    """Historical realized price per SKU"""
    __tablename__ = "sku_prices"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    sku = Column(String, nullable=False)

    avg_unit_price = Column(Float, nullable=False)
    computed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'product_id', 'sku', name='uq_sku_price'),
    )
