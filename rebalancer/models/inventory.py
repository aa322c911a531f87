"""
Inventory snapshot inputs.

Positions, demand signals and size-integrity records are written by the
ingestion pipeline as new rows per snapshot; the engine never updates them
in place.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, Boolean, JSON, UniqueConstraint, Index
from datetime import datetime

from rebalancer.models.base import Base


class InventoryPosition(Base):
    """Stock position of one SKU at one location on one snapshot date"""
    __tablename__ = "inventory_positions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    product_id = Column(Integer, nullable=False)
    store_id = Column(Integer, nullable=False)
    sku = Column(String, nullable=False)
    snapshot_date = Column(Date, index=True, nullable=False)

    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    available = Column(Integer, nullable=False, default=0)
    in_transit = Column(Integer, nullable=False, default=0)
    safety_stock = Column(Integer, nullable=False, default=0)
    weeks_of_cover = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'product_id', 'store_id', 'sku', 'snapshot_date', name='uq_position_key_date'),
        Index('ix_position_tenant_key', 'tenant_id', 'product_id', 'store_id', 'sku'),
    )


class DemandSignal(Base):
    """Sales velocity and trend for a product at a store over a period"""
    __tablename__ = "demand_signals"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    product_id = Column(Integer, nullable=False)
    store_id = Column(Integer, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, index=True, nullable=False)

    sales_velocity = Column(Float, nullable=False, default=0.0)  # units/day
    avg_daily_sales = Column(Float, nullable=False, default=0.0)
    total_sold = Column(Integer, nullable=False, default=0)
    trend = Column(String, nullable=True)  # accelerating, flat, decelerating

    __table_args__ = (
        UniqueConstraint('tenant_id', 'product_id', 'store_id', 'period_start', 'period_end', name='uq_demand_key_period'),
    )


class SizeIntegrityRecord(Base):
    """Whether a product's full size run is in stock at a store"""
    __tablename__ = "size_integrity_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    product_id = Column(Integer, nullable=False)
    store_id = Column(Integer, index=True, nullable=False)
    snapshot_date = Column(Date, index=True, nullable=False)

    total_sizes_expected = Column(Integer, nullable=False)
    total_sizes_available = Column(Integer, nullable=False)
    is_full_size_run = Column(Boolean, nullable=False)
    missing_sizes = Column(JSON, nullable=False, default=list)

    recorded_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'product_id', 'store_id', 'snapshot_date', name='uq_size_integrity_key_date'),
    )
