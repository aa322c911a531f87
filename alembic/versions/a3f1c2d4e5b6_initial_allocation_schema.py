"""initial_allocation_schema

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-18

Creates the store/product master tables, inventory snapshot inputs,
allocation runs, rebalance suggestions, run locks and the audit log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a3f1c2d4e5b6'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    """Create all allocation tables that do not exist yet."""
    if not _has_table('stores'):
        op.create_table(
            'stores',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('code', sa.String(), nullable=False),
            sa.Column('name', sa.String(), nullable=True),
            sa.Column('tier', sa.String(1), nullable=False, server_default='B'),
            sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('location_type', sa.String(), nullable=False, server_default='store'),
            sa.Column('updated_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'code', name='uq_store_tenant_code'),
        )

    if not _has_table('products'):
        op.create_table(
            'products',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('code', sa.String(), nullable=False),
            sa.Column('name', sa.String(), nullable=True),
            sa.Column('category', sa.String(), nullable=True, index=True),
            sa.Column('season', sa.String(), nullable=True),
            sa.Column('collection_id', sa.String(), nullable=True),
            sa.Column('avg_unit_price', sa.Float(), nullable=True),
            sa.UniqueConstraint('tenant_id', 'code', name='uq_product_tenant_code'),
        )

    if not _has_table('product_skus'):
        op.create_table(
            'product_skus',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False, index=True),
            sa.Column('sku', sa.String(), nullable=False),
            sa.Column('size_code', sa.String(), nullable=False),
            sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
            sa.UniqueConstraint('product_id', 'sku', name='uq_product_sku'),
        )

    if not _has_table('sku_prices'):
        op.create_table(
            'sku_prices',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False, index=True),
            sa.Column('sku', sa.String(), nullable=False),
            sa.Column('avg_unit_price', sa.Float(), nullable=False),
            sa.Column('computed_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'product_id', 'sku', name='uq_sku_price'),
        )

    # ── Snapshot inputs ──────────────────────────────────
    if not _has_table('inventory_positions'):
        op.create_table(
            'inventory_positions',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('store_id', sa.Integer(), nullable=False),
            sa.Column('sku', sa.String(), nullable=False),
            sa.Column('snapshot_date', sa.Date(), nullable=False, index=True),
            sa.Column('on_hand', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('reserved', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('available', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('in_transit', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('safety_stock', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('weeks_of_cover', sa.Float(), nullable=True),
            sa.UniqueConstraint(
                'tenant_id', 'product_id', 'store_id', 'sku', 'snapshot_date',
                name='uq_position_key_date',
            ),
        )
        op.create_index(
            'ix_position_tenant_key',
            'inventory_positions',
            ['tenant_id', 'product_id', 'store_id', 'sku']
        )

    if not _has_table('demand_signals'):
        op.create_table(
            'demand_signals',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('store_id', sa.Integer(), nullable=False),
            sa.Column('period_start', sa.Date(), nullable=False),
            sa.Column('period_end', sa.Date(), nullable=False, index=True),
            sa.Column('sales_velocity', sa.Float(), nullable=False, server_default='0'),
            sa.Column('avg_daily_sales', sa.Float(), nullable=False, server_default='0'),
            sa.Column('total_sold', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('trend', sa.String(), nullable=True),
            sa.UniqueConstraint(
                'tenant_id', 'product_id', 'store_id', 'period_start', 'period_end',
                name='uq_demand_key_period',
            ),
        )

    if not _has_table('size_integrity_records'):
        op.create_table(
            'size_integrity_records',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('store_id', sa.Integer(), nullable=False, index=True),
            sa.Column('snapshot_date', sa.Date(), nullable=False, index=True),
            sa.Column('total_sizes_expected', sa.Integer(), nullable=False),
            sa.Column('total_sizes_available', sa.Integer(), nullable=False),
            sa.Column('is_full_size_run', sa.Boolean(), nullable=False),
            sa.Column('missing_sizes', sa.JSON(), nullable=False),
            sa.Column('recorded_at', sa.DateTime()),
            sa.UniqueConstraint(
                'tenant_id', 'product_id', 'store_id', 'snapshot_date',
                name='uq_size_integrity_key_date',
            ),
        )

    # ── Runs & suggestions ───────────────────────────────
    if not _has_table('allocation_runs'):
        op.create_table(
            'allocation_runs',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('run_type', sa.String(), nullable=False, index=True),
            sa.Column('status', sa.String(), nullable=False, index=True, server_default='created'),
            sa.Column('failure_reason', sa.String(), nullable=True),
            sa.Column('failure_detail', sa.Text(), nullable=True),
            sa.Column('triggered_by', sa.String(), nullable=True),
            sa.Column('snapshot_date', sa.Date(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('total_suggestions', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_units', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('push_suggestions', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('push_units', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('lateral_suggestions', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('lateral_units', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('p1_suggestions', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_revenue_gain', sa.Float(), nullable=False, server_default='0'),
            sa.Column('stores_analyzed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('skipped_rows', sa.Integer(), nullable=False, server_default='0'),
        )

    if not _has_table('rebalance_suggestions'):
        op.create_table(
            'rebalance_suggestions',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False, index=True),
            sa.Column('run_id', sa.Integer(), sa.ForeignKey('allocation_runs.id'), nullable=False, index=True),
            sa.Column('product_id', sa.Integer(), nullable=False, index=True),
            sa.Column('sku', sa.String(), nullable=False),
            sa.Column('size_code', sa.String(), nullable=True),
            sa.Column('transfer_type', sa.String(), nullable=False, index=True),
            sa.Column('from_location', sa.Integer(), nullable=False),
            sa.Column('to_location', sa.Integer(), nullable=False),
            sa.Column('from_location_name', sa.String(), nullable=True),
            sa.Column('to_location_name', sa.String(), nullable=True),
            sa.Column('qty', sa.Integer(), nullable=False),
            sa.Column('original_qty', sa.Integer(), nullable=False),

            # Scoring
            sa.Column('priority', sa.String(2), nullable=False, index=True),
            sa.Column('potential_revenue_gain', sa.Float(), nullable=False, server_default='0'),
            sa.Column('revenue_at_risk', sa.Float(), nullable=False, server_default='0'),
            sa.Column('projected_stockout_date', sa.Date(), nullable=True),
            sa.Column('from_weeks_cover', sa.Float(), nullable=True),
            sa.Column('to_weeks_cover', sa.Float(), nullable=True),
            sa.Column('logistics_cost_estimate', sa.Float(), nullable=False, server_default='0'),
            sa.Column('net_benefit', sa.Float(), nullable=False, server_default='0'),
            sa.Column('reason', sa.Text(), nullable=True),

            # Workflow
            sa.Column('status', sa.String(), nullable=False, index=True, server_default='pending'),
            sa.Column('approved_by', sa.String(), nullable=True),
            sa.Column('approved_at', sa.DateTime(), nullable=True),
            sa.Column('decided_by', sa.String(), nullable=True),
            sa.Column('decided_at', sa.DateTime(), nullable=True),
            sa.Column('executed_by', sa.String(), nullable=True),
            sa.Column('executed_at', sa.DateTime(), nullable=True),
            sa.Column('superseded_by_run_id', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index(
            'ix_suggestion_tenant_status',
            'rebalance_suggestions',
            ['tenant_id', 'status']
        )

    if not _has_table('allocation_run_locks'):
        op.create_table(
            'allocation_run_locks',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=False),
            sa.Column('run_token', sa.String(), nullable=False),
            sa.Column('acquired_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('tenant_id', name='uq_run_lock_tenant'),
        )

    # ── Audit ────────────────────────────────────────────
    if not _has_table('audit_log_entries'):
        op.create_table(
            'audit_log_entries',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.String(), nullable=True, index=True),
            sa.Column('entity_type', sa.String(), nullable=False),
            sa.Column('entity_id', sa.String(), nullable=False),
            sa.Column('action', sa.String(), nullable=False),
            sa.Column('old_values', sa.JSON(), nullable=True),
            sa.Column('new_values', sa.JSON(), nullable=True),
            sa.Column('performed_by', sa.String(), nullable=True),
            sa.Column('performed_at', sa.DateTime(), nullable=False),
            sa.Column('notes', sa.Text(), nullable=True),
        )
        op.create_index(
            'ix_audit_entity',
            'audit_log_entries',
            ['entity_type', 'entity_id']
        )


def downgrade() -> None:
    """Drop all allocation tables."""
    op.drop_index('ix_audit_entity', table_name='audit_log_entries')
    op.drop_table('audit_log_entries')
    op.drop_table('allocation_run_locks')
    op.drop_index('ix_suggestion_tenant_status', table_name='rebalance_suggestions')
    op.drop_table('rebalance_suggestions')
    op.drop_table('allocation_runs')
    op.drop_table('size_integrity_records')
    op.drop_table('demand_signals')
    op.drop_index('ix_position_tenant_key', table_name='inventory_positions')
    op.drop_table('inventory_positions')
    op.drop_table('sku_prices')
    op.drop_table('product_skus')
    op.drop_table('products')
    op.drop_table('stores')
