"""Database models for the rebalancing engine"""

from rebalancer.models.catalog import (
    Store,
    Product,
    ProductSku,
    SkuPrice
)

from rebalancer.models.inventory import (
    InventoryPosition,
    DemandSignal,
    SizeIntegrityRecord
)

from rebalancer.models.allocation import (
    AllocationRun,
    RebalanceSuggestion,
    RunLock
)

from rebalancer.models.audit import AuditLogEntry
