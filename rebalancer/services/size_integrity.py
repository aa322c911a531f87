"""
Size Integrity Checker

For every (product, store) that sold in any loaded demand period, compares
the product's canonical size set with the sizes that actually have stock on
hand. Missing sizes make a store a preferred lateral destination for exactly
those sizes.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from rebalancer.models.inventory import SizeIntegrityRecord
from rebalancer.services.position_store import InventorySnapshot
from rebalancer.utils.logger import log


@dataclass(frozen=True)
class SizeIntegrityResult:
    product_id: int
    store_id: int
    expected_sizes: Tuple[str, ...]
    available_sizes: Tuple[str, ...]
    missing_sizes: Tuple[str, ...]

    @property
    def is_full_size_run(self) -> bool:
        return set(self.available_sizes) == set(self.expected_sizes)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "store_id": self.store_id,
            "total_sizes_expected": len(self.expected_sizes),
            "total_sizes_available": len(self.available_sizes),
            "is_full_size_run": self.is_full_size_run,
            "missing_sizes": list(self.missing_sizes),
        }


class SizeIntegrityChecker:

    def check(self, snapshot: InventorySnapshot) -> Dict[Tuple[int, int], SizeIntegrityResult]:
        in_stock: Dict[Tuple[int, int], set] = {}
        for p in snapshot.positions:
            if p.on_hand > 0:
                in_stock.setdefault((p.product_id, p.store_id), set()).add(p.size_code)

        results: Dict[Tuple[int, int], SizeIntegrityResult] = {}
        for product_id, store_id in sorted(set(snapshot.demand) | snapshot.demand_history):
            store = snapshot.store(store_id)
            if store is None or store.is_warehouse:
                continue
            # A quiet latest period does not exempt a pair that sold before
            if not snapshot.has_sold(product_id, store_id):
                continue
            expected = snapshot.product_sizes.get(product_id)
            if not expected:
                continue

            have = in_stock.get((product_id, store_id), set())
            available = tuple(s for s in expected if s in have)
            missing = tuple(s for s in expected if s not in have)
            results[(product_id, store_id)] = SizeIntegrityResult(
                product_id=product_id,
                store_id=store_id,
                expected_sizes=tuple(expected),
                available_sizes=available,
                missing_sizes=missing,
            )
        return results

    def missing_sizes(
        self,
        results: Dict[Tuple[int, int], SizeIntegrityResult],
        product_id: int,
        store_id: int,
    ) -> Tuple[str, ...]:
        result = results.get((product_id, store_id))
        return result.missing_sizes if result else ()

    def to_records(
        self,
        results: Dict[Tuple[int, int], SizeIntegrityResult],
        tenant_id: str,
        snapshot_date,
    ) -> List[SizeIntegrityRecord]:
        """Materialize results as (unsaved) SizeIntegrityRecord rows."""
        return [
            SizeIntegrityRecord(
                tenant_id=tenant_id,
                product_id=r.product_id,
                store_id=r.store_id,
                snapshot_date=snapshot_date,
                total_sizes_expected=len(r.expected_sizes),
                total_sizes_available=len(r.available_sizes),
                is_full_size_run=r.is_full_size_run,
                missing_sizes=list(r.missing_sizes),
            )
            for r in results.values()
        ]

    def refresh_records(self, db: Session, snapshot: InventorySnapshot) -> Dict[str, int]:
        """
        Persist the check for the snapshot date. Keys already recorded for that
        date are left alone, so calling this twice writes nothing new.
        """
        if snapshot.snapshot_date is None:
            return {"written": 0, "existing": 0}

        results = self.check(snapshot)
        existing = {
            (r.product_id, r.store_id)
            for r in db.query(SizeIntegrityRecord.product_id, SizeIntegrityRecord.store_id).filter(
                SizeIntegrityRecord.tenant_id == snapshot.tenant_id,
                SizeIntegrityRecord.snapshot_date == snapshot.snapshot_date,
            ).all()
        }
        fresh = {k: v for k, v in results.items() if k not in existing}
        db.add_all(self.to_records(fresh, snapshot.tenant_id, snapshot.snapshot_date))
        db.commit()

        log.info(
            f"Size integrity for {snapshot.tenant_id} @ {snapshot.snapshot_date}: "
            f"{len(fresh)} written, {len(existing)} already recorded"
        )
        return {"written": len(fresh), "existing": len(existing)}


def broken_results(
    results: Dict[Tuple[int, int], SizeIntegrityResult],
    store_id: Optional[int] = None,
) -> List[SizeIntegrityResult]:
    """Results with at least one missing size, optionally for one store."""
    return [
        r for _, r in sorted(results.items())
        if r.missing_sizes and (store_id is None or r.store_id == store_id)
    ]
