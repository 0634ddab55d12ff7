import logging
import threading
from collections import namedtuple
from decimal import Decimal

from django.db import transaction
from django.db.models import F

from apps.utils.utils import now

from .models import StockRecord, StockMovementLog

logger = logging.getLogger(__name__)

InventorySummary = namedtuple(
    "InventorySummary", ["total_products", "low_stock", "out_of_stock", "total_value"]
)

# Process-wide, one lock per product. Shared by every StockLedger instance.
_product_locks = {}
_product_locks_guard = threading.Lock()


def product_lock(product_id):
    with _product_locks_guard:
        lock = _product_locks.get(product_id)
        if lock is None:
            lock = _product_locks[product_id] = threading.RLock()
        return lock


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


class StockLedger:
    """
    Core Logic for Inventory Management.
    ALL stock changes must pass through here.

    Every operation answers with a bool instead of raising: a missing
    product or a bad argument logs a warning and returns False, and
    callers treat False as "did not happen".

    Mutations on one product are serialized by `product_lock()` and run
    inside a DB transaction. `reserve` is a single conditional UPDATE, so
    two concurrent reservations can never both succeed when together they
    would take the quantity below zero.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, product_id):
        if not _is_int(product_id) or product_id <= 0:
            return None
        return StockRecord.objects.filter(product_id=product_id).first()

    def check_availability(self, product_id, requested_qty) -> bool:
        """Advisory only: nothing is held between this check and a later reserve()."""
        if not _is_int(requested_qty) or requested_qty < 0:
            logger.warning(f"check_availability: invalid quantity {requested_qty!r} for product {product_id}")
            return False
        record = self.get_record(product_id)
        if record is None:
            return False
        return record.quantity_in_stock >= requested_qty

    def is_low_stock(self, product_id) -> bool:
        record = self.get_record(product_id)
        if record is None:
            return False
        return record.is_low_stock

    def low_stock_records(self):
        return list(
            StockRecord.objects
            .select_related("product")
            .filter(quantity_in_stock__lte=F("reorder_level"))
            .order_by("quantity_in_stock", "product_id")
        )

    def out_of_stock_records(self):
        return list(
            StockRecord.objects.select_related("product").filter(quantity_in_stock=0).order_by("product_id")
        )

    def records_in_warehouse(self, location):
        if not location or not location.strip():
            return []
        return list(
            StockRecord.objects.select_related("product")
            .filter(warehouse_location=location.strip())
            .order_by("product_id")
        )

    def total_stock_value(self) -> Decimal:
        """Sum of quantity * cost price across every record."""
        total = Decimal("0.00")
        for record in StockRecord.objects.select_related("product"):
            total += record.product.cost_price * record.quantity_in_stock
        return total

    def summary(self) -> InventorySummary:
        return InventorySummary(
            total_products=StockRecord.objects.count(),
            low_stock=StockRecord.objects.filter(quantity_in_stock__lte=F("reorder_level")).count(),
            out_of_stock=StockRecord.objects.filter(quantity_in_stock=0).count(),
            total_value=self.total_stock_value(),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open_record(self, product, initial_qty=0, reorder_level=10, warehouse_location=""):
        """
        Creates the stock record for a newly catalogued product.
        """
        if not _is_int(initial_qty) or initial_qty < 0:
            logger.warning(f"open_record: invalid initial quantity {initial_qty!r}")
            return None
        if not _is_int(reorder_level) or reorder_level < 0:
            logger.warning(f"open_record: invalid reorder level {reorder_level!r}")
            return None

        record, created = StockRecord.objects.get_or_create(
            product=product,
            defaults={
                "quantity_in_stock": initial_qty,
                "reorder_level": reorder_level,
                "warehouse_location": (warehouse_location or "").strip(),
                "last_restocked": now() if initial_qty > 0 else None,
            },
        )
        if not created:
            logger.warning(f"open_record: product {product.pk} already has a stock record")
        return record

    def reserve(self, product_id, qty, reference="", journal=None) -> bool:
        """
        Atomic check-and-decrement.

        `journal`, when given, is called with the refreshed record inside the
        same DB transaction as the decrement. If it raises, the decrement is
        rolled back and the exception propagates.
        """
        return self._decrement(
            product_id, qty, StockMovementLog.MovementType.RESERVATION, reference, journal
        )

    def remove_stock(self, product_id, qty, reference="") -> bool:
        return self._decrement(
            product_id, qty, StockMovementLog.MovementType.REMOVAL, reference or "MANUAL", None
        )

    def release(self, product_id, qty, reference="") -> bool:
        """Unconditional increment. Used for compensation and cancellation."""
        return self._increment(product_id, qty, StockMovementLog.MovementType.RELEASE, reference)

    def add_stock(self, product_id, qty, reference="") -> bool:
        if not self._increment(product_id, qty, StockMovementLog.MovementType.RESTOCK, reference or "RESTOCK"):
            return False
        return self.mark_restocked(product_id)

    def restock(self, product_id, qty, warehouse_location=None) -> bool:
        with product_lock(product_id):
            if not self.add_stock(product_id, qty):
                return False
            if warehouse_location and warehouse_location.strip():
                return self.update_warehouse_location(product_id, warehouse_location)
        return True

    def set_exact(self, product_id, qty, reference="") -> bool:
        if not self._valid_target(product_id, qty, allow_zero=True, op="set_exact"):
            return False

        with product_lock(product_id):
            with transaction.atomic():
                record = StockRecord.objects.filter(product_id=product_id).first()
                if record is None:
                    logger.warning(f"set_exact: no stock record for product {product_id}")
                    return False
                delta = qty - record.quantity_in_stock
                record.quantity_in_stock = qty
                record.save(update_fields=["quantity_in_stock", "updated_at"])
                self._log(record, delta, StockMovementLog.MovementType.SET, reference or "ADMIN")
        return True

    def mark_restocked(self, product_id) -> bool:
        if not _is_int(product_id) or product_id <= 0:
            return False
        updated = StockRecord.objects.filter(product_id=product_id).update(
            last_restocked=now(), updated_at=now()
        )
        return updated == 1

    def update_reorder_level(self, product_id, level) -> bool:
        if not self._valid_target(product_id, level, allow_zero=True, op="update_reorder_level"):
            return False
        with product_lock(product_id):
            updated = StockRecord.objects.filter(product_id=product_id).update(
                reorder_level=level, updated_at=now()
            )
        return updated == 1

    def update_warehouse_location(self, product_id, location) -> bool:
        if not _is_int(product_id) or product_id <= 0:
            return False
        with product_lock(product_id):
            updated = StockRecord.objects.filter(product_id=product_id).update(
                warehouse_location=(location or "").strip(), updated_at=now()
            )
        return updated == 1

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _valid_target(self, product_id, qty, allow_zero, op):
        if not _is_int(product_id) or product_id <= 0:
            logger.warning(f"{op}: invalid product id {product_id!r}")
            return False
        if not _is_int(qty) or qty < 0 or (qty == 0 and not allow_zero):
            logger.warning(f"{op}: invalid quantity {qty!r} for product {product_id}")
            return False
        return True

    def _decrement(self, product_id, qty, movement_type, reference, journal):
        if not self._valid_target(product_id, qty, allow_zero=False, op=movement_type.lower()):
            return False

        with product_lock(product_id):
            with transaction.atomic():
                updated = (
                    StockRecord.objects
                    .filter(product_id=product_id, quantity_in_stock__gte=qty)
                    .update(quantity_in_stock=F("quantity_in_stock") - qty, updated_at=now())
                )
                if not updated:
                    logger.warning(
                        f"Stock {movement_type} refused for product {product_id}: "
                        f"requested {qty}, not available",
                        extra={"product_id": product_id},
                    )
                    return False

                record = StockRecord.objects.get(product_id=product_id)
                self._log(record, -qty, movement_type, reference)
                if journal is not None:
                    journal(record)
        return True

    def _increment(self, product_id, qty, movement_type, reference):
        if not self._valid_target(product_id, qty, allow_zero=False, op=movement_type.lower()):
            return False

        with product_lock(product_id):
            with transaction.atomic():
                updated = (
                    StockRecord.objects
                    .filter(product_id=product_id)
                    .update(quantity_in_stock=F("quantity_in_stock") + qty, updated_at=now())
                )
                if not updated:
                    logger.warning(f"Stock {movement_type} for unknown product {product_id}")
                    return False

                record = StockRecord.objects.get(product_id=product_id)
                self._log(record, qty, movement_type, reference)
        return True

    def _log(self, record, delta, movement_type, reference):
        StockMovementLog.objects.create(
            record=record,
            quantity_change=delta,
            movement_type=movement_type,
            reference=reference or "",
            balance_after=record.quantity_in_stock,
        )
