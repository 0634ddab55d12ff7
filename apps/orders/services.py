import logging
from collections import namedtuple
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import Sum

from apps.catalog.repositories import ProductRepository
from apps.inventory.services import StockLedger
from apps.utils.exceptions import (
    BusinessLogicException,
    CompensationError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.utils.utils import now, order_reference
from apps.utils.validators import validate_not_blank, validate_positive_id, validate_quantity

from .models import Order, OrderItem, OrderTimeline, StockReservation
from .repositories import CartItemRepository, OrderItemRepository, OrderRepository
from .state_machine import OrderStatusMachine, parse_status

logger = logging.getLogger(__name__)

PricedLine = namedtuple("PricedLine", ["product_id", "quantity", "unit_price", "subtotal"])


@dataclass
class OrderResult:
    """
    Outcome of an order operation. Failures carry the error code of the
    original cause in `reason`; rollback problems go to
    `compensation_errors` and never replace the cause.
    """
    ok: bool
    order: Optional[Order] = None
    reason: Optional[str] = None
    message: str = ""
    compensation_errors: List[CompensationError] = field(default_factory=list)

    @classmethod
    def success(cls, order, message=""):
        return cls(ok=True, order=order, message=message)

    @classmethod
    def failure(cls, exc, order=None, compensation_errors=None):
        if isinstance(exc, BusinessLogicException):
            reason, message = exc.code, exc.message
        else:
            reason, message = "unexpected_error", str(exc) or exc.__class__.__name__
        return cls(
            ok=False,
            order=order,
            reason=reason,
            message=message,
            compensation_errors=list(compensation_errors or []),
        )


def _normalize_lines(items):
    if not items:
        raise ValidationError("Order must contain at least one item.")

    lines = []
    for raw in items:
        if isinstance(raw, dict):
            product_id, quantity = raw.get("product_id"), raw.get("quantity")
        else:
            try:
                product_id, quantity = raw
            except (TypeError, ValueError):
                raise ValidationError(f"Malformed order line: {raw!r}")
        lines.append((
            validate_positive_id(product_id, "product_id"),
            validate_quantity(quantity),
        ))
    return lines


class OrderSaga:
    """
    Order creation as a compensating transaction.

    The store is only trusted per row, so the saga keeps its own journal
    (StockReservation) and undoes its side effects explicitly when a later
    step fails:

        1. validate + price (read-only)
        2. persist the order header (PENDING / UNPAID)
        3. per item, in the supplied order: persist the item, then reserve
           stock; on failure release every reservation of this run and
           delete every item of this run
        4. mark the saga committed

    Availability is checked in step 1 and again atomically by
    StockLedger.reserve in step 3. Stock taken by someone else in between
    makes step 3 fail and roll back; that window is accepted.
    """

    def __init__(self, ledger=None, products=None, orders=None, items=None):
        self.ledger = ledger or StockLedger()
        self.products = products or ProductRepository()
        self.orders = orders or OrderRepository()
        self.items = items or OrderItemRepository()

    def create_order(self, user_id, items, shipping_address, payment_method) -> OrderResult:
        try:
            validate_positive_id(user_id, "user_id")
            lines = _normalize_lines(items)
            shipping_address = validate_not_blank(shipping_address, "shipping_address")
            payment_method = validate_not_blank(payment_method, "payment_method")

            priced, total = self._price(lines)
            order = self._create_header(user_id, total, shipping_address, payment_method)
        except BusinessLogicException as e:
            logger.warning(f"Order rejected for user {user_id}: {e.message}", extra={"user_id": user_id, "reason": e.code})
            return OrderResult.failure(e)
        except Exception as e:
            # Nothing has been written yet.
            logger.exception(f"Unexpected error before order creation for user {user_id}")
            return OrderResult.failure(e)

        try:
            for line in priced:
                self._commit_line(order, line)

            order.saga_state = Order.SagaState.COMMITTED
            self.orders.update(order, fields=["saga_state"])
            OrderTimeline.objects.create(order=order, status=order.status, note="Order placed.")
        except Exception as e:
            if isinstance(e, BusinessLogicException):
                logger.warning(
                    f"Order {order.pk} failed, compensating: {e.message}",
                    extra={"order_id": order.pk, "reason": e.code},
                )
            else:
                logger.exception(f"Order {order.pk} failed unexpectedly, compensating", extra={"order_id": order.pk})

            errors = self.compensate(order, note=f"Order creation failed: {e}")
            return OrderResult.failure(e, order=order, compensation_errors=errors)

        logger.info(
            f"Order {order.pk} created for user {user_id}: {len(priced)} items, total {order.total_amount}",
            extra={"order_id": order.pk, "user_id": user_id},
        )
        return OrderResult.success(order)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _price(self, lines):
        priced = []
        total = Decimal("0.00")

        for product_id, quantity in lines:
            product = self.products.find_by_id(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found.")

            if not self.ledger.check_availability(product_id, quantity):
                raise InsufficientStockError(f"Insufficient stock for product {product_id} (requested {quantity}).")

            unit_price = product.price
            subtotal = unit_price * quantity
            total += subtotal
            priced.append(PricedLine(product_id, quantity, unit_price, subtotal))

        return priced, total

    def _create_header(self, user_id, total, shipping_address, payment_method):
        return self.orders.save(Order(
            user_id=user_id,
            order_date=now(),
            total_amount=total,
            status=Order.Status.PENDING,
            payment_status=Order.PaymentStatus.UNPAID,
            shipping_address=shipping_address,
            payment_method=payment_method,
            saga_state=Order.SagaState.STARTED,
        ))

    def _commit_line(self, order, line):
        self.items.save(OrderItem(
            order=order,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            subtotal=line.subtotal,
        ))

        def journal(record):
            StockReservation.objects.create(
                order=order, product_id=line.product_id, quantity=line.quantity
            )

        reserved = self.ledger.reserve(
            line.product_id, line.quantity, reference=order_reference(order.pk), journal=journal
        )
        if not reserved:
            raise InsufficientStockError(
                f"Stock for product {line.product_id} was taken before it could be reserved."
            )

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    def release_reservations(self, order) -> List[CompensationError]:
        """
        Releases every still-RESERVED journal row of the order.
        Safe to call repeatedly.
        """
        errors = []
        for entry in StockReservation.objects.filter(order_id=order.pk, state=StockReservation.State.RESERVED):
            try:
                self._release_entry(entry, order)
            except Exception as e:
                logger.error(
                    f"Compensation: releasing {entry.quantity} of product {entry.product_id} "
                    f"for order {order.pk} failed: {e}",
                    extra={"order_id": order.pk, "product_id": entry.product_id},
                )
                if isinstance(e, CompensationError):
                    errors.append(e)
                else:
                    errors.append(CompensationError(str(e), step="release", cause=e))
        return errors

    def _release_entry(self, entry, order):
        with transaction.atomic():
            claimed = StockReservation.objects.filter(
                pk=entry.pk, state=StockReservation.State.RESERVED
            ).update(state=StockReservation.State.RELEASED, released_at=now())
            if not claimed:
                return False

            released = self.ledger.release(
                entry.product_id, entry.quantity, reference=f"RELEASE-{order_reference(order.pk)}"
            )
            if not released:
                raise CompensationError(
                    f"Stock record for product {entry.product_id} rejected the release.", step="release"
                )
        return True

    def compensate(self, order, note="Rolled back.") -> List[CompensationError]:
        """
        Undoes a saga run: release its reservations, delete its items and
        close the header as CANCELLED. Idempotent. If any step fails the
        order stays COMPENSATING so it can be replayed.
        """
        errors = []

        try:
            order.saga_state = Order.SagaState.COMPENSATING
            self.orders.update(order, fields=["saga_state"])
        except Exception as e:
            logger.error(f"Compensation: could not mark order {order.pk} as compensating: {e}")
            errors.append(CompensationError(str(e), step="mark", cause=e))

        errors.extend(self.release_reservations(order))

        try:
            self.items.delete_by_order_id(order.pk)
        except Exception as e:
            logger.error(f"Compensation: deleting items of order {order.pk} failed: {e}", extra={"order_id": order.pk})
            errors.append(CompensationError(str(e), step="delete_items", cause=e))

        if errors:
            return errors

        try:
            if order.status != Order.Status.CANCELLED:
                order.status = OrderStatusMachine.check(order.status, Order.Status.CANCELLED)
            order.saga_state = Order.SagaState.FAILED
            self.orders.update(order, fields=["status", "saga_state"])
            OrderTimeline.objects.create(order=order, status=order.status, note=note)
        except Exception as e:
            logger.error(f"Compensation: closing order {order.pk} failed: {e}", extra={"order_id": order.pk})
            errors.append(CompensationError(str(e), step="close", cause=e))

        return errors

    def replay_stalled(self, stall_timeout):
        """
        Finishes compensation for orders whose saga died half-way: anything
        left COMPENSATING, or STARTED for longer than `stall_timeout`.
        Returns (replayed, still_failing).
        """
        cutoff = now() - stall_timeout
        stalled = (
            self.orders.find_by_saga_state(Order.SagaState.COMPENSATING, Order.SagaState.STARTED)
            .exclude(saga_state=Order.SagaState.STARTED, created_at__gte=cutoff)
        )

        replayed = failing = 0
        for order in stalled:
            errors = self.compensate(order, note="Stalled order rolled back.")
            if errors:
                failing += 1
                logger.error(f"Replay of order {order.pk} still failing: {errors[0].message}", extra={"order_id": order.pk})
            else:
                replayed += 1
                logger.info(f"Replayed compensation for order {order.pk}", extra={"order_id": order.pk})
        return replayed, failing


OrderSummary = namedtuple("OrderSummary", ["order", "items", "products", "total_items"])


class OrderService:

    def __init__(self, saga=None, orders=None, items=None, products=None):
        self.saga = saga or OrderSaga()
        self.orders = orders or OrderRepository()
        self.items = items or OrderItemRepository()
        self.products = products or ProductRepository()

    def create_order(self, user_id, items, shipping_address, payment_method) -> OrderResult:
        return self.saga.create_order(user_id, items, shipping_address, payment_method)

    def _load(self, order_id):
        validate_positive_id(order_id, "order_id")
        order = self.orders.find_by_id(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found.")
        return order

    def _load_committed(self, order_id):
        """Orders whose creation saga is still running belong to the saga or to replay."""
        order = self._load(order_id)
        if order.saga_state != Order.SagaState.COMMITTED:
            raise InvalidTransitionError(
                f"Order {order_id} is not placed yet (saga state {order.saga_state})."
            )
        return order

    def cancel_order(self, order_id) -> OrderResult:
        """
        PENDING / PROCESSING only. Stock goes back first, then the status
        flips. A failed flip leaves stock restored with the old status; the
        journal makes a retry of this call safe.
        """
        try:
            order = self._load_committed(order_id)
            if not order.can_cancel:
                raise InvalidTransitionError(f"Cannot cancel order in status {order.status}.")

            errors = self.saga.release_reservations(order)
            if errors:
                return OrderResult.failure(errors[0], order=order, compensation_errors=errors)

            order.status = OrderStatusMachine.check(order.status, Order.Status.CANCELLED)
            update_fields = ["status"]
            if order.payment_status == Order.PaymentStatus.PAID:
                order.payment_status = Order.PaymentStatus.REFUNDED
                update_fields.append("payment_status")
            self.orders.update(order, fields=update_fields)

            OrderTimeline.objects.create(order=order, status=order.status, note="Cancelled.")
        except BusinessLogicException as e:
            logger.warning(f"cancel_order({order_id}) refused: {e.message}", extra={"order_id": order_id})
            return OrderResult.failure(e)
        except Exception as e:
            logger.exception(f"cancel_order({order_id}) failed", extra={"order_id": order_id})
            return OrderResult.failure(e)

        logger.info(f"Order {order_id} cancelled", extra={"order_id": order_id})
        return OrderResult.success(order)

    def update_order_status(self, order_id, new_status) -> OrderResult:
        try:
            new_status = parse_status(new_status)
            if new_status == Order.Status.CANCELLED:
                # Cancelling must give stock back.
                return self.cancel_order(order_id)

            order = self._load_committed(order_id)
            OrderStatusMachine.check(order.status, new_status)
            self.orders.update_status(order, new_status)
            OrderTimeline.objects.create(order=order, status=new_status)
        except BusinessLogicException as e:
            logger.warning(f"update_order_status({order_id}, {new_status}) refused: {e.message}")
            return OrderResult.failure(e)
        except Exception as e:
            logger.exception(f"update_order_status({order_id}) failed")
            return OrderResult.failure(e)

        return OrderResult.success(order)

    def mark_order_paid(self, order_id) -> OrderResult:
        try:
            order = self._load_committed(order_id)
            if order.status == Order.Status.CANCELLED:
                raise InvalidTransitionError(f"Order {order_id} is cancelled.")
            if order.payment_status == Order.PaymentStatus.PAID:
                logger.warning(f"Order {order_id} already paid. Ignoring.")
                return OrderResult.success(order)

            order.payment_status = Order.PaymentStatus.PAID
            self.orders.update(order, fields=["payment_status"])
        except BusinessLogicException as e:
            return OrderResult.failure(e)
        except Exception as e:
            logger.exception(f"mark_order_paid({order_id}) failed")
            return OrderResult.failure(e)
        return OrderResult.success(order)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id):
        return self.orders.find_by_id(order_id)

    def get_order_items(self, order_id):
        return self.items.find_by_order_id(order_id)

    def get_orders_by_user(self, user_id):
        return self.orders.find_by_user_id(user_id)

    def get_orders_by_status(self, status):
        return self.orders.find_by_status(parse_status(status))

    def get_pending_orders(self):
        return self.orders.find_by_status(Order.Status.PENDING)

    def get_recent_orders(self, limit=10):
        if limit <= 0:
            return []
        return self.orders.find_recent(limit)

    def get_order_count_by_user(self, user_id):
        return Order.objects.filter(user_id=user_id).count()

    def calculate_order_total(self, order_id):
        return self.items.total_for_order(order_id) or Decimal("0.00")

    def get_total_revenue(self):
        return self._revenue(Order.objects.all())

    def get_revenue_by_date_range(self, start, end):
        if start is None or end is None or not start < end:
            return Decimal("0.00")
        return self._revenue(Order.objects.filter(order_date__range=(start, end)))

    def _revenue(self, qs):
        total = qs.filter(payment_status=Order.PaymentStatus.PAID).aggregate(total=Sum("total_amount"))["total"]
        return total or Decimal("0.00")

    def get_order_summary(self, order_id):
        order = self.orders.find_by_id(order_id)
        if order is None:
            return None
        items = self.items.find_by_order_id(order_id)
        products = self.products.find_by_ids(i.product_id for i in items)
        return OrderSummary(
            order=order,
            items=items,
            products=[products.get(i.product_id) for i in items],
            total_items=sum(i.quantity for i in items),
        )


class CartService:
    """
    Bridges a user's cart to the order saga. Nothing is reserved while items
    sit in the cart; stock is only taken at checkout.
    """

    def __init__(self, saga=None, ledger=None, cart=None, products=None):
        self.ledger = ledger or StockLedger()
        self.saga = saga or OrderSaga(ledger=self.ledger)
        self.cart = cart or CartItemRepository()
        self.products = products or ProductRepository()

    def get_cart_items(self, user_id):
        return self.cart.find_by_user_id(user_id)

    def add_to_cart(self, user_id, product_id, quantity) -> bool:
        try:
            validate_positive_id(user_id, "user_id")
            validate_positive_id(product_id, "product_id")
            validate_quantity(quantity)
        except ValidationError as e:
            logger.warning(f"add_to_cart: {e.message}")
            return False

        existing = self.cart.find_by_user_and_product(user_id, product_id)
        total_in_cart = (existing.quantity if existing else 0) + quantity

        if not self.ledger.check_availability(product_id, total_in_cart):
            logger.warning(
                f"add_to_cart: insufficient stock for product {product_id} (requested total: {total_in_cart})",
                extra={"user_id": user_id, "product_id": product_id},
            )
            return False

        try:
            if existing:
                existing.quantity = total_in_cart
                self.cart.update(existing, fields=["quantity"])
            else:
                self.cart.save(self.cart.model(user_id=user_id, product_id=product_id, quantity=quantity))
        except PersistenceError as e:
            logger.error(f"add_to_cart: {e.message}")
            return False
        return True

    def update_quantity(self, cart_item_id, new_quantity) -> bool:
        """A quantity of zero or less removes the line."""
        try:
            validate_positive_id(cart_item_id, "cart_item_id")
            if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
                raise ValidationError("quantity must be an integer.")
        except ValidationError as e:
            logger.warning(f"update_quantity: {e.message}")
            return False

        if new_quantity <= 0:
            return self.remove_from_cart(cart_item_id)

        item = self.cart.find_by_id(cart_item_id)
        if item is None:
            return False
        if not self.ledger.check_availability(item.product_id, new_quantity):
            logger.warning(f"update_quantity: insufficient stock for product {item.product_id}")
            return False

        item.quantity = new_quantity
        try:
            self.cart.update(item, fields=["quantity"])
        except PersistenceError as e:
            logger.error(f"update_quantity: {e.message}")
            return False
        return True

    def remove_from_cart(self, cart_item_id) -> bool:
        try:
            return self.cart.delete(cart_item_id)
        except PersistenceError as e:
            logger.error(f"remove_from_cart: {e.message}")
            return False

    def clear_cart(self, user_id) -> bool:
        try:
            self.cart.clear(user_id)
        except PersistenceError as e:
            logger.error(f"clear_cart: {e.message}")
            return False
        return True

    def cart_total(self, user_id):
        """Informational only, at current prices. Checkout re-prices anyway."""
        items = self.get_cart_items(user_id)
        products = self.products.find_by_ids(i.product_id for i in items)
        total = Decimal("0.00")
        for item in items:
            product = products.get(item.product_id)
            if product is not None:
                total += product.price * item.quantity
        return total

    def checkout(self, user_id, shipping_address, payment_method):
        """
        Returns the created Order, or None. The cart is cleared only when
        the saga succeeds, so a failed checkout can simply be retried.
        """
        cart_items = self.get_cart_items(user_id)
        if not cart_items:
            return None

        lines = [(ci.product_id, ci.quantity) for ci in cart_items]
        result = self.saga.create_order(user_id, lines, shipping_address, payment_method)
        if not result.ok:
            logger.warning(
                f"Checkout failed for user {user_id}: [{result.reason}] {result.message}",
                extra={"user_id": user_id, "reason": result.reason},
            )
            return None

        if not self.clear_cart(user_id):
            logger.error(f"Order {result.order.pk} placed but cart of user {user_id} could not be cleared")
        return result.order
