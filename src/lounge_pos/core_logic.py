"""Reconciliation engine for Lounge POS bills.

The engine is stateless: every operation takes explicit command objects, reads
what it needs through the store interfaces, and issues its writes in a fixed
order. A bill moves ``Drafting -> Committed -> Edited -> Deleted``; creation is
the only way into ``Committed``.

Every rule that can reject an operation is checked before the first write, so
a rejected command leaves no trace. Once the bill write succeeds the remaining
steps (inventory, customer ledger, membership) are not rolled back on failure.
They are reported on the returned :class:`ReconciliationResult` as
:class:`StepFailure` entries that can be handed back to
:meth:`ReconciliationEngine.retry`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import (
    MEMBER_LOYALTY_RATE,
    MEMBER_SESSION_DISCOUNT_PERCENT,
    STANDARD_LOYALTY_RATE,
    DiscountType,
    ItemType,
    PaymentMethod,
)
from .exceptions import (
    ActiveMembershipConflict,
    BusinessRuleViolation,
    ValidationError,
)
from .inventory import (
    InventoryAdjuster,
    WorkbookInventoryAdjuster,
    consumption_deltas,
    quantity_deltas,
    restoration_deltas,
)
from .ledger import CustomerLedger, WorkbookCustomerLedger
from .loyalty import points_earned, require_redemption
from .membership import MembershipGrant, grant_for_product, is_membership_active, membership_items
from .pricing import ZERO, Financials, cart_item_from_product, compute_financials, line_total
from .runtime import RuntimeContext
from .sessions import Session, Station, finalize as finalize_session
from .transactions import TransactionStore, WorkbookTransactionStore, generate_bill_id


INVENTORY = "inventory"
CUSTOMER_LEDGER = "customer ledger"
MEMBERSHIP = "membership"


@dataclass(frozen=True)
class CreateBillCommand:
    """User intent for committing a new bill from a drafted cart."""

    customer_id: str
    items: Tuple[data_manager.CartItem, ...]
    discount: Decimal = ZERO
    discount_type: DiscountType = DiscountType.FIXED
    loyalty_points_used: int = 0
    payment_method: PaymentMethod = PaymentMethod.CASH
    idempotency_key: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class EditBillCommand:
    """User intent for replacing the cart and discounts of a committed bill.

    ``payment_method`` left as ``None`` keeps the stored one.
    """

    bill_id: str
    items: Tuple[data_manager.CartItem, ...]
    discount: Decimal = ZERO
    discount_type: DiscountType = DiscountType.FIXED
    loyalty_points_used: int = 0
    payment_method: Optional[PaymentMethod] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Adjustment:
    """One downstream write the engine issues after the bill is stored."""

    ledger: str
    key: str
    bill_id: str
    stock_delta: int = 0
    points_delta: int = 0
    spent_delta: Decimal = ZERO
    grant: Optional[MembershipGrant] = None

    def describe(self) -> str:
        if self.ledger == INVENTORY:
            return f"stock {self.stock_delta:+d} for product '{self.key}'"
        if self.ledger == CUSTOMER_LEDGER:
            return f"points {self.points_delta:+d}, spent {self.spent_delta:+} for customer '{self.key}'"
        plan = self.grant.plan if self.grant is not None else "?"
        return f"membership '{plan}' for customer '{self.key}'"


@dataclass(frozen=True)
class StepFailure:
    """A downstream write that did not go through."""

    adjustment: Adjustment
    error: BusinessRuleViolation

    @property
    def ledger(self) -> str:
        return self.adjustment.ledger

    @property
    def message(self) -> str:
        return (
            f"Bill '{self.adjustment.bill_id}' is stored but the {self.ledger} was not updated "
            f"({self.adjustment.describe()}): {self.error}"
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of a create, edit, delete, or retry.

    Attributes:
        bill (Bill | None): Bill as stored after the operation. For deletes
            this is the snapshot that was removed; retries carry ``None``.
        failures (tuple[StepFailure, ...]): Downstream steps that failed after
            the bill write; empty on full success.
        skipped (tuple[str, ...]): Steps intentionally not performed, such as
            the ledger reversal for a customer that no longer exists.
        replayed (bool): ``True`` when a create matched an existing
            idempotency key and nothing was written.
    """

    bill: Optional[data_manager.Bill]
    failures: Tuple[StepFailure, ...] = ()
    skipped: Tuple[str, ...] = ()
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def warnings(self) -> List[str]:
        return [failure.message for failure in self.failures]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def require_customer_selected(customer_id: Optional[str]) -> None:
    """Reject a command that names no customer."""
    if not customer_id or not str(customer_id).strip():
        log.warning("Bill rejected: no customer selected")
        raise ValidationError("A customer must be selected")


def require_valid_items(items: Sequence[data_manager.CartItem]) -> None:
    """Validate cart lines before they are priced.

    Raises:
        ValidationError: If the cart is empty, a line has an unknown type, a
            non-positive quantity, a negative price, or a ``total`` that is
            not ``price x quantity``.
    """
    if not items:
        log.warning("Bill rejected: empty cart")
        raise ValidationError("Cart is empty")
    for item in items:
        if item.item_type not in {kind.value for kind in ItemType}:
            raise ValidationError(f"Unsupported item type '{item.item_type}' for '{item.name}'")
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            log.warning("Bill rejected: quantity %r for '%s'", item.quantity, item.item_id)
            raise ValidationError(f"Quantity must be a positive whole number for '{item.name}'")
        if item.price < ZERO:
            raise ValidationError(f"Price cannot be negative for '{item.name}'")
        if item.total != line_total(item.price, item.quantity):
            raise ValidationError(
                f"Line total {item.total} for '{item.name}' does not match {item.price} x {item.quantity}"
            )


def require_valid_discount(discount: Decimal, discount_type: DiscountType | str) -> DiscountType:
    """Validate a discount figure and return its normalised type.

    Raises:
        ValidationError: If the type is unknown, the figure is negative or not
            a number, or a percentage exceeds 100.
    """
    try:
        kind = DiscountType(discount_type)
    except ValueError as exc:
        raise ValidationError(f"Unsupported discount type: {discount_type}") from exc
    try:
        amount = Decimal(discount)
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"Discount must be a number, got {discount!r}") from exc
    if amount < ZERO:
        log.warning("Bill rejected: negative discount %s", amount)
        raise ValidationError("Discount must be zero or positive")
    if kind is DiscountType.PERCENTAGE and amount > Decimal(100):
        raise ValidationError("Percentage discount cannot exceed 100")
    return kind


def require_valid_points(points: int) -> None:
    """Reject a redemption that is not a non-negative whole number."""
    if isinstance(points, bool) or not isinstance(points, int) or points < 0:
        log.warning("Bill rejected: loyalty points used %r", points)
        raise ValidationError("Loyalty points used must be a whole number, zero or positive")


def require_payment_method(method: PaymentMethod | str) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError as exc:
        raise ValidationError(f"Unsupported payment method: {method}") from exc


def loyalty_delta(
    *,
    used_old: int,
    earned_old: int,
    used_new: int,
    earned_new: int,
) -> int:
    """Net change to a loyalty balance when a bill's snapshot is replaced.

    Points returned by a smaller redemption plus the change in points earned.
    Creation is the case where the old snapshot is all zeros, deletion the case
    where the new one is.
    """
    return (used_old - used_new) + (earned_new - earned_old)


class ReconciliationEngine:
    """Orchestrates bills, customer balances, and stock through their stores.

    Args:
        transactions (TransactionStore): Authoritative bill storage.
        ledger (CustomerLedger): Loyalty balance and lifetime spend.
        inventory (InventoryAdjuster): Product stock.
        member_rate (int): Loyalty points per 100 for members.
        standard_rate (int): Loyalty points per 100 for everyone else.
        session_discount_percent (Decimal): Discount active members get on
            station time.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        ledger: CustomerLedger,
        inventory: InventoryAdjuster,
        *,
        member_rate: int = MEMBER_LOYALTY_RATE,
        standard_rate: int = STANDARD_LOYALTY_RATE,
        session_discount_percent: Decimal = MEMBER_SESSION_DISCOUNT_PERCENT,
    ) -> None:
        self.transactions = transactions
        self.ledger = ledger
        self.inventory = inventory
        self.member_rate = member_rate
        self.standard_rate = standard_rate
        self.session_discount_percent = session_discount_percent

    @classmethod
    def from_context(cls, context: RuntimeContext) -> "ReconciliationEngine":
        """Build an engine over the workbook stores of ``context``."""
        return cls(
            WorkbookTransactionStore(context),
            WorkbookCustomerLedger(context),
            WorkbookInventoryAdjuster(context),
            member_rate=context.settings.member_loyalty_rate,
            standard_rate=context.settings.standard_loyalty_rate,
            session_discount_percent=context.settings.member_session_discount_percent,
        )

    def _points_earned(self, total: Decimal, is_member: bool) -> int:
        return points_earned(total, is_member, member_rate=self.member_rate, standard_rate=self.standard_rate)

    async def build_cart(self, lines: Iterable[Tuple[str, int]]) -> Tuple[data_manager.CartItem, ...]:
        """Price ``(product_id, quantity)`` pairs from the catalog.

        Raises:
            NotFoundError: If a product id is unknown.
        """
        items = []
        for product_id, quantity in lines:
            product = await self.inventory.read(product_id)
            items.append(cart_item_from_product(product, quantity))
        return tuple(items)

    async def _check_stock(self, deltas: Dict[str, int]) -> None:
        for product_id, delta in deltas.items():
            if delta < 0:
                await self.inventory.check_delta(product_id, delta)

    async def _membership_grant(
        self,
        customer: data_manager.Customer,
        items: Iterable[data_manager.CartItem],
        now: datetime,
    ) -> Optional[MembershipGrant]:
        lines = membership_items(items)
        if not lines:
            return None
        if is_membership_active(customer, now):
            expiry = customer.membership_expiry_date.isoformat() if customer.membership_expiry_date else None
            log.warning("Membership purchase rejected for active member '%s'", customer.customer_id)
            raise ActiveMembershipConflict(customer.customer_id, expiry)
        if len(lines) > 1:
            log.warning(
                "Cart holds %d membership lines; only '%s' is activated",
                len(lines),
                lines[0].item_id,
            )
        product = await self.inventory.read(lines[0].item_id)
        return grant_for_product(product, now)

    async def _apply(self, adjustment: Adjustment) -> None:
        if adjustment.ledger == INVENTORY:
            await self.inventory.apply_delta(adjustment.key, adjustment.stock_delta)
        elif adjustment.ledger == CUSTOMER_LEDGER:
            await self.ledger.apply_delta(
                adjustment.key,
                points_delta=adjustment.points_delta,
                spent_delta=adjustment.spent_delta,
            )
        elif adjustment.ledger == MEMBERSHIP:
            await self.ledger.activate_membership(adjustment.key, adjustment.grant)
        else:
            raise ValueError(f"Unknown ledger: {adjustment.ledger}")

    async def _apply_all(self, adjustments: Iterable[Adjustment]) -> Tuple[StepFailure, ...]:
        # steps are independent; one failure does not stop the rest
        failures = []
        for adjustment in adjustments:
            try:
                await self._apply(adjustment)
            except BusinessRuleViolation as exc:
                failure = StepFailure(adjustment=adjustment, error=exc)
                log.warning(failure.message)
                failures.append(failure)
        return tuple(failures)

    async def create(self, command: CreateBillCommand) -> ReconciliationResult:
        """Commit a drafted cart as a new bill.

        Writes, in order: the bill with its items, one stock delta per
        product, the customer's loyalty and spend delta, and the membership
        window when the cart sells one.

        Args:
            command (CreateBillCommand): Cart, discount, redemption, and
                payment details.

        Returns:
            ReconciliationResult: The stored bill plus any downstream step
                failures. When ``command.idempotency_key`` matches a stored
                bill that bill is returned with ``replayed=True``.

        Raises:
            ValidationError: If the customer, cart, discount, redemption or
                payment method is invalid.
            NotFoundError: If the customer or a product is unknown.
            ActiveMembershipConflict: If the cart sells a membership to a
                customer who already holds an active one.
            LoyaltyPointsExceeded: If the redemption exceeds the balance.
            InsufficientStock: If a product cannot cover the cart.
            StoreWriteFailure: If the bill itself cannot be stored.
        """
        require_customer_selected(command.customer_id)
        items = tuple(command.items)
        require_valid_items(items)
        discount_type = require_valid_discount(command.discount, command.discount_type)
        require_valid_points(command.loyalty_points_used)
        payment_method = require_payment_method(command.payment_method)

        if command.idempotency_key:
            existing = await self.transactions.find_by_idempotency_key(command.idempotency_key)
            if existing is not None:
                log.info(
                    "Idempotency key '%s' matches bill '%s'; nothing written",
                    command.idempotency_key,
                    existing.bill_id,
                )
                return ReconciliationResult(bill=existing, replayed=True)

        now = _resolve_timestamp(command.timestamp)
        customer = await self.ledger.read(command.customer_id)
        grant = await self._membership_grant(customer, items, now)
        require_redemption(command.loyalty_points_used, customer.loyalty_points)
        stock_deltas = consumption_deltas(items)
        await self._check_stock(stock_deltas)

        financials = compute_financials(items, Decimal(command.discount), discount_type, command.loyalty_points_used)
        earned = self._points_earned(financials.total, customer.is_member)
        bill = data_manager.Bill(
            bill_id=generate_bill_id(),
            customer_id=customer.customer_id,
            subtotal=financials.subtotal,
            discount=Decimal(command.discount),
            discount_type=discount_type.value,
            discount_value=financials.discount_value,
            loyalty_points_used=command.loyalty_points_used,
            loyalty_points_earned=earned,
            total=financials.total,
            payment_method=payment_method.value,
            created_at=now,
            items=items,
            idempotency_key=command.idempotency_key,
        )
        await self.transactions.persist(bill)

        adjustments = [
            Adjustment(ledger=INVENTORY, key=product_id, bill_id=bill.bill_id, stock_delta=delta)
            for product_id, delta in stock_deltas.items()
        ]
        adjustments.append(
            Adjustment(
                ledger=CUSTOMER_LEDGER,
                key=customer.customer_id,
                bill_id=bill.bill_id,
                points_delta=loyalty_delta(used_old=0, earned_old=0, used_new=bill.loyalty_points_used, earned_new=earned),
                spent_delta=bill.total,
            )
        )
        if grant is not None:
            adjustments.append(Adjustment(ledger=MEMBERSHIP, key=customer.customer_id, bill_id=bill.bill_id, grant=grant))

        failures = await self._apply_all(adjustments)
        log.info(
            "Committed bill '%s' for customer '%s': total=%s earned=%d used=%d%s",
            bill.bill_id,
            customer.customer_id,
            bill.total,
            earned,
            bill.loyalty_points_used,
            f" with {len(failures)} failed step(s)" if failures else "",
        )
        return ReconciliationResult(bill=bill, failures=failures)

    async def edit(self, command: EditBillCommand) -> ReconciliationResult:
        """Replace the cart and discounts of a committed bill.

        The stored bill is re-read, the new snapshot is computed from scratch,
        and only the differences are written: changed stock per product and
        the net loyalty and spend change for the customer, applied against the
        latest stored balance.

        Raises:
            ValidationError: If the new cart, discount or redemption is
                invalid.
            NotFoundError: If the bill, its customer or a product is unknown.
            LoyaltyPointsExceeded: If the new redemption exceeds the customer's
                balance plus the points the original bill already redeemed.
            ActiveMembershipConflict: If a membership line is added for an
                active member.
            InsufficientStock: If added units exceed available stock.
            StoreWriteFailure: If the bill itself cannot be replaced.
        """
        items = tuple(command.items)
        require_valid_items(items)
        discount_type = require_valid_discount(command.discount, command.discount_type)
        require_valid_points(command.loyalty_points_used)
        payment_method = None
        if command.payment_method is not None:
            payment_method = require_payment_method(command.payment_method)

        original = await self.transactions.get(command.bill_id)
        customer = await self.ledger.read(original.customer_id)
        now = _resolve_timestamp(command.timestamp)

        previously_sold = {item.item_id for item in membership_items(original.items)}
        added_memberships = [item for item in membership_items(items) if item.item_id not in previously_sold]
        grant = await self._membership_grant(customer, added_memberships, now)

        require_redemption(command.loyalty_points_used, customer.loyalty_points + original.loyalty_points_used)
        stock_deltas = quantity_deltas(original.items, items)
        await self._check_stock(stock_deltas)

        financials: Financials = compute_financials(
            items, Decimal(command.discount), discount_type, command.loyalty_points_used
        )
        earned = self._points_earned(financials.total, customer.is_member)
        points_delta = loyalty_delta(
            used_old=original.loyalty_points_used,
            earned_old=original.loyalty_points_earned,
            used_new=command.loyalty_points_used,
            earned_new=earned,
        )
        spent_delta = financials.total - original.total

        updated = replace(
            original,
            items=items,
            subtotal=financials.subtotal,
            discount=Decimal(command.discount),
            discount_type=discount_type.value,
            discount_value=financials.discount_value,
            loyalty_points_used=command.loyalty_points_used,
            loyalty_points_earned=earned,
            total=financials.total,
            payment_method=payment_method.value if payment_method is not None else original.payment_method,
        )
        await self.transactions.replace(updated)

        adjustments = [
            Adjustment(ledger=INVENTORY, key=product_id, bill_id=updated.bill_id, stock_delta=delta)
            for product_id, delta in stock_deltas.items()
        ]
        if points_delta or spent_delta:
            adjustments.append(
                Adjustment(
                    ledger=CUSTOMER_LEDGER,
                    key=customer.customer_id,
                    bill_id=updated.bill_id,
                    points_delta=points_delta,
                    spent_delta=spent_delta,
                )
            )
        if grant is not None:
            adjustments.append(
                Adjustment(ledger=MEMBERSHIP, key=customer.customer_id, bill_id=updated.bill_id, grant=grant)
            )

        failures = await self._apply_all(adjustments)
        log.info(
            "Edited bill '%s': total %s -> %s, points %+d, spent %+.2f",
            updated.bill_id,
            original.total,
            updated.total,
            points_delta,
            spent_delta,
        )
        return ReconciliationResult(bill=updated, failures=failures)

    async def delete(self, bill_id: str) -> ReconciliationResult:
        """Remove a bill and reverse its effect on the customer and stock.

        A customer that no longer exists does not block the delete; the ledger
        reversal is reported in ``skipped`` instead.

        Raises:
            NotFoundError: If the bill does not exist.
            StoreWriteFailure: If the bill itself cannot be removed.
        """
        bill = await self.transactions.get(bill_id)
        customer = await self.ledger.find(bill.customer_id)
        await self.transactions.delete(bill_id)

        adjustments = []
        skipped = []
        if customer is None:
            note = f"{CUSTOMER_LEDGER} reversal skipped: customer '{bill.customer_id}' no longer exists"
            log.warning("Bill '%s': %s", bill_id, note)
            skipped.append(note)
        else:
            adjustments.append(
                Adjustment(
                    ledger=CUSTOMER_LEDGER,
                    key=customer.customer_id,
                    bill_id=bill_id,
                    points_delta=loyalty_delta(
                        used_old=bill.loyalty_points_used,
                        earned_old=bill.loyalty_points_earned,
                        used_new=0,
                        earned_new=0,
                    ),
                    spent_delta=-bill.total,
                )
            )
        adjustments.extend(
            Adjustment(ledger=INVENTORY, key=product_id, bill_id=bill_id, stock_delta=delta)
            for product_id, delta in restoration_deltas(bill.items).items()
        )

        failures = await self._apply_all(adjustments)
        log.info("Deleted bill '%s' (total=%s)", bill_id, bill.total)
        return ReconciliationResult(bill=bill, failures=failures, skipped=tuple(skipped))

    async def retry(self, failure: StepFailure) -> ReconciliationResult:
        """Re-apply the single adjustment carried by ``failure``.

        Returns:
            ReconciliationResult: No failures when the retry went through,
                otherwise a fresh :class:`StepFailure` for the same
                adjustment.
        """
        log.info("Retrying %s step for bill '%s'", failure.ledger, failure.adjustment.bill_id)
        failures = await self._apply_all([failure.adjustment])
        return ReconciliationResult(bill=None, failures=failures)

    async def checkout_session(
        self,
        session: Session,
        station: Station,
        *,
        end_time: Optional[datetime] = None,
    ) -> data_manager.CartItem:
        """Cost a station session as a cart line for its customer.

        The customer is read from the ledger so the member discount follows
        the stored membership window. A customer that no longer exists pays
        the standard rate.
        """
        customer = await self.ledger.find(session.customer_id)
        return finalize_session(
            session,
            station,
            customer,
            end_time=end_time,
            member_discount_percent=self.session_discount_percent,
        )

    async def restock(self, product_id: str, quantity: int) -> int:
        """Add ``quantity`` units to a product and return the new stock."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            log.error("Restock quantity validation failed: %r", quantity)
            raise ValidationError("Restock quantity must be a positive whole number")
        return await self.inventory.apply_delta(product_id, quantity)


@dataclass(frozen=True)
class BillSummary:
    """Row of the bills read model."""

    bill: data_manager.Bill
    customer_name: Optional[str] = None
    lines: List[str] = field(default_factory=list)


def summarize_bills(
    bills: Iterable[data_manager.Bill],
    customers: Iterable[data_manager.Customer],
) -> List[BillSummary]:
    """Join bills with customer names for display."""
    names = {customer.customer_id: customer.name for customer in customers}
    return [
        BillSummary(
            bill=bill,
            customer_name=names.get(bill.customer_id),
            lines=[f"{item.name} x{item.quantity} = {item.total}" for item in bill.items],
        )
        for bill in bills
    ]
