"""
Partial-fill order coordination.

An order of total_amount is split into N partial orders, each filled
independently by a resolver through its own HTLC.

Order lifecycle:
    PENDING -> EXECUTING -> COMPLETED
    PENDING | EXECUTING -> CANCELLED

Partial order lifecycle:
    PENDING -> ASSIGNED -> EXECUTING -> COMPLETED
    ASSIGNED | EXECUTING -> FAILED -> (reassign) -> ASSIGNED

Execution is claimed with a check-and-set under the OrderStore lock: of any
number of concurrent execute_partial_fill calls on one partial order,
exactly one proceeds and the rest raise AlreadyExecuted. Callers only ever
receive copies of stored records.
"""

import copy
import time
import uuid
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Callable, Any, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from ..config import FillConfig
from ..core import (
    OrderStatus, PartialOrderStatus, BidStatus,
    PartialOrder, PartialFillOrder, ResolverAssignment, ResolverBid,
    PartialFillExecution, ExecutionOptions, PartialFillProgress,
    AMOUNT_TOLERANCE,
)
from ..errors import (
    InvalidParameter, AmountMismatch, NotFound, InvalidTransition,
    AlreadyExecuted, NotAuthorized, SecretMismatch,
)
from ..store import OrderStore
from .secret_manager import SecretManager

log = logging.getLogger(__name__)

Amount = Union[str, int, float, Decimal]


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_resolver_id() -> str:
    return f"resolver_{uuid.uuid4().hex[:9]}"


class BidSubmission(BaseModel):
    """Resolver bid as submitted."""
    partial_order_id: str = Field(..., min_length=1)
    resolver_id: str = Field(..., min_length=1)
    bid_amount: Decimal = Field(..., gt=0)
    fee: Decimal = Field(..., ge=0)


def _to_decimal(value: Amount, what: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise InvalidParameter(f"{what} is not a number: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise InvalidParameter(f"{what} must be positive, got {value!r}")
    return amount


def _parse_amounts(partial_amounts: Sequence[Amount]) -> List[Decimal]:
    if isinstance(partial_amounts, (str, bytes)) or not partial_amounts:
        raise InvalidParameter("Partial amounts must be a non-empty list")
    return [_to_decimal(a, f"Partial amount {i}") for i, a in enumerate(partial_amounts)]


def _check_sum(total: Decimal, amounts: List[Decimal]):
    if abs(sum(amounts) - total) > AMOUNT_TOLERANCE:
        raise AmountMismatch(f"Partial amounts sum to {sum(amounts)}, expected {total}")


class PartialFillCoordinator:
    """
    Owns partial-fill orders, resolver assignment, bids and execution.

    Args:
        secret_manager: Reserves per-partial secrets
        store: Order/assignment/bid/execution maps
        resolver_id_factory: New resolver ids for assignment
        clock: Returns ms
    """

    def __init__(
        self,
        secret_manager: SecretManager = None,
        store: OrderStore = None,
        config: FillConfig = None,
        resolver_id_factory: Callable[[], str] = default_resolver_id,
        clock: Callable[[], int] = _now_ms,
    ):
        self.config = config or FillConfig()
        self.secret_manager = secret_manager or SecretManager(self.config)
        self.store = store if store is not None else OrderStore()
        self.resolver_id_factory = resolver_id_factory
        self.clock = clock

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(
        self,
        total_amount: Amount,
        partial_amounts: Sequence[Amount],
        from_token: Optional[str] = None,
        to_token: Optional[str] = None,
        user_address: Optional[str] = None,
        timelock: Optional[int] = None,
    ) -> PartialFillOrder:
        """
        Create an order split into len(partial_amounts) partial orders.

        Raises:
            InvalidParameter: empty list or non-positive amount
            AmountMismatch: amounts do not sum to total_amount (1e-6)
        """
        total = _to_decimal(total_amount, "Total amount")
        amounts = _parse_amounts(partial_amounts)
        _check_sum(total, amounts)

        now = self.clock()
        order_id = f"pf_{now}_{uuid.uuid4().hex[:9]}"
        order = PartialFillOrder(
            order_id=order_id,
            total_amount=total,
            partial_orders=self._make_partials(order_id, amounts),
            created_at=now,
            updated_at=now,
            from_token=from_token,
            to_token=to_token,
            user_address=user_address,
            timelock=timelock,
        )

        with self.store.transaction():
            self.store.orders[order_id] = order
            snapshot = copy.deepcopy(order)

        log.info(f"Order created: {order_id}, total={total}, parts={len(amounts)}")
        return snapshot

    def get_order(self, order_id: str) -> PartialFillOrder:
        with self.store.transaction():
            return copy.deepcopy(self._get_order_locked(order_id))

    def get_partial_order(self, partial_order_id: str) -> PartialOrder:
        with self.store.transaction():
            _, partial = self._get_partial_locked(partial_order_id)
            return copy.deepcopy(partial)

    def list_orders(self, status: Union[OrderStatus, str, None] = None) -> List[PartialFillOrder]:
        if isinstance(status, str):
            status = OrderStatus(status)
        with self.store.transaction():
            return [
                copy.deepcopy(o) for o in self.store.orders.values()
                if status is None or o.status == status
            ]

    def modify_order(self, order_id: str, new_partial_amounts: Sequence[Amount]) -> PartialFillOrder:
        """
        Replace the partial orders with a new split of the same total.

        New partial orders start PENDING with no resolver and no secret.
        Rejected once the order is terminal or any partial order is
        executing/completed; a rejected call changes nothing.
        """
        amounts = _parse_amounts(new_partial_amounts)

        with self.store.transaction():
            order = self._get_order_locked(order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order_id} is {order.status.value}")
            busy = [p.id for p in order.partial_orders
                    if p.status in (PartialOrderStatus.EXECUTING, PartialOrderStatus.COMPLETED)]
            if busy:
                raise InvalidTransition(f"Order {order_id} has partial orders in flight or done: {busy}")
            _check_sum(order.total_amount, amounts)

            for partial in order.partial_orders:
                self.store.bids.pop(partial.id, None)
                self.store.claims.pop(partial.id, None)
            self.store.assignments.pop(order_id, None)

            order.partial_orders = self._make_partials(order_id, amounts)
            order.updated_at = self.clock()
            snapshot = copy.deepcopy(order)

        log.info(f"Order modified: {order_id}, parts={len(amounts)}")
        return snapshot

    def cancel_order(self, order_id: str) -> PartialFillOrder:
        """Cancel an order. Executed partial orders are not rolled back."""
        with self.store.transaction():
            order = self._get_order_locked(order_id)
            if order.status == OrderStatus.COMPLETED:
                raise InvalidTransition(f"Order {order_id} already completed")
            if order.status != OrderStatus.CANCELLED:
                order.status = OrderStatus.CANCELLED
                order.updated_at = self.clock()
                log.info(f"Order cancelled: {order_id}")
            return copy.deepcopy(order)

    def mark_complete(self, order_id: str) -> PartialFillOrder:
        """Caller-driven completion; orders never complete on their own."""
        with self.store.transaction():
            order = self._get_order_locked(order_id)
            if order.status == OrderStatus.CANCELLED:
                raise InvalidTransition(f"Order {order_id} is cancelled")
            if order.status != OrderStatus.COMPLETED:
                order.status = OrderStatus.COMPLETED
                order.updated_at = self.clock()
                log.info(f"Order completed: {order_id}")
            return copy.deepcopy(order)

    # =========================================================================
    # Secrets
    # =========================================================================

    def attach_secrets(self, order_id: str, secrets: Sequence[str], hashes: Sequence[str],
                       algorithm: str = "hash160") -> PartialFillOrder:
        """
        Bind one secret/hash pair to each partial order, in order.

        Secrets are reserved for this order through the SecretManager; a
        secret already bound anywhere raises SecretReuse and nothing is
        attached.
        """
        if len(secrets) != len(hashes):
            raise InvalidParameter("Secrets and hashes must have the same length")
        for i, (secret, hash_hex) in enumerate(zip(secrets, hashes)):
            if not self.secret_manager.validate(secret, hash_hex, algorithm):
                raise SecretMismatch(f"Secret {i} does not hash to {hash_hex} ({algorithm})")

        with self.store.transaction():
            order = self._get_order_locked(order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order_id} is {order.status.value}")
            if len(secrets) != len(order.partial_orders):
                raise InvalidParameter(
                    f"Order {order_id} has {len(order.partial_orders)} partial orders, got {len(secrets)} secrets"
                )
            if any(p.secret is not None for p in order.partial_orders):
                raise InvalidTransition(f"Order {order_id} already has secrets attached")

            self.secret_manager.reserve(list(secrets), order_id)

            for partial, secret, hash_hex in zip(order.partial_orders, secrets, hashes):
                partial.secret = secret
                partial.secret_hash = hash_hex.lower()
            order.updated_at = self.clock()
            return copy.deepcopy(order)

    # =========================================================================
    # Resolvers & bids
    # =========================================================================

    def assign_resolvers(self, order_id: str) -> List[ResolverAssignment]:
        """Bind a fresh resolver to every PENDING partial order."""
        with self.store.transaction():
            order = self._get_order_locked(order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order_id} is {order.status.value}")

            now = self.clock()
            created = []
            for partial in order.partial_orders:
                if partial.status != PartialOrderStatus.PENDING:
                    continue
                created.append(self._bind_resolver_locked(order, partial, self.resolver_id_factory(), now))
            order.updated_at = now

        for a in created:
            log.info(f"Resolver assigned: {a.partial_order_id} -> {a.resolver_id}")
        return copy.deepcopy(created)

    def submit_bid(self, partial_order_id: str, resolver_id: str,
                   bid_amount: Amount, fee: Amount) -> ResolverBid:
        try:
            submission = BidSubmission(
                partial_order_id=partial_order_id,
                resolver_id=resolver_id,
                bid_amount=str(bid_amount),
                fee=str(fee),
            )
        except ValidationError as e:
            raise InvalidParameter(f"Invalid bid: {e}") from e

        with self.store.transaction():
            order, partial = self._get_partial_locked(partial_order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order.order_id} is {order.status.value}")
            if partial.status in (PartialOrderStatus.EXECUTING, PartialOrderStatus.COMPLETED):
                raise InvalidTransition(f"Partial order {partial_order_id} is {partial.status.value}")

            bid = ResolverBid(
                partial_order_id=submission.partial_order_id,
                resolver_id=submission.resolver_id,
                bid_amount=submission.bid_amount,
                fee=submission.fee,
                submitted_at=self.clock(),
            )
            self.store.bids.setdefault(partial_order_id, []).append(bid)

        log.info(f"Bid submitted: {partial_order_id} by {resolver_id}, amount={bid.bid_amount}, fee={bid.fee}")
        return copy.deepcopy(bid)

    def accept_bid(self, partial_order_id: str, resolver_id: str) -> ResolverBid:
        """
        Accept resolver_id's bid and reject the others.

        The accepted bidder becomes the bound resolver and the only one
        allowed to execute the partial order.
        """
        with self.store.transaction():
            order, partial = self._get_partial_locked(partial_order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order.order_id} is {order.status.value}")
            if partial.status in (PartialOrderStatus.EXECUTING, PartialOrderStatus.COMPLETED):
                raise InvalidTransition(f"Partial order {partial_order_id} is {partial.status.value}")

            bids = self.store.bids.get(partial_order_id, [])
            if self._accepted_bid_locked(partial_order_id):
                raise InvalidTransition(f"Partial order {partial_order_id} already has an accepted bid")
            chosen = None
            for bid in reversed(bids):
                if bid.resolver_id == resolver_id and bid.status == BidStatus.SUBMITTED:
                    chosen = bid
                    break
            if chosen is None:
                raise NotFound(f"No open bid from {resolver_id} on {partial_order_id}")

            for bid in bids:
                bid.status = BidStatus.ACCEPTED if bid is chosen else BidStatus.REJECTED

            self._bind_resolver_locked(order, partial, resolver_id, self.clock())

        log.info(f"Bid accepted: {partial_order_id} -> {resolver_id}")
        return copy.deepcopy(chosen)

    def get_bids(self, partial_order_id: str) -> List[ResolverBid]:
        with self.store.transaction():
            self._get_partial_locked(partial_order_id)
            return copy.deepcopy(self.store.bids.get(partial_order_id, []))

    def get_assignments(self, order_id: str) -> List[ResolverAssignment]:
        with self.store.transaction():
            self._get_order_locked(order_id)
            return copy.deepcopy(self.store.assignments.get(order_id, []))

    # =========================================================================
    # Execution
    # =========================================================================

    def execute_partial_fill(
        self,
        partial_order_id: str,
        resolver_id: str,
        options: Optional[ExecutionOptions] = None,
        settle: Optional[Callable[[PartialOrder], Any]] = None,
    ) -> PartialFillExecution:
        """
        Execute a partial order at most once.

        The claim is atomic. `settle` (if given) runs after the claim,
        outside the store lock, with a copy of the partial order; its
        return value is kept as the execution result. If it raises, the
        partial order is marked FAILED and the exception propagates.

        Raises:
            AlreadyExecuted: completed, or another execution in flight, or
                this claim was failed and reassigned while settling
            InvalidTransition: partial FAILED, or order terminal
            NotAuthorized: an accepted bid names another resolver
        """
        options = options or ExecutionOptions()

        with self.store.transaction():
            order, partial = self._get_partial_locked(partial_order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order.order_id} is {order.status.value}")
            if (partial.status in (PartialOrderStatus.EXECUTING, PartialOrderStatus.COMPLETED)
                    or partial_order_id in self.store.executions):
                log.warning(f"Execution rejected: {partial_order_id} already {partial.status.value} ({resolver_id})")
                raise AlreadyExecuted(f"Partial order {partial_order_id} already executed")
            if partial.status == PartialOrderStatus.FAILED:
                raise InvalidTransition(f"Partial order {partial_order_id} failed, reassign first")

            accepted = self._accepted_bid_locked(partial_order_id)
            if accepted and accepted.resolver_id != resolver_id:
                raise NotAuthorized(f"Partial order {partial_order_id} belongs to {accepted.resolver_id}")

            started_at = self.clock()
            claim = object()
            self.store.claims[partial_order_id] = claim
            partial.status = PartialOrderStatus.EXECUTING
            partial.resolver_id = resolver_id
            if order.status == OrderStatus.PENDING:
                order.status = OrderStatus.EXECUTING
            order.updated_at = started_at
            claimed = copy.deepcopy(partial)

        log.info(f"Executing partial fill: {partial_order_id} by {resolver_id}")

        result = None
        if settle is not None:
            try:
                result = settle(claimed)
            except Exception as e:
                with self.store.transaction():
                    if self.store.claims.get(partial_order_id) is claim:
                        del self.store.claims[partial_order_id]
                        partial.status = PartialOrderStatus.FAILED
                        order.updated_at = self.clock()
                log.error(f"Settlement failed for {partial_order_id}: {e}")
                raise

        with self.store.transaction():
            if (self.store.claims.get(partial_order_id) is not claim
                    or partial.status != PartialOrderStatus.EXECUTING
                    or partial_order_id in self.store.executions):
                log.warning(f"Execution superseded: {partial_order_id} no longer claimed by {resolver_id}")
                raise AlreadyExecuted(f"Partial order {partial_order_id} was taken over during settlement")
            del self.store.claims[partial_order_id]
            execution = PartialFillExecution(
                partial_order_id=partial_order_id,
                resolver_id=resolver_id,
                started_at=started_at,
                executed_at=self.clock(),
                cross_chain_coordinated=options.cross_chain_coordinated,
                fallback_mode=options.fallback_mode,
                result=result,
            )
            self.store.executions[partial_order_id] = execution
            partial.status = PartialOrderStatus.COMPLETED
            order.updated_at = execution.executed_at

        log.info(f"Partial fill executed: {partial_order_id} by {resolver_id}")
        return copy.deepcopy(execution)

    def mark_resolver_failed(self, partial_order_id: str, resolver_id: str) -> PartialOrder:
        """ASSIGNED/EXECUTING -> FAILED, by the bound resolver only."""
        with self.store.transaction():
            order, partial = self._get_partial_locked(partial_order_id)
            if partial.status not in (PartialOrderStatus.ASSIGNED, PartialOrderStatus.EXECUTING):
                raise InvalidTransition(f"Partial order {partial_order_id} is {partial.status.value}")
            if partial.resolver_id != resolver_id:
                raise NotAuthorized(f"{resolver_id} is not the resolver of {partial_order_id}")

            partial.status = PartialOrderStatus.FAILED
            self.store.claims.pop(partial_order_id, None)
            accepted = self._accepted_bid_locked(partial_order_id)
            if accepted and accepted.resolver_id == resolver_id:
                accepted.status = BidStatus.REJECTED
            order.updated_at = self.clock()
            snapshot = copy.deepcopy(partial)

        log.warning(f"Resolver failed: {partial_order_id} ({resolver_id})")
        return snapshot

    def reassign_failed_resolver(self, partial_order_id: str) -> ResolverAssignment:
        """FAILED -> ASSIGNED with a new resolver."""
        with self.store.transaction():
            order, partial = self._get_partial_locked(partial_order_id)
            if order.is_terminal():
                raise InvalidTransition(f"Order {order.order_id} is {order.status.value}")
            if partial.status != PartialOrderStatus.FAILED:
                raise InvalidTransition(
                    f"Partial order {partial_order_id} is {partial.status.value}, only failed can be reassigned"
                )

            new_id = self.resolver_id_factory()
            if new_id == partial.resolver_id:
                new_id = self.resolver_id_factory()
            assignment = self._bind_resolver_locked(order, partial, new_id, self.clock())

        log.info(f"Resolver reassigned: {partial_order_id} -> {assignment.resolver_id}")
        return copy.deepcopy(assignment)

    # =========================================================================
    # Progress & analytics
    # =========================================================================

    def get_progress(self, order_id: str) -> PartialFillProgress:
        with self.store.transaction():
            order = self._get_order_locked(order_id)
            total = len(order.partial_orders)
            completed = sum(1 for p in order.partial_orders if p.status == PartialOrderStatus.COMPLETED)
        return PartialFillProgress(
            total_parts=total,
            completed_parts=completed,
            completion_percentage=completed / total * 100 if total else 0.0,
        )

    def get_analytics(self, order_id: str) -> dict:
        with self.store.transaction():
            order = self._get_order_locked(order_id)
            partials = order.partial_orders
            executions = [self.store.executions[p.id] for p in partials if p.id in self.store.executions]
            bids = [b for p in partials for b in self.store.bids.get(p.id, [])]
            status = order.status

        total = len(partials)
        completed = sum(1 for p in partials if p.status == PartialOrderStatus.COMPLETED)
        failed = sum(1 for p in partials if p.status == PartialOrderStatus.FAILED)
        durations = [e.executed_at - e.started_at for e in executions]

        return {
            "total_parts": total,
            "completed_parts": completed,
            "failed_parts": failed,
            "completion_rate": completed / total if total else 0.0,
            "total_bids": len(bids),
            "total_fees": sum((b.fee for b in bids if b.status == BidStatus.ACCEPTED), Decimal(0)),
            "average_execution_time": sum(durations) / len(durations) if durations else 0.0,
            "success_rate": completed / (completed + failed) if completed + failed else 0.0,
            "status": status.value,
        }

    # =========================================================================
    # Internals (caller holds the store lock)
    # =========================================================================

    @staticmethod
    def _make_partials(order_id: str, amounts: List[Decimal]) -> List[PartialOrder]:
        return [PartialOrder(id=f"{order_id}_partial_{i}", amount=a) for i, a in enumerate(amounts)]

    def _get_order_locked(self, order_id: str) -> PartialFillOrder:
        order = self.store.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        return order

    def _get_partial_locked(self, partial_order_id: str):
        order_id = str(partial_order_id).rsplit("_partial_", 1)[0]
        order = self._get_order_locked(order_id)
        for partial in order.partial_orders:
            if partial.id == partial_order_id:
                return order, partial
        raise NotFound(f"Partial order not found: {partial_order_id}")

    def _accepted_bid_locked(self, partial_order_id: str) -> Optional[ResolverBid]:
        for bid in self.store.bids.get(partial_order_id, []):
            if bid.status == BidStatus.ACCEPTED:
                return bid
        return None

    def _bind_resolver_locked(self, order: PartialFillOrder, partial: PartialOrder,
                              resolver_id: str, now: int) -> ResolverAssignment:
        partial.resolver_id = resolver_id
        partial.status = PartialOrderStatus.ASSIGNED
        assignment = ResolverAssignment(partial_order_id=partial.id, resolver_id=resolver_id, assigned_at=now)
        active = [a for a in self.store.assignments.get(order.order_id, []) if a.partial_order_id != partial.id]
        active.append(assignment)
        self.store.assignments[order.order_id] = active
        order.updated_at = now
        return assignment
