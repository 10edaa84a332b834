"""
Partial-fill executor.

Wires SecretManager, PartialFillCoordinator and HTLCTransactionBuilder into
the order flow. Performs no network I/O: chain submission is the injected
`broadcast(tx_hex) -> txid` callable.

Flow (maker funds N HTLCs, resolvers fill them):
1. open_order: N secrets -> hashes -> order with secrets attached
   -> one HTLC script and P2WSH address per partial order
2. Maker funds each HTLC address
3. Resolver claim_partial: at-most-once execution; settle step builds the
   redeem (revealing that partial's secret) and broadcasts it
4. Counterparty watches the chain, secret_from_counterparty recovers the
   secret from the redeem witness
5. Unfilled partials after locktime: refund_partial
"""

import logging
import threading
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Sequence, Tuple, Union

from ..config import FillConfig
from ..core import UTXO, SpendKind, PartialFillOrder, PartialOrder, PartialFillExecution, ExecutionOptions
from ..errors import NotFound
from ..htlc.builder import HTLCTransactionBuilder, SpendTransaction
from ..htlc.script import (
    create_htlc_script, get_dialect, p2wsh_address, p2wsh_script_pubkey,
    extract_secret_from_witness,
)
from ..htlc.signer import Signer
from .coordinator import PartialFillCoordinator
from .secret_manager import SecretManager

log = logging.getLogger(__name__)


@dataclass
class PartialHTLC:
    """HTLC locking one partial order."""
    partial_order_id: str
    amount: Decimal
    secret_hash: str
    script: bytes
    script_pubkey: bytes
    address: str
    locktime: int

    def to_dict(self) -> dict:
        return {
            "partial_order_id": self.partial_order_id,
            "amount": str(self.amount),
            "secret_hash": self.secret_hash,
            "script": self.script.hex(),
            "script_pubkey": self.script_pubkey.hex(),
            "address": self.address,
            "locktime": self.locktime,
        }


@dataclass
class OrderPlan:
    """Everything the maker needs to fund an opened order."""
    order: PartialFillOrder
    dialect: str
    htlcs: List[PartialHTLC] = field(default_factory=list)

    @property
    def order_id(self) -> str:
        return self.order.order_id


class PartialFillExecutor:
    """
    Runs partial-fill orders end to end.

    Args:
        builder: Spend transaction builder
        coordinator: Order state (its SecretManager is used for secrets)
        dialect: HTLC hash dialect for new orders ("sha256" or "hash160")
        broadcast: Optional `tx_hex -> txid` used after building spends
    """

    def __init__(self, builder: HTLCTransactionBuilder = None,
                 coordinator: PartialFillCoordinator = None,
                 config: FillConfig = None, dialect: str = "sha256",
                 broadcast: Optional[Callable[[str], str]] = None):
        self.config = config or FillConfig()
        self.builder = builder or HTLCTransactionBuilder(self.config)
        self.coordinator = coordinator or PartialFillCoordinator(config=self.config)
        self.dialect = get_dialect(dialect)
        self.broadcast = broadcast

        self._htlcs: Dict[str, PartialHTLC] = {}
        # Built but not yet broadcast: the outpoint is already marked spent
        self._unsent: Dict[Tuple[str, SpendKind], SpendTransaction] = {}
        self._htlcs_lock = threading.Lock()

    @property
    def secret_manager(self) -> SecretManager:
        return self.coordinator.secret_manager

    def open_order(self, total_amount, partial_amounts: Sequence, recipient_pubkey: str,
                   refund_pubkey: str, locktime: int, expiration_ms: Optional[int] = None,
                   **meta) -> OrderPlan:
        """
        Create an order with one fresh secret and HTLC per partial order.

        Args:
            total_amount: Order total
            partial_amounts: Split of the total
            recipient_pubkey: Resolver-side pubkey (hex) for the redeem path
            refund_pubkey: Maker pubkey (hex) for the refund path
            locktime: Absolute CLTV locktime shared by all partial HTLCs
            expiration_ms: Optional secret storage expiry
            **meta: from_token, to_token, user_address

        Returns:
            OrderPlan with per-partial scripts and addresses
        """
        algorithm = self.dialect.name
        secrets = self.secret_manager.generate_many(len(partial_amounts))
        hashes = self.secret_manager.hash_all(secrets, algorithm)
        if expiration_ms:
            self.secret_manager.store_with_expiration(secrets, hashes, expiration_ms)
        else:
            self.secret_manager.store(secrets, hashes)

        order = self.coordinator.create_order(total_amount, partial_amounts, timelock=locktime, **meta)
        order = self.coordinator.attach_secrets(order.order_id, secrets, hashes, algorithm)

        plan = OrderPlan(order=order, dialect=self.dialect.name)
        for partial in order.partial_orders:
            script = create_htlc_script(partial.secret_hash, recipient_pubkey, refund_pubkey,
                                        locktime, self.dialect.name)
            plan.htlcs.append(PartialHTLC(
                partial_order_id=partial.id,
                amount=partial.amount,
                secret_hash=partial.secret_hash,
                script=script,
                script_pubkey=p2wsh_script_pubkey(script),
                address=p2wsh_address(script, self.builder.config.network),
                locktime=locktime,
            ))

        with self._htlcs_lock:
            for htlc in plan.htlcs:
                self._htlcs[htlc.partial_order_id] = htlc

        log.info(f"Order opened: {order.order_id}, {len(plan.htlcs)} HTLCs ({self.dialect.name})")
        return plan

    def get_htlc(self, partial_order_id: str) -> PartialHTLC:
        with self._htlcs_lock:
            htlc = self._htlcs.get(partial_order_id)
        if htlc is None:
            raise NotFound(f"No HTLC for partial order {partial_order_id}")
        return htlc

    def claim_partial(self, partial_order_id: str, resolver_id: str, utxo: UTXO,
                      receiver_key: Union[Signer, str], redeem_address: str,
                      options: Optional[ExecutionOptions] = None) -> PartialFillExecution:
        """
        Execute a partial fill by redeeming its HTLC.

        The redeem is built (and broadcast) inside the execution's settle
        step, so a build or broadcast failure leaves the partial order FAILED.
        If only the broadcast failed, the signed redeem is kept and the next
        claim on the same outpoint re-sends it unchanged (same txid and
        destination) instead of building a second spend.
        """
        htlc = self.get_htlc(partial_order_id)

        def settle(partial: PartialOrder) -> SpendTransaction:
            return self._send(
                (partial_order_id, SpendKind.REDEEM), utxo,
                lambda: self.builder.build_redeem_transaction(
                    utxo, partial.secret, receiver_key, redeem_address, htlc.script
                ),
            )

        return self.coordinator.execute_partial_fill(partial_order_id, resolver_id, options, settle)

    def refund_partial(self, partial_order_id: str, utxo: UTXO, sender_key: Union[Signer, str],
                       refund_address: str, enable_replacement: bool = False,
                       replaces_transaction_id: Optional[str] = None) -> SpendTransaction:
        """
        Refund an unfilled partial order's HTLC after its locktime.

        A refund whose broadcast failed is re-sent as built on the next call,
        unless the call asks for a fee-bump replacement.
        """
        htlc = self.get_htlc(partial_order_id)
        slot = (partial_order_id, SpendKind.REFUND)
        if replaces_transaction_id is not None:
            with self._htlcs_lock:
                self._unsent.pop(slot, None)
        return self._send(
            slot, utxo,
            lambda: self.builder.build_refund_transaction(
                utxo, sender_key, refund_address, htlc.script, htlc.locktime,
                enable_replacement=enable_replacement,
                replaces_transaction_id=replaces_transaction_id,
            ),
        )

    def secret_from_counterparty(self, partial_order_id: str,
                                 witness: Sequence[bytes]) -> Optional[str]:
        """Secret revealed by a redeem witness of this partial's HTLC, else None."""
        htlc = self.get_htlc(partial_order_id)
        secret = extract_secret_from_witness(witness, htlc.script, (self.dialect,))
        if secret:
            log.info(f"Secret revealed for {partial_order_id}")
        return secret

    def pending_broadcast(self, partial_order_id: str, kind: SpendKind = SpendKind.REDEEM
                          ) -> Optional[SpendTransaction]:
        """Signed spend whose broadcast failed, if any."""
        with self._htlcs_lock:
            return self._unsent.get((partial_order_id, kind))

    def _send(self, slot: Tuple[str, SpendKind], utxo: UTXO,
              build: Callable[[], SpendTransaction]) -> SpendTransaction:
        with self._htlcs_lock:
            tx = self._unsent.get(slot)
        if tx is not None and tx.utxo_key == utxo.key:
            log.info(f"Re-sending unbroadcast {tx.kind.value} {tx.txid} for {slot[0]}")
        else:
            tx = build()

        try:
            self._broadcast(tx)
        except Exception as e:
            with self._htlcs_lock:
                self._unsent[slot] = tx
            log.error(f"Broadcast failed for {tx.kind.value} {tx.txid}: {e}")
            raise

        with self._htlcs_lock:
            self._unsent.pop(slot, None)
        return tx

    def _broadcast(self, tx: SpendTransaction):
        if self.broadcast is None:
            return
        txid = self.broadcast(tx.hex())
        log.info(f"Broadcast {tx.kind.value}: {txid}")
