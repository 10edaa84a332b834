"""
HTLC spend transaction builder.

Builds and signs the two ways out of an HTLC-locked output:

Redeem (recipient, with secret):
    nVersion=2, nSequence=0xffffffff, nLockTime=0
    witness: <signature> <secret> <witnessScript>

Refund (sender, after locktime):
    nVersion=2, nSequence=0xfffffffe (0xfffffffd with RBF), nLockTime=locktime
    witness: <signature> <witnessScript>

Every outpoint goes Unspent -> Spent exactly once. Spend attempts on the
same outpoint are serialized by a per-key lock from the UTXOLedger and the
final mark is a check-and-set, so of N concurrent attempts exactly one
returns a transaction and the others raise UTXOAlreadySpent. Anything that
fails before the mark leaves the outpoint Unspent.

The only exception is an explicit fee bump: a refund built with
`replaces_transaction_id` set to the recorded refund txid replaces it.
"""

import re
import time
import logging
from dataclasses import dataclass
from typing import Optional, List, Sequence, Callable, Union

from bitcoin.core import (
    CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, CScript,
    CTxInWitness, CTxWitness, CScriptWitness, lx, b2x, b2lx,
)
from bitcoin.core.script import SignatureHash, SIGHASH_ALL, SIGVERSION_WITNESS_V0

from ..config import FillConfig
from ..core import (
    UTXO, SpendKind, SpentRecord, is_secret_hex,
    SEQUENCE_FINAL, SEQUENCE_LOCKTIME, SEQUENCE_RBF, LOCKTIME_THRESHOLD,
)
from ..errors import (
    InvalidParameter, InvalidUTXO, InvalidSecretFormat, BelowDustThreshold,
    UTXOAlreadySpent, LocktimeNotExpired, SecretMismatch, UnrecognizedScript,
)
from ..store import UTXOLedger
from .fees import estimate_fee
from .script import (
    ScriptCommitmentExtractor, DEFAULT_EXTRACTORS, decompile, is_p2wsh,
    p2wsh_script_pubkey, address_to_script_pubkey, find_extractor,
    parse_htlc_script,
)
from .signer import Signer, ECDSASigner

log = logging.getLogger(__name__)

_TXID = re.compile(r"^[0-9a-fA-F]{64}$")

TX_VERSION = 2


@dataclass
class SpendTransaction:
    """A signed redeem or refund transaction."""
    kind: SpendKind
    utxo_key: str
    txid: str
    fee: int
    fee_rate: int
    output_amount: int
    witness: List[bytes]
    locktime: int
    sequence: int
    tx: CMutableTransaction
    replaces_txid: Optional[str] = None

    def hex(self) -> str:
        """Serialized transaction (with witness) as hex."""
        return b2x(self.tx.serialize())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "utxo_key": self.utxo_key,
            "txid": self.txid,
            "fee": self.fee,
            "fee_rate": self.fee_rate,
            "output_amount": self.output_amount,
            "witness": [w.hex() for w in self.witness],
            "locktime": self.locktime,
            "sequence": self.sequence,
            "replaces_txid": self.replaces_txid,
            "hex": self.hex(),
        }


def _as_bytes(value: Union[bytes, bytearray, str], what: str, error=InvalidParameter) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise error(f"{what} is not valid hex: {e}") from e
    raise error(f"{what} must be bytes or hex, got {type(value).__name__}")


def _as_signer(key: Union[Signer, str]) -> Signer:
    if isinstance(key, str):
        return ECDSASigner.from_wif(key)
    return key


class HTLCTransactionBuilder:
    """
    Builds redeem and refund transactions for HTLC outputs.

    Args:
        config: Fee and dust policy, default network
        ledger: Outpoint usage ledger (shared between builders that must not
            double-spend each other)
        extractors: Commitment extractors tried in order when verifying a
            redeem secret. Only pass UnverifiedScriptExtractor for
            non-production placeholder scripts.
        clock: Returns unix time in seconds
        height_source: Returns the current block height; required for
            block-height locktimes (below 500,000,000)
    """

    def __init__(
        self,
        config: FillConfig = None,
        ledger: UTXOLedger = None,
        extractors: Sequence[ScriptCommitmentExtractor] = DEFAULT_EXTRACTORS,
        clock: Callable[[], float] = time.time,
        height_source: Optional[Callable[[], int]] = None,
    ):
        self.config = config or FillConfig()
        self.ledger = ledger if ledger is not None else UTXOLedger()
        self.extractors = tuple(extractors)
        self.clock = clock
        self.height_source = height_source

        if any(not e.verifies for e in self.extractors):
            log.warning("HTLC builder created with secret validation DISABLED (non-production)")

    # =========================================================================
    # Queries
    # =========================================================================

    def is_spent(self, utxo: UTXO) -> bool:
        return self.ledger.is_spent(utxo.key)

    def spent_record(self, utxo: UTXO) -> Optional[SpentRecord]:
        return self.ledger.get(utxo.key)

    # =========================================================================
    # Redeem
    # =========================================================================

    def build_redeem_transaction(
        self,
        utxo: UTXO,
        secret: str,
        receiver_key: Union[Signer, str],
        redeem_address: str,
        htlc_script: Union[bytes, str],
        network: str = None,
    ) -> SpendTransaction:
        """
        Spend an HTLC output through the secret branch.

        Args:
            utxo: The HTLC output
            secret: 64-char hex preimage
            receiver_key: Signer (or WIF) for the recipient pubkey
            redeem_address: Destination address
            htlc_script: Witness script
            network: Address network, defaults to config.network

        Returns:
            SpendTransaction (kind=redeem)
        """
        network = network or self.config.network
        script = _as_bytes(htlc_script, "htlc_script")
        self._validate_utxo(utxo, script)
        self._check_dust(utxo.value, "UTXO value")

        if not is_secret_hex(secret):
            raise InvalidSecretFormat("Secret must be 64 hex characters")
        secret_bytes = bytes.fromhex(secret)

        signer = _as_signer(receiver_key)
        dest_script = address_to_script_pubkey(redeem_address, network)

        with self.ledger.key_lock(utxo.key):
            if self.ledger.is_spent(utxo.key):
                raise UTXOAlreadySpent(f"UTXO {utxo.key} already spent")

            self._verify_secret(secret_bytes, script)
            self._check_pubkey(script, signer, "recipient")

            fee_rate = self.config.default_fee_rate
            fee = estimate_fee(1, 1, fee_rate, self.config.min_fee_rate)
            output_amount = utxo.value - fee
            self._check_dust(output_amount, "Output after fee")

            tx, sig = self._sign(utxo, script, signer, dest_script, output_amount,
                                 sequence=SEQUENCE_FINAL, locktime=0)
            witness = [sig, secret_bytes, script]
            self._attach_witness(tx, witness)
            txid = b2lx(tx.GetTxid())

            record = SpentRecord(kind=SpendKind.REDEEM, txid=txid, spent_at=self.clock())
            if not self.ledger.mark_spent(utxo.key, record):
                raise UTXOAlreadySpent(f"UTXO {utxo.key} already spent")

        log.info(f"Redeem built: {utxo.key} -> {txid}, output={output_amount} sats, fee={fee}")

        return SpendTransaction(
            kind=SpendKind.REDEEM,
            utxo_key=utxo.key,
            txid=txid,
            fee=fee,
            fee_rate=fee_rate,
            output_amount=output_amount,
            witness=witness,
            locktime=0,
            sequence=SEQUENCE_FINAL,
            tx=tx,
        )

    # =========================================================================
    # Refund
    # =========================================================================

    def build_refund_transaction(
        self,
        utxo: UTXO,
        sender_key: Union[Signer, str],
        refund_address: str,
        htlc_script: Union[bytes, str],
        locktime: int,
        network: str = None,
        enable_replacement: bool = False,
        replaces_transaction_id: Optional[str] = None,
    ) -> SpendTransaction:
        """
        Spend an HTLC output through the timeout branch.

        With replaces_transaction_id set, builds a higher-fee replacement
        for the refund recorded under that txid instead of failing on the
        spent outpoint.
        """
        network = network or self.config.network
        script = _as_bytes(htlc_script, "htlc_script")
        self._validate_utxo(utxo, script)
        self._check_dust(utxo.value, "UTXO value")

        if not isinstance(locktime, int) or isinstance(locktime, bool) or not 0 < locktime <= 0xFFFFFFFF:
            raise InvalidParameter(f"Invalid locktime: {locktime}")
        if replaces_transaction_id is not None and not _TXID.match(str(replaces_transaction_id)):
            raise InvalidParameter(f"Invalid replaced txid: {replaces_transaction_id}")

        self._check_locktime(locktime)

        signer = _as_signer(sender_key)
        dest_script = address_to_script_pubkey(refund_address, network)

        info = parse_htlc_script(script)
        if info and locktime < info.locktime:
            raise InvalidParameter(
                f"Refund locktime {locktime} is before script CLTV {info.locktime}"
            )

        replacing = replaces_transaction_id is not None

        with self.ledger.key_lock(utxo.key):
            current = self.ledger.get(utxo.key)
            if not replacing:
                if current is not None:
                    raise UTXOAlreadySpent(f"UTXO {utxo.key} already spent")
            elif current is not None:
                if current.kind != SpendKind.REFUND:
                    raise UTXOAlreadySpent(f"UTXO {utxo.key} spent by {current.kind.value}, cannot replace")
                if current.txid != replaces_transaction_id:
                    raise UTXOAlreadySpent(
                        f"UTXO {utxo.key} refund is {current.txid}, not {replaces_transaction_id}"
                    )

            self._check_pubkey(script, signer, "refund")

            fee_rate = self.config.replacement_fee_rate if replacing else self.config.default_fee_rate
            fee = estimate_fee(1, 1, fee_rate, self.config.min_fee_rate)
            output_amount = utxo.value - fee
            self._check_dust(output_amount, "Output after fee")

            sequence = SEQUENCE_RBF if enable_replacement else SEQUENCE_LOCKTIME
            tx, sig = self._sign(utxo, script, signer, dest_script, output_amount,
                                 sequence=sequence, locktime=locktime)
            witness = [sig, script]
            self._attach_witness(tx, witness)
            txid = b2lx(tx.GetTxid())

            record = SpentRecord(kind=SpendKind.REFUND, txid=txid, spent_at=self.clock())
            if current is None:
                if not self.ledger.mark_spent(utxo.key, record):
                    raise UTXOAlreadySpent(f"UTXO {utxo.key} already spent")
            elif not self.ledger.replace(utxo.key, replaces_transaction_id, record):
                raise UTXOAlreadySpent(f"UTXO {utxo.key} refund changed during replacement")

        if replacing:
            log.info(f"Refund replacement built: {utxo.key} {replaces_transaction_id} -> {txid}, fee={fee}")
        else:
            log.info(f"Refund built: {utxo.key} -> {txid}, output={output_amount} sats, locktime={locktime}")

        return SpendTransaction(
            kind=SpendKind.REFUND,
            utxo_key=utxo.key,
            txid=txid,
            fee=fee,
            fee_rate=fee_rate,
            output_amount=output_amount,
            witness=witness,
            locktime=locktime,
            sequence=sequence,
            tx=tx,
            replaces_txid=replaces_transaction_id,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate_utxo(self, utxo: UTXO, htlc_script: bytes):
        if not isinstance(utxo, UTXO):
            raise InvalidUTXO(f"Expected UTXO, got {type(utxo).__name__}")
        if not isinstance(utxo.txid, str) or not _TXID.match(utxo.txid):
            raise InvalidUTXO(f"Invalid txid: {utxo.txid!r}")
        if not isinstance(utxo.vout, int) or isinstance(utxo.vout, bool) or utxo.vout < 0:
            raise InvalidUTXO(f"Invalid vout: {utxo.vout!r}")
        if not isinstance(utxo.value, int) or isinstance(utxo.value, bool) or utxo.value <= 0:
            raise InvalidUTXO(f"Invalid value: {utxo.value!r}")

        locking = _as_bytes(utxo.script, "UTXO script", InvalidUTXO)
        if not locking or decompile(locking) is None:
            raise InvalidUTXO(f"UTXO {utxo.key} has an empty or undecodable script")
        if is_p2wsh(locking) and locking != p2wsh_script_pubkey(htlc_script):
            raise InvalidUTXO(f"UTXO {utxo.key} does not commit to the given HTLC script")

        if not htlc_script or decompile(htlc_script) is None:
            raise InvalidParameter("HTLC script is empty or undecodable")

    def _check_dust(self, amount: int, what: str):
        if amount < self.config.dust_threshold:
            raise BelowDustThreshold(f"{what} {amount} below dust threshold {self.config.dust_threshold}")

    def _check_locktime(self, locktime: int):
        if locktime < LOCKTIME_THRESHOLD:
            if self.height_source is None:
                raise InvalidParameter(
                    f"Locktime {locktime} is a block height but no height source is configured"
                )
            current = self.height_source()
            unit = "height"
        else:
            current = int(self.clock())
            unit = "time"
        if current < locktime:
            raise LocktimeNotExpired(f"Locktime {locktime} not reached (current {unit} {current})")

    def _verify_secret(self, secret: bytes, script: bytes):
        extractor = find_extractor(script, self.extractors)
        if extractor is None:
            raise UnrecognizedScript("No commitment extractor recognizes the HTLC script")
        if not extractor.verifies:
            log.warning(f"SKIPPING secret validation ({extractor.name} extractor)")
            return
        if not extractor.verify(secret, script):
            raise SecretMismatch(f"Secret does not match {extractor.name} commitment in script")

    def _check_pubkey(self, script: bytes, signer: Signer, branch: str):
        info = parse_htlc_script(script)
        if info is None:
            return
        expected = info.recipient_pubkey if branch == "recipient" else info.refund_pubkey
        if signer.public_key != expected:
            raise InvalidParameter(f"Signing key does not match {branch} pubkey in script")

    def _sign(self, utxo: UTXO, script: bytes, signer: Signer, dest_script: bytes,
              output_amount: int, sequence: int, locktime: int):
        txin = CMutableTxIn(COutPoint(lx(utxo.txid), utxo.vout), nSequence=sequence)
        txout = CMutableTxOut(output_amount, CScript(dest_script))
        tx = CMutableTransaction([txin], [txout], nLockTime=locktime, nVersion=TX_VERSION)

        sighash = SignatureHash(
            script=CScript(script),
            txTo=tx,
            inIdx=0,
            hashtype=SIGHASH_ALL,
            amount=utxo.value,
            sigversion=SIGVERSION_WITNESS_V0,
        )
        sig = bytes(signer.sign(sighash)) + bytes([SIGHASH_ALL])
        return tx, sig

    @staticmethod
    def _attach_witness(tx: CMutableTransaction, witness: List[bytes]):
        tx.wit = CTxWitness([CTxInWitness(CScriptWitness(witness))])
