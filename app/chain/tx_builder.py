from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from embit import script
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from app.chain.gateway import ChainGateway, SpendableOutput
from app.chain.keys import KeyDerivation
from app.core.config import settings
from app.core.errors import InsufficientFunds, InvalidAmount

logger = logging.getLogger(__name__)

# virtual sizes for a segwit v0 transaction spending P2WPKH outputs
TX_OVERHEAD_VBYTES = 11     # version, locktime, counts, marker+flag (10.5 rounded up)
P2WPKH_INPUT_VBYTES = 68    # outpoint, sequence, empty scriptSig, witness (sig + pubkey)
P2WPKH_SCRIPT_LEN = 22


def output_vbytes(script_len: int) -> int:
    return 8 + 1 + script_len


def estimate_vsize(n_inputs: int, output_script_lens: Iterable[int]) -> int:
    return TX_OVERHEAD_VBYTES + n_inputs * P2WPKH_INPUT_VBYTES + sum(output_vbytes(n) for n in output_script_lens)


@dataclass(frozen=True)
class CoinSelection:
    inputs: Tuple[SpendableOutput, ...]
    amount: int
    fee: int
    change: int     # 0 when the remainder was folded into the fee
    vsize: int

    @property
    def total_in(self) -> int:
        return sum(o.value for o in self.inputs)


@dataclass(frozen=True)
class SignedTransaction:
    txid: str
    raw: bytes
    selection: CoinSelection

    @property
    def hex(self) -> str:
        return self.raw.hex()

    @property
    def fee(self) -> int:
        return self.selection.fee


def spend_order(outputs: Iterable[SpendableOutput]) -> List[SpendableOutput]:
    """Largest first; ties broken by outpoint so the order never depends on the provider."""
    return sorted(outputs, key=lambda o: (-o.value, o.tx_ref, o.vout))


def select_outputs(
    outputs: Sequence[SpendableOutput],
    amount: int,
    fee_rate: int,
    dest_script_len: int = P2WPKH_SCRIPT_LEN,
    change_script_len: int = P2WPKH_SCRIPT_LEN,
    dust_threshold: int = settings.DUST_THRESHOLD_SATS,
) -> CoinSelection:
    """
    Greedy selection; the fee is recomputed for the real input count after
    every pick instead of being guessed up front.
    """
    if amount <= 0:
        raise InvalidAmount("amount must be positive")
    if amount < dust_threshold:
        raise InvalidAmount(f"amount {amount} is below the dust threshold {dust_threshold}")
    fee_rate = max(int(fee_rate), 1)

    picked: List[SpendableOutput] = []
    total = 0
    for out in spend_order(outputs):
        picked.append(out)
        total += out.value

        vsize_plain = estimate_vsize(len(picked), [dest_script_len])
        fee_plain = vsize_plain * fee_rate
        if total < amount + fee_plain:
            continue

        vsize_change = estimate_vsize(len(picked), [dest_script_len, change_script_len])
        fee_change = vsize_change * fee_rate
        change = total - amount - fee_change
        if change >= dust_threshold:
            return CoinSelection(tuple(picked), amount, fee_change, change, vsize_change)
        # uneconomical change goes to the miner
        return CoinSelection(tuple(picked), amount, total - amount, 0, vsize_plain)

    needed = amount + estimate_vsize(max(len(picked), 1), [dest_script_len]) * fee_rate
    raise InsufficientFunds(
        f"hot wallet cannot cover {amount} sats plus fee (available {total}, needed {needed})",
        available=total,
        needed=needed,
    )


class TransactionBuilder:

    def __init__(self, keys: KeyDerivation, gateway: ChainGateway, dust_threshold: int = settings.DUST_THRESHOLD_SATS):
        self.keys = keys
        self.gateway = gateway
        self.dust_threshold = dust_threshold

    async def build(self, source_index: int, destination: str, amount: int,
                    exclude: Iterable[str] = ()) -> SignedTransaction:
        """
        Select, fund and sign a payment of `amount` sats from `source_index` to
        `destination`. Outpoints in `exclude` ("txid:vout") are never spent.
        """
        dest_script = self.keys.script_for_address(destination)
        source_script = self.keys.script_for(source_index)
        source_address = self.keys.address_for(source_index)

        outputs = await self.gateway.list_spendable_outputs(source_address)
        own_hex = source_script.data.hex()
        # only outputs locked to our own P2WPKH script can be signed here
        outputs = [o for o in outputs if not o.script_hex or o.script_hex == own_hex]
        reserved = set(exclude)
        if reserved:
            outputs = [o for o in outputs if o.outpoint not in reserved]
        fee_rate = await self.gateway.estimate_fee_rate()

        selection = select_outputs(
            outputs,
            amount,
            fee_rate,
            dest_script_len=len(dest_script.data),
            change_script_len=len(source_script.data),
            dust_threshold=self.dust_threshold,
        )

        vout = [TransactionOutput(amount, dest_script)]
        if selection.change:
            vout.append(TransactionOutput(selection.change, source_script))
        tx = Transaction(
            vin=[TransactionInput(bytes.fromhex(o.tx_ref), o.vout) for o in selection.inputs],
            vout=vout,
        )
        self._sign(tx, source_index, selection.inputs)

        signed = SignedTransaction(txid=tx.txid().hex(), raw=tx.serialize(), selection=selection)
        logger.info(
            "built tx %s: %s inputs, amount=%s fee=%s change=%s rate=%s sat/vB",
            signed.txid, len(selection.inputs), amount, selection.fee, selection.change, fee_rate,
        )
        return signed

    def _sign(self, tx: Transaction, source_index: int, inputs: Sequence[SpendableOutput]) -> None:
        key = self.keys.signing_key_for(source_index)
        pub = key.get_public_key()
        script_code = script.p2pkh(pub)  # BIP143 scriptCode for P2WPKH
        for i, out in enumerate(inputs):
            sighash = tx.sighash_segwit(i, script_code, out.value)
            tx.vin[i].witness = script.witness_p2wpkh(key.sign(sighash), pub)
