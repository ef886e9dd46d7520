"""
HD key derivation for the custody wallet.

Every address the platform controls hangs off one BIP39 mnemonic along the
BIP84 (native segwit) receive branch:

    m/84'/<coin>'/0'/0/<index>

Index 0 is the hot wallet that pays withdrawals, indices from 1 upwards are
handed out as per-account deposit addresses by the derivation counter.
"""
from __future__ import annotations

import logging
from typing import Optional

from embit import bip32, bip39, script
from embit.ec import PrivateKey
from embit.networks import NETWORKS

from app.core.errors import ConfigurationFatal, InvalidAddress

logger = logging.getLogger(__name__)

COIN_TYPES = {"main": 0, "test": 1, "signet": 1, "regtest": 1}


class KeyDerivation:

    def __init__(self, mnemonic: Optional[str], passphrase: str = "", network: str = "main"):
        if not mnemonic or not mnemonic.strip():
            raise ConfigurationFatal("WALLET_SEED is not set; refusing to start without custody keys")
        if network not in NETWORKS or network not in COIN_TYPES:
            raise ConfigurationFatal(f"unsupported BTC_NETWORK: {network}")
        words = " ".join(mnemonic.split())
        if not bip39.mnemonic_is_valid(words):
            raise ConfigurationFatal("WALLET_SEED is not a valid BIP39 mnemonic")

        self.network = network
        self._net = NETWORKS[network]
        seed = bip39.mnemonic_to_seed(words, password=passphrase)
        root = bip32.HDKey.from_seed(seed, version=self._net["xprv"])
        # keep only the account-level node; the seed itself is dropped here
        self._account = root.derive(f"m/84h/{COIN_TYPES[network]}h/0h")
        logger.info("custody keys loaded for network=%s", network)

    def __repr__(self) -> str:
        return f"<KeyDerivation network={self.network}>"

    def path_for(self, index: int) -> str:
        return f"m/84'/{COIN_TYPES[self.network]}'/0'/0/{index}"

    def _child(self, index: int) -> bip32.HDKey:
        if index < 0:
            raise ValueError("derivation index must be non-negative")
        return self._account.derive([0, index])

    def script_for(self, index: int) -> script.Script:
        return script.p2wpkh(self._child(index).get_public_key())

    def address_for(self, index: int) -> str:
        return self.script_for(index).address(self._net)

    def signing_key_for(self, index: int) -> PrivateKey:
        """Only the transaction builder calls this; the key never leaves the process."""
        return self._child(index).key

    def script_for_address(self, address: str) -> script.Script:
        """scriptPubKey of `address`, checked against the configured network."""
        address = (address or "").strip()
        if address.isupper():
            # bech32 may arrive upper-cased
            address = address.lower()
        try:
            sc = script.address_to_scriptpubkey(address)
            roundtrip = sc.address(self._net)
        except Exception as e:
            raise InvalidAddress(f"invalid bitcoin address: {address!r}") from e
        if roundtrip != address:
            raise InvalidAddress(f"address {address!r} does not belong to network {self.network}")
        return sc
