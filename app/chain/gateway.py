from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from app.core.config import settings
from app.core.errors import BroadcastOutcomeUnknown, ChainRejected, ChainTransient

logger = logging.getLogger(__name__)

# transport failures that guarantee the request never left this process
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass(frozen=True)
class SpendableOutput:
    tx_ref: str
    vout: int
    value: int          # sats
    script_hex: str = ""

    @property
    def outpoint(self) -> str:
        return f"{self.tx_ref}:{self.vout}"


@dataclass(frozen=True)
class ChainTx:
    tx_ref: str
    confirmations: int = 0
    block_height: Optional[int] = None


class ChainGateway(Protocol):
    """
    Narrow view of the blockchain-data provider.

    Every call may raise `ChainTransient` (retry later) or `ChainRejected`
    (the provider refused for good). `broadcast` raises
    `BroadcastOutcomeUnknown` when the request may have been accepted.
    """

    async def get_confirmed_balance(self, address: str) -> int:
        ...

    async def list_spendable_outputs(self, address: str) -> List[SpendableOutput]:
        ...

    async def estimate_fee_rate(self) -> int:
        """sat/vB"""
        ...

    async def broadcast(self, raw_tx: bytes) -> str:
        """Return the txid the provider accepted."""
        ...

    async def get_transaction(self, tx_ref: str) -> Optional[ChainTx]:
        """None when the provider has never seen the transaction."""
        ...


class BlockcypherGateway:
    """ChainGateway over the Blockcypher REST API, fee rates from mempool.space."""

    def __init__(
        self,
        base_url: str = settings.CHAIN_API_URL,
        fee_url: str = settings.FEE_API_URL,
        token: str = settings.CHAIN_API_TOKEN,
        timeout: float = settings.CHAIN_TIMEOUT_SECONDS,
        fallback_fee_rate: int = settings.FALLBACK_FEE_RATE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.fee_url = fee_url
        self.token = token
        self.fallback_fee_rate = fallback_fee_rate
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, **extra) -> dict:
        params = {k: v for k, v in extra.items() if v is not None}
        if self.token:
            params["token"] = self.token
        return params

    async def _request(self, method: str, url: str, *, ambiguous: bool = False, allow_404: bool = False, **kwargs):
        """
        Send one request and map failures onto the chain error taxonomy.
        `ambiguous=True` marks calls with side effects (broadcast) where a lost
        response must not be read as "did not happen".
        """
        try:
            resp = await self._client.request(method, url, **kwargs)
        except _NOT_SENT as e:
            raise ChainTransient(f"{method} {url}: {e!r}") from e
        except httpx.TransportError as e:
            if ambiguous:
                raise BroadcastOutcomeUnknown(f"{method} {url}: {e!r}") from e
            raise ChainTransient(f"{method} {url}: {e!r}") from e

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            msg = f"{method} {url}: HTTP {resp.status_code}"
            if ambiguous:
                raise BroadcastOutcomeUnknown(msg)
            raise ChainTransient(msg)
        if resp.status_code >= 400:
            raise ChainRejected(f"{method} {url}: HTTP {resp.status_code} {_error_text(resp)}")
        try:
            return resp.json()
        except ValueError as e:
            if ambiguous:
                raise BroadcastOutcomeUnknown(f"{method} {url}: unreadable response") from e
            raise ChainTransient(f"{method} {url}: unreadable response") from e

    async def get_confirmed_balance(self, address: str) -> int:
        data = await self._request("GET", f"{self.base_url}/addrs/{address}/balance", params=self._params())
        return int(data.get("balance") or 0)

    async def list_spendable_outputs(self, address: str) -> List[SpendableOutput]:
        data = await self._request(
            "GET",
            f"{self.base_url}/addrs/{address}",
            params=self._params(unspentOnly="true", includeScript="true", limit=2000),
        )
        # txrefs only lists confirmed outputs; unconfirmed_txrefs is ignored on purpose
        out = []
        for ref in data.get("txrefs") or []:
            if ref.get("spent"):
                continue
            out.append(SpendableOutput(
                tx_ref=str(ref["tx_hash"]),
                vout=int(ref["tx_output_n"]),
                value=int(ref["value"]),
                script_hex=str(ref.get("script") or ""),
            ))
        return out

    async def estimate_fee_rate(self) -> int:
        try:
            data = await self._request("GET", self.fee_url)
            rate = int(data.get("halfHourFee") or 0)
        except (ChainTransient, ChainRejected) as e:
            logger.warning("fee source unavailable, using fallback %s sat/vB: %s", self.fallback_fee_rate, e)
            return self.fallback_fee_rate
        return max(rate, 1)

    async def broadcast(self, raw_tx: bytes) -> str:
        data = await self._request(
            "POST",
            f"{self.base_url}/txs/push",
            ambiguous=True,
            params=self._params(),
            json={"tx": raw_tx.hex()},
        )
        try:
            return str(data["tx"]["hash"])
        except (KeyError, TypeError) as e:
            raise BroadcastOutcomeUnknown("broadcast response carried no txid") from e

    async def get_transaction(self, tx_ref: str) -> Optional[ChainTx]:
        data = await self._request(
            "GET", f"{self.base_url}/txs/{tx_ref}", allow_404=True, params=self._params(limit=1)
        )
        if data is None:
            return None
        height = data.get("block_height")
        return ChainTx(
            tx_ref=str(data.get("hash") or tx_ref),
            confirmations=int(data.get("confirmations") or 0),
            block_height=height if isinstance(height, int) and height >= 0 else None,  # -1 while in mempool
        )


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("errors") or body)[:200]
    return str(body)[:200]
