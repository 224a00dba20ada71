import asyncio
from typing import Any, Self

from eth_account import Account
from eth_account.signers.local import LocalAccount
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from snoopy.common.constants import SUBMIT_CONFIRMATIONS, SUBMIT_TIMEOUT_SEC
from snoopy.common.errors import TransportError
from snoopy.common.utils import async_cache, mask_url

_ASSIGNMENT_ID_TTL: int = 10 * 60
_CONFIRMATION_POLL_SEC: float = 2.0

COMMITMENT_HOLDER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getIdByTimestamp",
        "stateMutability": "view",
        "inputs": [{"name": "timestamp", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    }
]

PROVING_MANAGER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "verifyAndEmit",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "configName", "type": "string"},
            {"name": "publicValues", "type": "bytes"},
            {"name": "proofBytes", "type": "bytes"},
        ],
        "outputs": [],
    }
]


class ChainGateway:
    """Reads assignment commitments and submits fraud proofs.

    Args:
        rpc_url: One or more RPC endpoints, websocket or http. Later endpoints are fallbacks.
        commiter_address: Address of the contract holding assignment commitments.
        manager_address: Address of the contract verifying proofs.
        signer: Private key used for proof transactions. Read-only if None.
        confirmations: Blocks to wait on top of the block including the proof transaction.
        submit_timeout: Seconds to wait for inclusion and confirmations.
    """

    def __init__(
        self,
        rpc_url: list[str] | str,
        commiter_address: str,
        manager_address: str,
        signer: str | None = None,
        confirmations: int = SUBMIT_CONFIRMATIONS,
        submit_timeout: float = SUBMIT_TIMEOUT_SEC,
    ):
        if isinstance(rpc_url, str):
            rpc_url = [rpc_url]
        self._network: list[str] = rpc_url
        self._commiter_address = AsyncWeb3.to_checksum_address(commiter_address)
        self._manager_address = AsyncWeb3.to_checksum_address(manager_address)
        self._account: LocalAccount | None = Account.from_key(signer) if signer else None
        self._confirmations = confirmations
        self._submit_timeout = submit_timeout

        self._clients: list[AsyncWeb3] = []
        self._client_alive: list[bool] = []

    async def start(self) -> Self:
        """Connect to the RPC endpoint(s).

        Raises:
            TransportError: Failed to connect to any endpoint.
        """
        if self._clients:
            return self

        for url in self._network:
            try:
                if url.startswith("ws"):
                    w3 = AsyncWeb3(WebSocketProvider(url))
                    await w3.provider.connect()
                else:
                    w3 = AsyncWeb3(AsyncHTTPProvider(url))
                    if not await w3.is_connected():
                        raise ConnectionError("endpoint is not responding")
                self._clients.append(w3)
                self._client_alive.append(True)
            except Exception as exc:
                logger.error(f"Failed to connect to {mask_url(url)}: {exc}")

        if not self._clients:
            raise TransportError(f"Failed to connect to any RPC endpoint: {self.mask_network()}")
        return self

    async def shutdown(self) -> None:
        for w3 in self._clients:
            if isinstance(w3.provider, WebSocketProvider):
                await w3.provider.disconnect()
        del self._clients[:]
        del self._client_alive[:]

    async def web3(self) -> AsyncWeb3:
        await self.start()
        for idx, w3 in enumerate(self._clients):
            if self._client_alive[idx]:
                return w3
        # Every endpoint failed at least once, give them another chance.
        self._client_alive = [True] * len(self._clients)
        return self._clients[0]

    @property
    def account_address(self) -> str | None:
        return self._account.address if self._account is not None else None

    @async_cache(_ASSIGNMENT_ID_TTL, cache_falsy=False)
    async def assignment_id_by_timestamp(self, timestamp: int) -> str:
        """Assignment id in effect at `timestamp` seconds, empty string if none.

        Raises:
            TransportError: Every endpoint failed to serve the call.
        """
        await self.start()
        last_exc: Exception | None = None
        for idx, w3 in enumerate(self._clients):
            try:
                contract = w3.eth.contract(address=self._commiter_address, abi=COMMITMENT_HOLDER_ABI)
                assignment_id = await contract.functions.getIdByTimestamp(timestamp).call()
                self._client_alive[idx] = True
                return str(assignment_id)
            except Exception as exc:
                self._client_alive[idx] = False
                last_exc = exc
                logger.error(f"Error during assignment id lookup at {mask_url(self._network[idx])}: {exc}")

        raise TransportError(
            f"Failed to query commitment contract: {last_exc}",
            step="assignment",
            context={"timestamp": timestamp},
        )

    async def submit_proof(self, config_name: str, public_values: bytes, proof_bytes: bytes) -> bytes:
        """Send the proof to the proving manager and wait for confirmations.

        Returns:
            Transaction hash.

        Raises:
            TransportError: No signer, send failure, revert or timeout.
        """
        if self._account is None:
            raise TransportError("No signer configured for proof submission", step="submit")

        w3 = await self.web3()
        try:
            contract = w3.eth.contract(address=self._manager_address, abi=PROVING_MANAGER_ABI)
            nonce = await w3.eth.get_transaction_count(self._account.address, "pending")
            tx = await contract.functions.verifyAndEmit(config_name, public_values, proof_bytes).build_transaction(
                {"from": self._account.address, "nonce": nonce}
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info(f"Sent proof transaction 0x{bytes(tx_hash).hex()}")

            async with asyncio.timeout(self._submit_timeout):
                receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._submit_timeout)
                await self._wait_confirmations(w3, int(receipt["blockNumber"]))
        except TimeoutError as exc:
            raise TransportError(
                f"Proof transaction not confirmed within {self._submit_timeout}s", step="submit"
            ) from exc
        except Exception as exc:
            raise TransportError(f"Failed to submit proof: {exc}", step="submit") from exc

        if receipt["status"] != 1:
            raise TransportError("Proof transaction reverted", step="submit", context={"tx": bytes(tx_hash).hex()})
        return bytes(tx_hash)

    async def _wait_confirmations(self, w3: AsyncWeb3, block_number: int) -> None:
        while True:
            head = await w3.eth.block_number
            if head - block_number + 1 >= self._confirmations:
                return
            await asyncio.sleep(_CONFIRMATION_POLL_SEC)

    def mask_network(self) -> list[str]:
        return [mask_url(url) for url in self._network]
