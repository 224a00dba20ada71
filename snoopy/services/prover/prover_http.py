from collections.abc import Sequence
from typing import Any

import aiohttp
from loguru import logger
from pydantic import ValidationError

from snoopy.common.errors import DecodeError, TransportError
from snoopy.common.models import EvidenceBundle, ProofResult
from snoopy.services.prover.prover_base import ProverBase


class ProverHttp(ProverBase):
    """Remote zk prover taking the evidence list as JSON and returning a groth16 proof."""

    def __init__(
        self,
        base_url: str,
        program_path: str = "prove-query-result-program",
        key: str | None = None,
        timeout: float = 60 * 60,
    ):
        self._base_url = base_url.rstrip("/")
        self._program_path = program_path
        self._key = key
        self._timeout = timeout

    async def prove(self, evidence: Sequence[EvidenceBundle]) -> ProofResult:
        headers = {"Content-Type": "application/json"}
        if self._key:
            headers["Authorization"] = "Bearer " + self._key

        body: dict[str, Any] = {
            "program": self._program_path,
            "mode": "groth16",
            "evidence": [bundle.model_dump(mode="json") for bundle in evidence],
        }

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout)) as session:
                async with session.post(f"{self._base_url}/prove", headers=headers, json=body) as response:
                    response.raise_for_status()
                    data = await response.json()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise TransportError(f"Prover request failed: {exc}", step="prove") from exc

        try:
            result = ProofResult(
                proof_bytes=data["proof"],
                public_values=data["public_values"],
                verification_key=data.get("verification_key"),
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise DecodeError(f"Malformed prover response: {exc}", step="prove") from exc

        logger.info(f"Verification Key: {result.verification_key}")
        logger.info(f"Public Values: 0x{result.public_values.hex()}")
        logger.info(f"Proof Bytes: 0x{result.proof_bytes.hex()}")
        return result

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self._base_url}, {self._program_path})"
