from collections.abc import Sequence

from snoopy.common.models import EvidenceBundle, ProofResult


class ProverBase:
    async def prove(self, evidence: Sequence[EvidenceBundle]) -> ProofResult:
        raise NotImplementedError
