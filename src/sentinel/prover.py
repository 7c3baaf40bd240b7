"""Proof collaborator interface and a simulated stand-in."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from eth_utils import keccak

from .mandate import canonical_json_bytes


@dataclass(frozen=True)
class ProofArtifact:
    """Opaque proof handle. Only ``handle`` is consumed by the pipeline."""

    handle: str
    protocol: str
    public_signals: tuple[str, ...] = ()
    proof: dict[str, Any] = field(default_factory=dict)
    simulated: bool = False


class Prover(Protocol):
    def prove(self, statement: dict[str, Any]) -> ProofArtifact: ...


class SimulatedProver:
    """Returns a proof-shaped artifact without any cryptographic work.

    The handle is the keccak of the canonical statement, so the same
    statement always yields the same handle.
    """

    protocol = "groth16"

    def prove(self, statement: dict[str, Any]) -> ProofArtifact:
        digest = "0x" + keccak(canonical_json_bytes(statement)).hex()
        signals = tuple(str(statement[k]) for k in sorted(statement))
        return ProofArtifact(
            handle=digest,
            protocol=self.protocol,
            public_signals=signals,
            proof={"protocol": self.protocol, "curve": "bn128", "simulated": True},
            simulated=True,
        )
