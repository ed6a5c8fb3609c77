# merkle.py
# SHA-256 Merkle tree over committed transformation steps.
#
# The root is stored on every finalized ExecutionResult as its checksum.
# Editing any committed step afterwards (operation, params or resulting
# bits) changes its leaf, and verify_leaf() pinpoints which one.
#
# stdlib only.

import hashlib
import json
from typing import Any

from bitwise_engine.bits import hash_bits
from bitwise_engine.models import TransformationStep

# Root of a run with no committed steps.
EMPTY_ROOT = hashlib.sha256(b"").hexdigest()


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(leaf: dict[str, Any]) -> str:
    """Deterministic serialization. sort_keys keeps params order-insensitive."""
    return json.dumps(leaf, sort_keys=True, ensure_ascii=False)


def step_leaf(step: TransformationStep) -> dict[str, Any]:
    """The part of a step that the checksum commits to."""
    return {
        "step_index": step.step_index,
        "operation": step.operation,
        "params": step.params,
        "after_hash": hash_bits(step.after_bits),
    }


class MerkleTree:
    """
    Binary SHA-256 Merkle tree.

    Leaf  = SHA256(json.dumps(leaf, sort_keys=True))
    Node  = SHA256(left_child + right_child)

    Odd-length layers duplicate their last node before pairing. An empty
    tree has root EMPTY_ROOT.
    """

    def __init__(self, leaves: list[dict[str, Any]]) -> None:
        self._leaves: list[str] = [_sha256(_serialize(leaf)) for leaf in leaves]
        self._root: str = self._build_tree(list(self._leaves)) if self._leaves else EMPTY_ROOT

    @classmethod
    def from_steps(cls, steps: list[TransformationStep]) -> "MerkleTree":
        return cls([step_leaf(s) for s in steps if s.committed])

    def _build_tree(self, nodes: list[str]) -> str:
        if len(nodes) == 1:
            return nodes[0]
        if len(nodes) % 2 != 0:
            nodes = nodes + [nodes[-1]]
        parents = [_sha256(nodes[i] + nodes[i + 1]) for i in range(0, len(nodes), 2)]
        return self._build_tree(parents)

    def verify_leaf(self, index: int, leaf: dict[str, Any]) -> bool:
        """False on mismatch or out-of-bounds index."""
        if index < 0 or index >= len(self._leaves):
            return False
        return _sha256(_serialize(leaf)) == self._leaves[index]

    @property
    def root(self) -> str:
        return self._root

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)


def execution_checksum(steps: list[TransformationStep]) -> str:
    return MerkleTree.from_steps(steps).root
