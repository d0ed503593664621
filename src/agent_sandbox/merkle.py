# merkle.py
# Plan commitment.
#
# When execution starts the orchestrator commits the plan's steps to a
# SHA-256 Merkle root. Each step is re-hashed before dispatch and the root is
# recomputed after the last step, so a plan mutated under execution is caught
# instead of silently producing a result for a different plan.

import hashlib
import json

from agent_sandbox.errors import PlanIntegrityError
from agent_sandbox.models import Plan, PlanStep


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def step_digest(step: PlanStep) -> str:
    """Leaf hash. sort_keys keeps it independent of field order."""
    payload = json.dumps(step.model_dump(mode="json"), sort_keys=True, ensure_ascii=False)
    return _sha256(payload)


def merkle_root(leaves: list[str]) -> str:
    """Pairwise-reduce leaf hashes; odd layers duplicate their last node."""
    if not leaves:
        raise ValueError("Cannot build a Merkle root from an empty step list.")
    layer = list(leaves)
    while len(layer) > 1:
        if len(layer) % 2:
            layer.append(layer[-1])
        layer = [_sha256(layer[i] + layer[i + 1]) for i in range(0, len(layer), 2)]
    return layer[0]


class PlanCommitment:
    """Root and leaves of a committed plan."""

    def __init__(self, plan: Plan) -> None:
        self._plan_id = plan.id
        self._leaves = [step_digest(step) for step in plan.steps]
        self._root = merkle_root(self._leaves)

    @property
    def root(self) -> str:
        return self._root

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)

    def verify_step(self, index: int, step: PlanStep) -> None:
        """Raise PlanIntegrityError unless `step` is the committed step at `index`."""
        if index < 0 or index >= len(self._leaves) or step_digest(step) != self._leaves[index]:
            raise PlanIntegrityError(
                f"Step '{step.id}' (index {index}) does not match the committed plan {self._plan_id}."
            )

    def verify_plan(self, plan: Plan) -> None:
        if plan.id != self._plan_id or merkle_root([step_digest(s) for s in plan.steps]) != self._root:
            raise PlanIntegrityError(f"Plan {plan.id} no longer matches its committed root.")
