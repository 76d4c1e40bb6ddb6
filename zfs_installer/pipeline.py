from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from .context import ProvisioningContext

logger = logging.getLogger(__name__)


class Step(Protocol):
    """A single pipeline stage; registers its inverse with ctx as soon as it succeeds."""

    step_id: str

    def run(self, ctx: ProvisioningContext) -> None:
        ...


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]
    executed_inverses: List[str]


def run_pipeline(*, ctx: ProvisioningContext, steps: Sequence[Step]) -> PipelineResult:
    """Run steps in order inside the cleanup guard.

    Success commits, anything else aborts; both end in verification.
    """

    ran: List[str] = []

    with ctx.cleanup.guard():
        for step in steps:
            ctx.current_step = step.step_id
            logger.info("Running step %s", step.step_id)
            step.run(ctx)
            ran.append(step.step_id)
        ctx.current_step = None

    return PipelineResult(ran_steps=ran, executed_inverses=list(ctx.cleanup.executed_stages))
