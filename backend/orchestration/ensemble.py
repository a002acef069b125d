"""Synthesis ensemble: five perspectives reconciled by a meta-synthesis.

The perspectives run concurrently, each through the coordinator with its own
attempt budget and circuit. A perspective that cannot be produced is
replaced by a labelled placeholder so the meta-synthesis always sees all
five. If the meta-synthesis itself fails, the most confident perspective is
promoted in its place and the output is flagged.
"""

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Literal

import structlog

from agents.prompts import PERSPECTIVE_INSTRUCTIONS
from agents.schemas import (
    PERSPECTIVE_TYPES,
    EnsembleErrorHandling,
    MetaSynthesis,
    MetaSynthesisInput,
    Perspective,
    PerspectiveInput,
    PerspectiveType,
    SynthesisEnsembleInput,
    SynthesisEnsembleOutput,
    failed_perspective,
)
from config import settings
from orchestration.coordinator import Degraded, RecoveryCoordinator
from orchestration.state import ErrorInfo

if TYPE_CHECKING:
    from agents.catalog import AgentSuite

logger = structlog.get_logger(__name__)

META_FALLBACK_DIVERGENCE = "Meta-synthesis failed, using best individual perspective"


def perspective_agent_name(perspective_type: PerspectiveType) -> str:
    """Circuit key for one perspective; each type trips independently."""
    return f"{perspective_type}_perspective"


def select_best_perspective(
    perspectives: Sequence[Perspective],
    ranking: Sequence[str],
    tie_break: Literal["first", "last"] = "first",
) -> Perspective:
    """Pick the perspective with the highest-ranked confidence.

    Among perspectives sharing that confidence, ``tie_break`` picks the first
    or last in generation order.

    Raises:
        ValueError: If ``perspectives`` is empty.
    """
    if not perspectives:
        raise ValueError("No perspectives to select from")
    for confidence in ranking:
        candidates = [p for p in perspectives if p.confidence == confidence]
        if candidates:
            return candidates[0] if tie_break == "first" else candidates[-1]
    return perspectives[0] if tie_break == "first" else perspectives[-1]


class SynthesisEnsemble:
    """One-shot ensemble run for a session.

    Called like an agent so the whole ensemble can itself go through the
    coordinator. Errors from the individual perspective and meta-synthesis
    calls are collected on ``errors`` for the calling phase to record.

    Attributes:
        ranking: Confidence preference used for the fallback pick.
        tie_break: Which perspective wins a confidence tie.
        perspective_attempts: Attempt budget per perspective.
        errors: Errors recorded by the last run.
    """

    name = "synthesis_ensemble"

    def __init__(
        self,
        coordinator: RecoveryCoordinator,
        agents: "AgentSuite",
        *,
        ranking: Sequence[str] | None = None,
        tie_break: Literal["first", "last"] | None = None,
        perspective_attempts: int | None = None,
        phase: str = "synthesis",
    ) -> None:
        self.coordinator = coordinator
        self.agents = agents
        self.ranking = list(ranking or settings.ensemble_confidence_ranking)
        self.tie_break = tie_break or settings.ensemble_tie_break
        self.perspective_attempts = (
            perspective_attempts
            if perspective_attempts is not None
            else settings.ensemble_perspective_retries
        )
        self.phase = phase
        self.errors: list[ErrorInfo] = []

    async def __call__(self, ensemble_input: SynthesisEnsembleInput) -> SynthesisEnsembleOutput:
        self.errors = []
        ensemble_input = SynthesisEnsembleInput.model_validate(ensemble_input)

        critical = [e.agent for e in ensemble_input.errors_encountered if e.is_critical_failure]
        if critical:
            logger.warning("ensemble_critical_errors_present", agents=critical)

        perspectives = await asyncio.gather(
            *(self._perspective(ptype, ensemble_input) for ptype in PERSPECTIVE_TYPES)
        )

        outcome = await self.coordinator.invoke(
            "meta_synthesis",
            self.agents.meta_synthesis,
            MetaSynthesisInput(perspectives=list(perspectives), original_input=ensemble_input),
            None,
            output_type=MetaSynthesis,
            phase=self.phase,
        )
        if outcome.error is not None:
            self.errors.append(outcome.error)

        if isinstance(outcome, Degraded):
            return self._fallback(list(perspectives), critical)

        meta = MetaSynthesis.model_validate(outcome.value)
        logger.info(
            "ensemble_complete",
            confidence=meta.confidence,
            failed_perspectives=len(self.errors),
        )
        return SynthesisEnsembleOutput(
            individual_perspectives=list(perspectives),
            meta_synthesis=meta,
            error_handling=EnsembleErrorHandling(
                critical_failures_detected=bool(critical),
                failure_impact_description=(
                    f"Critical errors in: {', '.join(critical)}" if critical else None
                ),
            ),
        )

    async def _perspective(
        self, perspective_type: PerspectiveType, ensemble_input: SynthesisEnsembleInput
    ) -> Perspective:
        outcome = await self.coordinator.invoke(
            perspective_agent_name(perspective_type),
            self.agents.perspective,
            PerspectiveInput(
                perspective_type=perspective_type,
                instructions=PERSPECTIVE_INSTRUCTIONS[perspective_type],
                synthesis_input=ensemble_input,
            ),
            failed_perspective(perspective_type),
            output_type=Perspective,
            phase=self.phase,
            max_attempts=self.perspective_attempts,
        )
        if outcome.error is not None:
            self.errors.append(outcome.error)
        return Perspective.model_validate(outcome.value)

    def _fallback(
        self, perspectives: list[Perspective], critical: list[str]
    ) -> SynthesisEnsembleOutput:
        best = select_best_perspective(perspectives, self.ranking, self.tie_break)
        logger.warning(
            "ensemble_meta_fallback",
            selected=best.perspective_type,
            confidence=best.confidence,
        )
        meta = MetaSynthesis(
            **best.model_dump(exclude={"perspective_type", "critical_assumptions"}),
            perspective_divergence=META_FALLBACK_DIVERGENCE,
            synthesis_approach=f"Selected {best.perspective_type} perspective as most reliable",
        )
        impact = "Meta-synthesis failed"
        if critical:
            impact = f"{impact}; critical errors in: {', '.join(critical)}"
        return SynthesisEnsembleOutput(
            individual_perspectives=perspectives,
            meta_synthesis=meta,
            error_handling=EnsembleErrorHandling(
                critical_failures_detected=True,
                failure_impact_description=impact,
                confidence_adjustment_reason=(
                    f"Confidence taken from the {best.perspective_type} perspective alone"
                ),
            ),
        )
