# -*- coding: utf-8 -*-
"""
Per-group enhance/critique loop for one representative frame.

The loop is an explicit state machine::

    ENHANCING -> ANALYZING -> SATISFIED
                           -> EXHAUSTED
                           -> SURGICAL_EDIT -> ANALYZING
                           -> GLOBAL_RETRY  -> ENHANCING
    (any step)             -> DEGRADED

The iteration counter increments on every entry to ENHANCING or
SURGICAL_EDIT and never exceeds ``max_iterations``.  Retries start from the
current edited frame, surgical fixes included, and only high/medium-impact
issues keep the loop going.  Reaching a terminal phase
is a normal outcome; service failures and the run deadline are recorded as
:class:`GroupDegradationNotice` entries, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from clipgrade.core.errors import (
    DegradationReason,
    GroupDegradationNotice,
    MalformedResponseError,
    ServiceError,
)
from clipgrade.core.retry import CallGate, RetryPolicy, call_with_retry
from clipgrade.core.utils import DEFAULT_INSTRUCTION, Deadline
from clipgrade.services.base import Critique, ImageCritic, ImageEnhancer, Issue, SurgicalEditor

LOG = logging.getLogger("clipgrade.orchestrator")


class Phase(str, Enum):
    ENHANCING = "enhancing"
    ANALYZING = "analyzing"
    SURGICAL_EDIT = "surgical_edit"
    GLOBAL_RETRY = "global_retry"
    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    DEGRADED = "degraded"

    @property
    def terminal(self) -> bool:
        return self in (Phase.SATISFIED, Phase.EXHAUSTED, Phase.DEGRADED)


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnhancementPolicy:
    max_iterations: int = 3
    quality_target: float = 8.5
    instruction: str = DEFAULT_INSTRUCTION
    user_feedback: str = ""

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "EnhancementPolicy":
        enhance = cfg.get("enhance") or {}
        return cls(
            max_iterations=max(1, int(enhance.get("max_iterations", 3))),
            quality_target=float(enhance.get("quality_target", 8.5)),
            instruction=str(enhance.get("instruction") or DEFAULT_INSTRUCTION),
            user_feedback=str(enhance.get("user_feedback") or ""),
        )

    def instruction_for(self, issues: Sequence[Issue] = ()) -> str:
        """Fixed creative instruction, plus user feedback and open issues."""

        text = self.instruction
        if self.user_feedback.strip():
            text += "\n\nADDITIONAL USER FEEDBACK:\n" + self.user_feedback.strip()
        if issues:
            fixes = "\n".join(f"- {issue.edit_instruction}" for issue in issues)
            text += "\n\nALSO FIX THESE REMAINING ISSUES:\n" + fixes
        return text


@dataclass
class EnhancementAttempt:
    """Mutable state of one representative while the loop runs."""

    original: np.ndarray
    global_edit: Optional[np.ndarray] = None
    edited: Optional[np.ndarray] = None
    critique: Optional[Critique] = None
    iteration: int = 0
    phase: Phase = Phase.ENHANCING
    history: List[Tuple[float, np.ndarray, np.ndarray]] = field(default_factory=list)
    pending_issues: List[Issue] = field(default_factory=list)
    applied_issues: List[str] = field(default_factory=list)
    surgical_regions: List[str] = field(default_factory=list)
    notices: List[GroupDegradationNotice] = field(default_factory=list)


@dataclass(frozen=True)
class OrchestrationOutcome:
    group_index: int
    final: Optional[np.ndarray]          # representative as written, surgical edits included
    global_edit: Optional[np.ndarray]    # last enhancer output; the group transform is built from it
    score: Optional[float]
    iterations: int
    phase: Phase
    applied_issues: Tuple[str, ...] = ()
    surgical_regions: Tuple[str, ...] = ()    # excluded when sampling the transform
    notices: Tuple[GroupDegradationNotice, ...] = ()

    @property
    def enhanced(self) -> bool:
        return self.final is not None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class EnhancementOrchestrator:
    """Drive one group's representative through the enhance/critique loop."""

    def __init__(
        self,
        enhancer: ImageEnhancer,
        critic: ImageCritic,
        surgeon: Optional[SurgicalEditor] = None,
        *,
        policy: Optional[EnhancementPolicy] = None,
        retry: Optional[RetryPolicy] = None,
        gate: Optional[CallGate] = None,
        deadline: Optional[Deadline] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.enhancer = enhancer
        self.critic = critic
        self.surgeon = surgeon
        self.policy = policy or EnhancementPolicy()
        self.retry = retry or RetryPolicy()
        self.gate = gate
        self.deadline = deadline
        self.sleep = sleep

    def _call(self, fn: Callable[[], Any], label: str) -> Any:
        return call_with_retry(fn, self.retry, self.gate, label=label, sleep=self.sleep)

    def run(self, group_index: int, pixels: np.ndarray) -> OrchestrationOutcome:
        attempt = EnhancementAttempt(original=np.asarray(pixels))
        handlers = {
            Phase.ENHANCING: self._enhance,
            Phase.ANALYZING: self._analyze,
            Phase.SURGICAL_EDIT: self._surgical_edit,
            Phase.GLOBAL_RETRY: self._global_retry,
        }
        while not attempt.phase.terminal:
            if attempt.phase in (Phase.ENHANCING, Phase.SURGICAL_EDIT) and self._deadline_hit(group_index, attempt):
                break
            LOG.debug("group %d: %s (iteration %d)", group_index, attempt.phase.value, attempt.iteration)
            try:
                handlers[attempt.phase](group_index, attempt)
            except MalformedResponseError as exc:
                if attempt.phase is not Phase.ANALYZING:
                    self._degrade(group_index, attempt, exc)
                    continue
                LOG.warning("group %d: critique unusable (%s); accepting current edit", group_index, exc)
                attempt.notices.append(
                    GroupDegradationNotice(group_index, DegradationReason.MALFORMED_CRITIQUE, str(exc))
                )
                attempt.phase = Phase.SATISFIED
            except ServiceError as exc:
                self._degrade(group_index, attempt, exc)
        return self._outcome(group_index, attempt)

    # -- phase handlers -------------------------------------------------------

    def _enhance(self, group_index: int, attempt: EnhancementAttempt) -> None:
        attempt.iteration += 1
        source = attempt.edited if attempt.edited is not None else attempt.original
        instruction = self.policy.instruction_for(attempt.pending_issues)
        result = self._call(lambda: self.enhancer.enhance(source, instruction), f"group {group_index} enhance")
        attempt.applied_issues.extend(i.description for i in attempt.pending_issues)
        attempt.pending_issues = []
        attempt.global_edit = result
        attempt.edited = result
        attempt.phase = Phase.ANALYZING

    def _analyze(self, group_index: int, attempt: EnhancementAttempt) -> None:
        edited = attempt.edited
        critique = self._call(lambda: self.critic.critique(edited), f"group {group_index} critique")
        attempt.critique = critique
        attempt.history.append((critique.score, attempt.edited, attempt.global_edit))
        LOG.info("group %d: iteration %d scored %.2f with %d issues",
                 group_index, attempt.iteration, critique.score, len(critique.issues))

        if critique.score >= self.policy.quality_target or not critique.actionable_issues:
            attempt.phase = Phase.SATISFIED
        elif attempt.iteration >= self.policy.max_iterations:
            attempt.phase = Phase.EXHAUSTED
        elif critique.surgical_issues and self.surgeon is not None:
            attempt.phase = Phase.SURGICAL_EDIT
        else:
            attempt.phase = Phase.GLOBAL_RETRY

    def _surgical_edit(self, group_index: int, attempt: EnhancementAttempt) -> None:
        attempt.iteration += 1
        current = attempt.edited
        for issue in attempt.critique.surgical_issues:
            image = current
            result = self._call(
                lambda: self.surgeon.edit(image, issue.region, issue.edit_instruction),
                f"group {group_index} surgical edit ({issue.region})",
            )
            if result.shape != image.shape:
                LOG.warning("group %d: surgical edit on %s changed geometry %s -> %s; discarded",
                            group_index, issue.region, image.shape, result.shape)
                attempt.notices.append(
                    GroupDegradationNotice(
                        group_index, DegradationReason.GEOMETRY_MISMATCH,
                        f"surgical edit on {issue.region} discarded",
                    )
                )
                continue
            current = result
            attempt.applied_issues.append(issue.description)
            if issue.region not in attempt.surgical_regions:
                attempt.surgical_regions.append(issue.region)
        attempt.edited = current
        attempt.phase = Phase.ANALYZING

    def _global_retry(self, group_index: int, attempt: EnhancementAttempt) -> None:
        critique = attempt.critique
        if self.surgeon is None:
            attempt.pending_issues = critique.actionable_issues
        else:
            attempt.pending_issues = critique.global_issues
        attempt.phase = Phase.ENHANCING

    # -- terminal handling ----------------------------------------------------

    def _deadline_hit(self, group_index: int, attempt: EnhancementAttempt) -> bool:
        if self.deadline is None or not self.deadline.expired():
            return False
        LOG.warning("group %d: time budget spent after %d iterations", group_index, attempt.iteration)
        attempt.notices.append(
            GroupDegradationNotice(
                group_index, DegradationReason.DEADLINE,
                f"stopped after {attempt.iteration} iterations",
            )
        )
        attempt.phase = Phase.DEGRADED
        return True

    def _degrade(self, group_index: int, attempt: EnhancementAttempt, exc: Exception) -> None:
        LOG.warning("group %d: %s failed (%s); keeping best edit so far",
                    group_index, attempt.phase.value, exc)
        attempt.notices.append(
            GroupDegradationNotice(group_index, DegradationReason.SERVICE_FAILURE, str(exc))
        )
        if attempt.history:
            _score, best_edited, best_global = max(attempt.history, key=lambda entry: entry[0])
            attempt.edited = best_edited
            attempt.global_edit = best_global
        attempt.phase = Phase.DEGRADED

    def _outcome(self, group_index: int, attempt: EnhancementAttempt) -> OrchestrationOutcome:
        score = None
        if attempt.history:
            score = next(
                (s for s, edited, _g in reversed(attempt.history) if edited is attempt.edited),
                attempt.history[-1][0],
            )
        return OrchestrationOutcome(
            group_index=group_index,
            final=attempt.edited,
            global_edit=attempt.global_edit,
            score=score,
            iterations=attempt.iteration,
            phase=attempt.phase,
            applied_issues=tuple(attempt.applied_issues),
            surgical_regions=tuple(attempt.surgical_regions),
            notices=tuple(attempt.notices),
        )


__all__ = [
    "Phase",
    "EnhancementPolicy",
    "EnhancementAttempt",
    "OrchestrationOutcome",
    "EnhancementOrchestrator",
]
