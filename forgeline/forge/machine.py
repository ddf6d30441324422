"""
Forge state machine.

The orchestrator never jumps between phases directly: every move goes
through `ForgeStateMachine.advance`, which checks it against the
transition table and records it on the ForgeRun. Round counting lives
here too, so the correction limit is enforced in one place.
"""

from __future__ import annotations

from loguru import logger

from forgeline.state import ForgeRun, Phase

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PLANNING: frozenset({Phase.CONTEXT_LOADING, Phase.FAILED}),
    Phase.CONTEXT_LOADING: frozenset({Phase.IMPLEMENTATION, Phase.PLANNING, Phase.FAILED}),
    Phase.IMPLEMENTATION: frozenset({Phase.VALIDATION, Phase.CORRECTION, Phase.DONE, Phase.FAILED}),
    Phase.VALIDATION: frozenset({Phase.CORRECTION, Phase.TESTING, Phase.DONE, Phase.FAILED}),
    Phase.CORRECTION: frozenset({Phase.VALIDATION, Phase.CORRECTION, Phase.PLANNING, Phase.DONE, Phase.FAILED}),
    Phase.TESTING: frozenset({Phase.DONE, Phase.FAILED}),
    Phase.DONE: frozenset(),
    Phase.FAILED: frozenset(),
}


class IllegalTransition(Exception):
    def __init__(self, current: Phase, target: Phase):
        super().__init__(f"Illegal forge transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ForgeStateMachine:
    def __init__(self, run: ForgeRun, max_correction_rounds: int):
        self.run = run
        self.max_correction_rounds = max_correction_rounds

    @property
    def phase(self) -> Phase:
        return self.run.phase

    def can_advance(self, target: Phase) -> bool:
        return target in TRANSITIONS[self.run.phase]

    def advance(self, target: Phase) -> Phase:
        if not self.can_advance(target):
            raise IllegalTransition(self.run.phase, target)
        if target is Phase.CORRECTION:
            if not self.has_rounds_left():
                raise IllegalTransition(self.run.phase, target)
            self.run.rounds_used += 1
        if target is Phase.PLANNING:
            self.run.replans += 1

        logger.debug(f"[FORGE] {self.run.phase.value} -> {target.value}")
        self.run.phase = target
        self.run.phase_history.append(target)
        return target

    def has_rounds_left(self) -> bool:
        return self.run.rounds_used < self.max_correction_rounds

    def fail(self, error: str) -> None:
        self.run.last_error = error
        if not self.run.phase.terminal:
            self.advance(Phase.FAILED)

    def finish(self) -> None:
        self.advance(Phase.DONE)
