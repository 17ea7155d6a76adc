from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal


StepPhase = Literal["Divergence", "Critique", "Synthesis"]
StepStatus = Literal["pending", "running", "complete", "failed"]
ProcessState = Literal["diverging", "critiquing", "synthesizing", "complete"]


@dataclass(frozen=True)
class Critique:
    strengths: tuple[str, ...] = ()
    validity_conditions: str = ""
    invalidity_triggers: tuple[str, ...] = ()
    critical_flaws: str = ""


@dataclass(frozen=True)
class Strategy:
    """One divergent approach (a.k.a. hypothesis), optionally carrying its critique."""

    id: str
    title: str
    strategy: str
    assumption: str
    critique: Critique | None = None

    def with_critique(self, critique: Critique) -> "Strategy":
        return replace(self, critique=critique)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Blueprint:
    blueprint: str
    objective: str
    tone: str
    safeguards: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExecutionStep:
    id: str
    phase: StepPhase
    title: str
    status: StepStatus
    thoughts: str = ""
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeliberationProcess:
    """Immutable snapshot of one Deliberation Pipeline run, handed to observers."""

    state: ProcessState = "diverging"
    trace: tuple[ExecutionStep, ...] = ()
    hypotheses: tuple[Strategy, ...] = ()
    blueprint: Blueprint | None = None

    def with_step(self, step: ExecutionStep) -> "DeliberationProcess":
        return replace(self, trace=self.trace + (step,))

    def with_step_update(self, step_id: str, **changes: Any) -> "DeliberationProcess":
        trace = tuple(replace(t, **changes) if t.id == step_id else t for t in self.trace)
        return replace(self, trace=trace)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeliberationResult:
    final_prompt: str
    process: DeliberationProcess = field(default_factory=DeliberationProcess)

    @property
    def blueprint(self) -> Blueprint | None:
        return self.process.blueprint

    @property
    def trace(self) -> tuple[ExecutionStep, ...]:
        return self.process.trace
