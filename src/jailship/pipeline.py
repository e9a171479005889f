"""Ordered step execution with compensating rollback."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from jailship.errors import JailshipError

Context = Dict[str, Any]


class Step:
    """One unit of a pipeline.

    Subclasses set `name` and implement `run`, returning a new context that
    holds the old keys plus anything they add. `rollback` undoes the step's
    side effects and is a no-op unless overridden.
    """

    name = "step"

    def run(self, context: Context) -> Context:
        raise NotImplementedError

    def rollback(self, context: Context):
        return None


@dataclass
class PipelineResult:
    ok: bool
    context: Context
    error: Optional[str] = None
    failed_step: Optional[str] = None
    rolled_back: List[str] = field(default_factory=list)


class Pipeline:
    """Runs steps in order and unwinds the completed ones on failure."""

    def __init__(self, steps: Sequence[Step], logger, console):
        self.steps = list(steps)
        self.logger = logger
        self.console = console

    def run(self, context: Context) -> PipelineResult:
        completed: List[Step] = []

        for step in self.steps:
            self.console.print(f"\n[bold blue]==> {step.name}[/bold blue]")
            self.logger.debug("Running step: %s", step.name)

            try:
                context = step.run(context)
            except JailshipError as exc:
                reason = str(exc)
                self.console.print(f"[bold red]{step.name} failed:[/bold red] {reason}")
                self.logger.error("%s failed: %s", step.name, reason)
                return self._fail(step, reason, completed, context)
            except Exception as exc:
                reason = f"Unexpected error: {exc}"
                self.console.print(f"[bold red]{step.name} failed:[/bold red] {reason}")
                self.logger.exception("Unexpected error in step %s", step.name)
                return self._fail(step, reason, completed, context)

            completed.append(step)

        return PipelineResult(ok=True, context=context)

    def _fail(self, step: Step, reason: str, completed: List[Step], context: Context) -> PipelineResult:
        rolled_back = self.rollback(completed, context)
        return PipelineResult(
            ok=False,
            context=context,
            error=reason,
            failed_step=step.name,
            rolled_back=rolled_back,
        )

    def rollback(self, completed: List[Step], context: Context) -> List[str]:
        if not completed:
            return []

        self.console.print(f"[yellow]Rolling back {len(completed)} completed step(s)...[/yellow]")
        rolled_back = []
        for step in reversed(completed):
            self.console.print(f"[yellow]Rolling back: {step.name}[/yellow]")
            try:
                step.rollback(context)
            except Exception as exc:
                self.console.print(f"[red]Rollback of {step.name} failed:[/red] {exc}")
                self.logger.error("Rollback of %s failed: %s", step.name, exc)
            rolled_back.append(step.name)
        return rolled_back
