"""Output reporter: surfaces an execution result as a stack output."""

import json
from pathlib import Path
from typing import Protocol

from rich.console import Console

from kubeprov.core.exceptions import ProvisioningFailure
from kubeprov.core.models import ExecutionResult, StackOutput
from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)


class OutputSink(Protocol):
    """Destination for stack outputs."""

    def write(self, output: StackOutput) -> None:
        """Publish one output."""


class ConsoleSink:
    """Prints outputs to the terminal."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def write(self, output: StackOutput) -> None:
        self.console.print(f"[bold green]Output[/bold green] {output.key} = {output.value}")


class JsonFileSink:
    """Merges outputs into a JSON file keyed by output name."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def write(self, output: StackOutput) -> None:
        existing: dict = {}
        if self.path.exists():
            existing = json.loads(self.path.read_text() or "{}")

        existing[output.key] = {
            "value": output.value,
            "description": output.description,
            "reported_at": output.reported_at.isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(existing, indent=2, sort_keys=True) + "\n")


class OutputReporter:
    """Writes a successful result to every sink; raises for a failed one."""

    def __init__(self, sinks: list[OutputSink]):
        """Initialize reporter.

        Args:
            sinks: Output destinations
        """
        self.sinks = sinks

    def report(self, result: ExecutionResult, key: str, description: str = "") -> StackOutput:
        """Report a result.

        Args:
            result: Execution result
            key: Output name
            description: Output description

        Returns:
            The reported StackOutput

        Raises:
            ProvisioningFailure: The failure carried by an unsuccessful result
        """
        if not result.success:
            logger.error(
                "output_not_reported",
                key=key,
                failure_kind=result.failure.value if result.failure else None,
            )
            raise ProvisioningFailure.for_kind(result.failure, result.message or "execution failed")

        output = StackOutput(key=key, value=result.value or "", description=description)
        for sink in self.sinks:
            sink.write(output)

        logger.info("output_reported", key=key)
        return output
