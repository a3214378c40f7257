import importlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def unregister(self, name: str) -> None:
        """Remove an implementation (no-op when absent)."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - in-process handlers for the optional execute endpoint
class JobHandler(Protocol):
    """Protocol for job handlers that run a generic job's payload."""

    async def handle(
        self,
        session: Any,  # AsyncSession
        job_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Run the job and return its result document.

        Raising any exception reports the attempt as failed; the retry policy
        decides whether the job is requeued.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job handlers, keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Row Processor Registry - per-row work for pull-driven batch jobs
class RowOutcome(str, Enum):
    """Category a successfully processed row is counted under."""

    IMPORTED = "imported"
    UPDATED = "updated"
    SKIPPED = "skipped"
    SKIPPED_CLAIMED = "skipped_claimed"


@dataclass
class RowResult:
    outcome: RowOutcome
    pending_image_count: int = 0


class RowProcessor(Protocol):
    """Protocol for processors that apply one input row of a batch job."""

    def external_identifier(self, row: dict[str, Any]) -> str | None:
        """Identifier recorded alongside a row's error (e.g. a place ID)."""
        ...

    async def process_row(
        self,
        session: Any,  # AsyncSession
        row: dict[str, Any],
        row_index: int,
    ) -> RowResult:
        """
        Apply a single row.

        Raise to record the row as an error; the rest of the chunk continues.
        """
        ...


class RowProcessorRegistry(Registry[RowProcessor]):
    """Registry for batch row processors, keyed by batch job kind."""

    def __init__(self):
        super().__init__("RowProcessor")


# Global registry instances (singletons)
job_registry = JobRegistry()
row_processor_registry = RowProcessorRegistry()


def load_registry_modules(
    module_paths: list[str],
    jobs: JobRegistry = job_registry,
    row_processors: RowProcessorRegistry = row_processor_registry,
) -> None:
    """
    Import deployment modules and let each fill the registries.

    Every module must expose ``register(jobs, row_processors)``. Import
    errors propagate so a misconfigured deployment fails at startup.
    """
    for path in module_paths:
        module = importlib.import_module(path)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ValueError(
                f"Registry module {path} has no register(jobs, row_processors) hook"
            )
        register(jobs, row_processors)
