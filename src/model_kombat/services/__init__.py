"""Service interfaces for dependency injection."""

from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from ..domain import ChatRequest, ChatResponse, Model

ChunkCallback = Callable[[str], None]


class ICompletionGateway(Protocol):
    """Interface for upstream chat completions."""

    async def complete(
        self,
        request: ChatRequest,
        on_chunk: Optional[ChunkCallback] = None,
        *,
        phase: Optional[str] = None,
    ) -> ChatResponse:
        """Execute a chat completion, streaming deltas to ``on_chunk`` when given."""
        ...

    async def list_models(self) -> List[Dict[str, Any]]:
        """Retrieve the raw catalog of available models."""
        ...

    async def aclose(self) -> None:
        """Close connections and cleanup resources."""
        ...


class IModelCatalog(Protocol):
    """Interface for the cached model catalog."""

    async def refresh(self, force: bool = False) -> List[Model]:
        """Return the catalog, fetching it when the cache is stale."""
        ...

    def get_model(self, model_id: str) -> Optional[Model]:
        """Look up a cached model by id."""
        ...

    def models(self) -> List[Model]:
        """Return all cached models."""
        ...


class IPromptsManager(Protocol):
    """Interface for prompt template management."""

    def get_template(self, name: str) -> str:
        """Return a raw template by name."""
        ...

    def render(self, name: str, **values: Any) -> str:
        """Render a named template with the provided values."""
        ...

    def get_section(self, name: str) -> Dict[str, Any]:
        """Return one prompt section with its template and generation settings."""
        ...

    def get_setting(self, section: str, key: str, default: Any = None) -> Any:
        """Return a generation setting for a prompt section."""
        ...

    def render_judge_instructions(self, weights: Mapping[str, int]) -> str:
        """Render the judge rubric for the given criterion weights."""
        ...

    def get_judge_config(self) -> Dict[str, Any]:
        """Return the judge rubric configuration."""
        ...


class IConfigurationManager(Protocol):
    """Interface for configuration management."""

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        ...

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section."""
        ...

    def reload(self) -> None:
        """Reload configuration from source."""
        ...


class IStopSignal(Protocol):
    """Cooperative cancellation signal checked before each upstream call."""

    def should_stop(self) -> bool:
        """Return True once the current run has been cancelled."""
        ...


class ITimeService(Protocol):
    """Interface for time-related operations."""

    def now_iso(self) -> str:
        """Get current UTC timestamp in ISO-8601 format with Z suffix."""
        ...

    def monotonic(self) -> float:
        """Get a monotonic clock reading in seconds."""
        ...


class IFileSystemService(Protocol):
    """Interface for file system operations."""

    def write_json(self, path: Path, data: Any) -> None:
        """Write data as JSON to path, creating directories as needed."""
        ...


__all__ = [
    "ChunkCallback",
    "ICompletionGateway",
    "IModelCatalog",
    "IPromptsManager",
    "IConfigurationManager",
    "IStopSignal",
    "ITimeService",
    "IFileSystemService",
]
