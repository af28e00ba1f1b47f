"""Dependency injection container."""

import inspect
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

LOGGER = logging.getLogger(__name__)

# Keys of the ``create_container`` mapping that wire objects rather than configuration values.
_WIRING_KEYS = ("config_file", "prompts_file", "judge_config_file", "transport", "environ", "auto_reload")


class ServiceContainer:
    """Thread-safe dependency injection container."""

    def __init__(self) -> None:
        self._services: Dict[object, Any] = {}
        self._factories: Dict[object, Callable[[], Any]] = {}
        self._lock = threading.RLock()

    def register_singleton(self, interface: object, instance: Any) -> None:
        with self._lock:
            self._services[interface] = instance

    def register_factory(self, interface: object, factory: Callable[[], Any]) -> None:
        """Register a factory; its first product is cached as a singleton."""
        with self._lock:
            self._factories[interface] = factory

    def resolve(self, interface: object) -> Any:
        """Resolve a service by interface."""
        with self._lock:
            if interface in self._services:
                return self._services[interface]

            if interface in self._factories:
                instance = self._factories[interface]()
                self._services[interface] = instance
                return instance

            name = getattr(interface, "__name__", repr(interface))
            raise KeyError(f"No registration found for {name}")

    def is_registered(self, interface: object) -> bool:
        with self._lock:
            return interface in self._services or interface in self._factories

    async def aclose(self) -> None:
        """Close every resolved service that owns resources, then clear registrations."""
        with self._lock:
            services = list(self._services.values())
            self._services.clear()
            self._factories.clear()

        closed: set[int] = set()
        for service in services:
            if id(service) in closed:
                continue
            closed.add(id(service))
            closer = getattr(service, "aclose", None) or getattr(service, "close", None)
            if closer is None:
                continue
            result = closer()
            if inspect.isawaitable(result):
                await result


def _split_config(config: Mapping[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
    wiring = {key: config[key] for key in _WIRING_KEYS if key in config}
    values = {key: value for key, value in config.items() if key not in _WIRING_KEYS}
    # flat shortcuts for the upstream section
    openrouter = dict(values.pop("openrouter", None) or {})
    for key in ("api_key", "base_url", "timeout"):
        if key in values:
            openrouter[key] = values.pop(key)
    if openrouter:
        values["openrouter"] = openrouter
    return wiring, values


def create_container(config: Optional[Mapping[str, Any]] = None) -> ServiceContainer:
    """Build a container wiring configuration, transport, gateway, catalog and prompts.

    ``config`` may name a ``config_file`` and prompt files, supply an inner
    httpx ``transport`` and an ``environ`` mapping, and carry configuration
    sections that are merged over the file.
    """
    from .infrastructure.api_client import OpenRouterClient
    from .infrastructure.config_manager import ConfigurationManager, GatewaySettings
    from .infrastructure.model_catalog import ModelCatalog
    from .infrastructure.prompts_manager import PromptsManager
    from .infrastructure.transport import RateLimitedTransport
    from .infrastructure.utility_services import FileSystemService, TimeService
    from .services import (
        ICompletionGateway,
        IConfigurationManager,
        IFileSystemService,
        IModelCatalog,
        IPromptsManager,
        ITimeService,
    )

    wiring, values = _split_config(config or {})
    container = ServiceContainer()

    config_manager = ConfigurationManager(
        config_file=wiring.get("config_file"),
        auto_reload=bool(wiring.get("auto_reload", False)),
        environ=wiring.get("environ"),
    )
    if values:
        config_manager.merge(values)
    container.register_singleton(IConfigurationManager, config_manager)

    settings = GatewaySettings.from_config(config_manager)
    container.register_singleton(GatewaySettings, settings)

    transport = RateLimitedTransport(
        wiring.get("transport"),
        max_concurrent=settings.max_concurrent,
        min_time=settings.min_time,
        reservoir=settings.reservoir,
        reservoir_refresh_amount=settings.reservoir_refresh_amount,
        reservoir_refresh_interval=settings.reservoir_refresh_interval,
    )
    container.register_singleton(RateLimitedTransport, transport)

    client = OpenRouterClient(
        api_key=settings.api_key,
        base_url=settings.base_url,
        timeout=settings.timeout,
        transport=transport,
        referer=settings.referer,
        title=settings.title,
    )
    container.register_singleton(ICompletionGateway, client)

    catalog = ModelCatalog(client, ttl_seconds=settings.catalog_ttl)
    client.attach_catalog(catalog.get_model)
    container.register_singleton(IModelCatalog, catalog)

    def _optional_path(wiring_key: str, config_key: str) -> Optional[Path]:
        value = wiring.get(wiring_key) or config_manager.get(config_key)
        return Path(value) if value else None

    container.register_singleton(
        IPromptsManager,
        PromptsManager(
            prompts_file=_optional_path("prompts_file", "prompts.templates_file"),
            judge_config_file=_optional_path("judge_config_file", "prompts.judge_config_file"),
        ),
    )
    container.register_singleton(ITimeService, TimeService())
    container.register_singleton(IFileSystemService, FileSystemService())

    LOGGER.debug("Container ready for %s", settings.base_url)
    return container


__all__ = ["ServiceContainer", "create_container"]
