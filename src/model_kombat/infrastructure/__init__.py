"""Infrastructure implementations."""

from .api_client import OPENROUTER_BASE_URL, OpenRouterClient, create_multimodal_message, format_base64_image
from .config_manager import ConfigurationManager, GatewaySettings
from .model_catalog import ModelCatalog, parse_model
from .prompts_manager import PromptsManager
from .streaming import StreamingDecoder
from .transport import RateLimitedTransport
from .utility_services import FileSystemService, ResponseParser, TimeService

__all__ = [
    "OPENROUTER_BASE_URL",
    "OpenRouterClient",
    "create_multimodal_message",
    "format_base64_image",
    "ConfigurationManager",
    "GatewaySettings",
    "ModelCatalog",
    "parse_model",
    "PromptsManager",
    "StreamingDecoder",
    "RateLimitedTransport",
    "FileSystemService",
    "ResponseParser",
    "TimeService",
]
