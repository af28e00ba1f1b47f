"""Thread-safe prompt template management."""

import json
import threading
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, cast

import yaml

from ..exceptions import ConfigurationError
from ..services import IPromptsManager

PACKAGE = "model_kombat"


def _load_yaml_mapping(path: Optional[Path], resource_name: str) -> Dict[str, Any]:
    """Load a YAML mapping from ``path``, or from the packaged resource when not given."""
    if path is not None:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    else:
        resource = resources.files(PACKAGE) / resource_name
        with resource.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)

    if not isinstance(data, dict):
        raise ConfigurationError(f"{resource_name} must contain a mapping", context={"path": str(path or "")})
    return cast(Dict[str, Any], data)


class PromptsManager(IPromptsManager):
    """Prompt templates and judge rubric, loaded lazily and cached."""

    def __init__(self, prompts_file: Optional[Path] = None, judge_config_file: Optional[Path] = None):
        self._lock = threading.RLock()
        self._prompts_file = prompts_file
        self._judge_config_file = judge_config_file
        self._prompts_cache: Optional[Dict[str, Any]] = None
        self._judge_cache: Optional[Dict[str, Any]] = None

    def _load_prompts(self) -> Dict[str, Any]:
        with self._lock:
            if self._prompts_cache is None:
                self._prompts_cache = _load_yaml_mapping(self._prompts_file, "prompts.yaml")
            return self._prompts_cache

    def get_section(self, name: str) -> Dict[str, Any]:
        """Return one prompt section such as ``critique`` or ``refine``."""
        section = self._load_prompts().get(name)
        if not isinstance(section, dict):
            raise ConfigurationError(f"Prompt section '{name}' is missing", context={"section": name})
        return cast(Dict[str, Any], section)

    def get_template(self, name: str) -> str:
        """Return a template by dotted name, e.g. ``critique.user``."""
        section_name, _, key = name.partition(".")
        section = self.get_section(section_name)
        value = section.get(key or "user")
        if not isinstance(value, str):
            raise ConfigurationError(f"Prompt template '{name}' is missing", context={"template": name})
        return value

    def render(self, name: str, **values: Any) -> str:
        template = self.get_template(name)
        try:
            return template.format(**values)
        except KeyError as exc:
            raise ConfigurationError(
                f"Prompt template '{name}' needs a value for {exc}", context={"template": name}
            ) from exc

    def get_setting(self, section: str, key: str, default: Any = None) -> Any:
        """Return a generation setting (``max_tokens``, ``temperature``, ...) for a section."""
        return self.get_section(section).get(key, default)

    def get_judge_config(self) -> Dict[str, Any]:
        with self._lock:
            if self._judge_cache is None:
                self._judge_cache = _load_yaml_mapping(self._judge_config_file, "judge_config.yaml")
            return self._judge_cache

    def render_judge_instructions(self, weights: Mapping[str, int]) -> str:
        """Render the rubric instructions with the schema appended as JSON."""
        config = self.get_judge_config()
        instructions = config.get("instructions")
        schema = config.get("schema")
        if not isinstance(instructions, str) or not isinstance(schema, dict):
            raise ConfigurationError("judge_config.yaml needs 'instructions' and 'schema'")
        rendered = instructions.format(**weights)
        return f"{rendered}\n\n{json.dumps(schema, ensure_ascii=False)}"

    def reload(self) -> None:
        """Drop cached templates so they are read again on next access."""
        with self._lock:
            self._prompts_cache = None
            self._judge_cache = None


__all__ = ["PromptsManager"]
