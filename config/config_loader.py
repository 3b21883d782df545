import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / 'config.yaml'

# ${NAME} or ${NAME:default}
_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(.*))?\}$')


def resolve_placeholders(node: Any) -> Any:
    """Substitute environment placeholders throughout a parsed YAML tree.

    Unset variables without a default keep the literal placeholder so callers
    can tell "not configured" apart from an empty value.
    """
    if isinstance(node, dict):
        return {key: resolve_placeholders(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_placeholders(item) for item in node]
    if isinstance(node, str):
        match = _ENV_PATTERN.match(node)
        if match:
            name, default = match.groups()
            return os.getenv(name, node if default is None else default)
    return node


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view over one config section, with attribute access to keys."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Top-level settings loaded from YAML.

    The path comes from the argument, then ``TRENDRIDER_CONFIG``, then the
    bundled ``config.yaml``.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('TRENDRIDER_CONFIG') or DEFAULT_CONFIG_PATH)
        super().__init__(self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return resolve_placeholders(raw)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
