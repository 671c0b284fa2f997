"""
Settings for the fetcher, codec and logging: sampleweb/config.yaml first,
then environment variables on top.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key)
ENV_MAPPINGS = {
    'FETCHER_USER_AGENT': ('fetcher', 'user_agent'),
    'FETCHER_TIMEOUT': ('fetcher', 'timeout'),
    'FETCHER_MAX_REDIRECTS': ('fetcher', 'max_redirects'),
    'FETCHER_FOLLOW_REDIRECTS': ('fetcher', 'follow_redirects'),
    'FETCHER_MAX_RESPONSE_SIZE': ('fetcher', 'max_response_size'),
    'CODEC_SORT_KEYS': ('codec', 'sort_keys'),
    'CODEC_INDENT': ('codec', 'indent'),
    'LOG_LEVEL': ('logging', 'level'),
    'LOG_FORMAT': ('logging', 'format'),
}


def parse_env_value(raw: str) -> Any:
    """'true'/'false' become bools, numeric strings become int or float."""
    if raw.lower() in ('true', 'false'):
        return raw.lower() == 'true'
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def read_yaml(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    try:
        settings = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file: {e}") from e
    if not isinstance(settings, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return settings


class Config:
    def __init__(self, config_path: Optional[Union[str, Path]] = None, environ: Optional[Mapping[str, str]] = None):
        self.config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
        self._settings = read_yaml(self.config_path)
        self._override(os.environ if environ is None else environ)

    def _override(self, environ: Mapping[str, str]):
        for name, (section, key) in ENV_MAPPINGS.items():
            if name not in environ:
                continue
            if not isinstance(self._settings.get(section), dict):
                self._settings[section] = {}
            self._settings[section][key] = parse_env_value(environ[name])

    def get(self, *keys, default=None):
        """Nested lookup, e.g. ``get('fetcher', 'timeout')``; ``default`` on any miss."""
        node: Any = self._settings
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    @property
    def fetcher(self) -> Dict[str, Any]:
        return self.get('fetcher', default={})

    @property
    def codec(self) -> Dict[str, Any]:
        return self.get('codec', default={})

    @property
    def logging(self) -> Dict[str, Any]:
        return self.get('logging', default={})

    @property
    def demo(self) -> Dict[str, Any]:
        return self.get('demo', default={})
