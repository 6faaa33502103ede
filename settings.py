from __future__ import annotations
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_IP = '127.0.0.1'
DEFAULT_PORT = 8000
DEFAULT_BINARY = 'restic'

# --- Errors ---

class ConfigError(Exception):
    """Base class for configuration failures. Always fatal at startup."""

class ConfigNotFound(ConfigError):
    pass

class ConfigParseError(ConfigError):
    pass

# --- Configuration Values ---

@dataclass(frozen=True)
class RepositoryConfig:
    path: str
    password: str

    def __repr__(self) -> str:
        return f"RepositoryConfig(path={self.path!r}, password='***')"

@dataclass(frozen=True)
class ServerConfig:
    ip: str = DEFAULT_IP
    port: int = DEFAULT_PORT

@dataclass(frozen=True)
class ResticConfig:
    binary: str = DEFAULT_BINARY
    timeout: Optional[float] = None

@dataclass(frozen=True)
class NotifyConfig:
    gotify_url: Optional[str] = None
    gotify_token: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.gotify_url and self.gotify_token)

@dataclass(frozen=True)
class Config:
    repository: RepositoryConfig
    server: ServerConfig = ServerConfig()
    restic: ResticConfig = ResticConfig()
    notify: NotifyConfig = NotifyConfig()

# --- Loading ---

def get_config_path() -> Path:
    """Returns the config file location, honouring RESTICAPI_CONFIG and XDG_CONFIG_HOME."""
    override = os.environ.get('RESTICAPI_CONFIG')
    if override:
        return Path(override).expanduser()
    config_home = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
    return Path(config_home) / 'resticapi' / 'config.yml'

def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigParseError(f"'{name}' must be a mapping")
    return value

def _required_str(section: Dict[str, Any], section_name: str, key: str) -> str:
    value = section.get(key)
    if value is None or str(value).strip() == '':
        raise ConfigParseError(f"Missing required setting '{section_name}.{key}'")
    if isinstance(value, (dict, list)):
        raise ConfigParseError(f"'{section_name}.{key}' must be a string")
    return str(value)

def _parse_port(value: Any) -> int:
    # bool is an int subclass, 'port: yes' must not become 1
    if isinstance(value, bool):
        raise ConfigParseError("'server.port' must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigParseError(f"'server.port' must be an integer, got {value!r}") from None
    if isinstance(value, float) and value != port:
        raise ConfigParseError(f"'server.port' must be an integer, got {value!r}")
    if not 1 <= port <= 65535:
        raise ConfigParseError(f"'server.port' out of range: {port}")
    return port

def _parse_timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigParseError("'restic.timeout' must be a number of seconds")
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ConfigParseError(f"'restic.timeout' must be a number of seconds, got {value!r}") from None
    if timeout <= 0:
        raise ConfigParseError("'restic.timeout' must be positive")
    return timeout

def parse_config(raw: Any) -> Config:
    """Builds a Config from an already decoded YAML document."""
    if not isinstance(raw, dict):
        raise ConfigParseError("Configuration must be a mapping with a 'repository' section")

    repo = _section(raw, 'repository')
    server = _section(raw, 'server')
    restic = _section(raw, 'restic')
    notify = _section(raw, 'notify')

    return Config(
        repository=RepositoryConfig(
            path=_required_str(repo, 'repository', 'path'),
            password=_required_str(repo, 'repository', 'password'),
        ),
        server=ServerConfig(
            ip=str(server.get('ip') or DEFAULT_IP),
            port=_parse_port(server.get('port', DEFAULT_PORT)),
        ),
        restic=ResticConfig(
            binary=str(restic.get('binary') or DEFAULT_BINARY),
            timeout=_parse_timeout(restic.get('timeout')),
        ),
        notify=NotifyConfig(
            gotify_url=notify.get('gotify_url') or os.environ.get('GOTIFY_URL') or None,
            gotify_token=notify.get('gotify_token') or os.environ.get('GOTIFY_TOKEN') or None,
        ),
    )

def load_config(path: Optional[Path] = None) -> Config:
    """Reads and validates the configuration file. Raises ConfigNotFound or ConfigParseError."""
    config_path = Path(path) if path is not None else get_config_path()
    if not config_path.is_file():
        raise ConfigNotFound(f"Configuration file not found at {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigNotFound(f"Could not read configuration file {config_path}: {e}") from e

    return parse_config(raw)
