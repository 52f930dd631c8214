"""
Configuration loading for dxlistener.

Configuration is a JSON file, found via $DXLISTENER_CONFIG or at
./config/config.json. It holds either a single cluster:

    {"host": "dxc.example.org", "port": 7300, "login_identity": "N0CALL"}

or a list of clusters plus runner settings:

    {
        "clusters": [{"host": "...", "login_identity": "N0CALL"}, ...],
        "log_level": "INFO",
        "output": "json",
        "record_path": "./spots.jsonl"
    }
"""
import os
import json
import logging
from dataclasses import dataclass, field, fields
from typing import List, Optional, Tuple

from dxlistener.providers.base import SpotFormat
from dxlistener.providers.errors import ConfigError
from dxlistener.providers.transport import DEFAULT_LOGIN_PROMPTS
from dxlistener.utils.validators import parse_prompts_string, validate_login_identity

logger = logging.getLogger(__name__)

CONFIG_ENV = "DXLISTENER_CONFIG"
DEFAULT_CONFIG_PATH = "./config/config.json"

OUTPUT_FORMATS = ('json', 'text')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass
class ClusterConfig:
    """Settings for one cluster session."""
    host: str
    login_identity: str
    port: int = 7300
    stall_timeout: float = 300.0  # Seconds of silence before the connection counts as dead
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    channel_capacity: int = 1000
    connect_timeout: float = 10.0
    login_grace: float = 5.0  # Seconds to wait for a login prompt
    login_prompts: Tuple[str, ...] = DEFAULT_LOGIN_PROMPTS
    max_connect_attempts: Optional[int] = None  # None retries forever
    server_format: Optional[SpotFormat] = None  # None detects it from the banner
    name: Optional[str] = None

    def __post_init__(self):
        if not self.host or not str(self.host).strip():
            raise ConfigError("host is required")
        if not validate_login_identity(self.login_identity):
            raise ConfigError(f"Invalid login_identity: {self.login_identity!r}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.stall_timeout <= 0:
            raise ConfigError("stall_timeout must be positive")
        if self.backoff_initial <= 0:
            raise ConfigError("backoff_initial must be positive")
        if self.backoff_max < self.backoff_initial:
            raise ConfigError("backoff_max must not be smaller than backoff_initial")
        if self.channel_capacity < 1:
            raise ConfigError("channel_capacity must be at least 1")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be positive")
        if self.login_grace < 0:
            raise ConfigError("login_grace must not be negative")
        if self.max_connect_attempts is not None and self.max_connect_attempts < 1:
            raise ConfigError("max_connect_attempts must be at least 1")
        if self.server_format is not None and self.server_format not in SpotFormat.conventional():
            raise ConfigError(f"server_format must be one of {[f.value for f in SpotFormat.conventional()]}")

        self.host = self.host.strip()
        self.login_identity = self.login_identity.strip().upper()
        self.login_prompts = tuple(self.login_prompts)
        if self.name is None:
            self.name = f"{self.login_identity}@{self.host}:{self.port}"

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterConfig':
        """
        Build a cluster config from parsed JSON.

        Args:
            data: Dictionary with the keys of ClusterConfig

        Returns:
            Validated ClusterConfig

        Raises:
            ConfigError: on missing keys or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Cluster config must be an object, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown cluster config keys: {', '.join(unknown)}")

        for key in ('host', 'login_identity'):
            if key not in data:
                raise ConfigError(f"Missing required cluster config key: {key}")

        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            for key in ('port', 'channel_capacity'):
                if key in kwargs:
                    kwargs[key] = int(kwargs[key])
            for key in ('stall_timeout', 'backoff_initial', 'backoff_max', 'connect_timeout', 'login_grace'):
                if key in kwargs:
                    kwargs[key] = float(kwargs[key])
            if kwargs.get('max_connect_attempts') is not None:
                kwargs['max_connect_attempts'] = int(kwargs['max_connect_attempts'])
            if kwargs.get('server_format') is not None:
                kwargs['server_format'] = SpotFormat(str(kwargs['server_format']).lower())
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid cluster config value: {e}") from e

        prompts = kwargs.get('login_prompts')
        if isinstance(prompts, str):
            kwargs['login_prompts'] = tuple(parse_prompts_string(prompts))
        elif prompts is not None:
            kwargs['login_prompts'] = tuple(str(p) for p in prompts if str(p).strip())

        return cls(**kwargs)


@dataclass
class AppConfig:
    """Settings for the command-line runner."""
    clusters: List[ClusterConfig] = field(default_factory=list)
    log_level: str = "INFO"
    output: str = "json"
    record_path: Optional[str] = None

    def __post_init__(self):
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Invalid log_level: {self.log_level}")
        if self.output not in OUTPUT_FORMATS:
            raise ConfigError(f"Invalid output: {self.output} (expected one of {', '.join(OUTPUT_FORMATS)})")


def parse_config(data: dict) -> AppConfig:
    """
    Build the runner config from parsed JSON.

    Args:
        data: Either a single cluster object or an object with a "clusters" list

    Returns:
        AppConfig
    """
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a JSON object")

    if 'clusters' in data:
        raw_clusters = data['clusters']
        if not isinstance(raw_clusters, list):
            raise ConfigError("clusters must be a list")
        clusters = [ClusterConfig.from_dict(c) for c in raw_clusters]
    else:
        clusters = [ClusterConfig.from_dict(data)]

    names = [c.name for c in clusters]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate cluster names: {names}")

    return AppConfig(
        clusters=clusters,
        log_level=str(data.get('log_level', 'INFO')),
        output=str(data.get('output', 'json')),
        record_path=data.get('record_path'),
    )


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from a JSON file.

    Args:
        path: Config file path (default: $DXLISTENER_CONFIG or ./config/config.json)

    Returns:
        AppConfig

    Raises:
        ConfigError: if the file is missing, not valid JSON, or holds invalid values
    """
    if path is None:
        path = os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH)

    try:
        with open(path, 'r') as f:
            logger.info(f"Loading config from {path}...")
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found at {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    config = parse_config(data)
    logger.info(f"Config loaded ({len(config.clusters)} cluster(s)).")
    return config
