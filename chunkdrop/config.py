"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv

from .errors import ConfigError


@dataclass
class Config:
    """
    chunkdrop configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (CHUNKDROP_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    transfer_port: int = 8470
    api_port: int = 8080
    connect_timeout: float = 10.0

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./chunkdrop_data'))

    # Transfer
    chunk_size: int = 16384  # 16KB, fits common data channel message limits
    max_concurrent_chunks: int = 5
    max_chunk_retries: int = 3
    retry_backoff: float = 0.5

    # Watchdog (seconds)
    monitor_interval: float = 5.0
    stall_threshold: float = 10.0

    # Retention
    chat_history_limit: int = 200
    debug_log_limit: int = 500

    # Logging
    log_level: str = 'INFO'

    def validate(self) -> 'Config':
        """Reject values the transfer engine cannot run with."""
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_concurrent_chunks < 1:
            raise ConfigError(
                f"max_concurrent_chunks must be at least 1, got {self.max_concurrent_chunks}"
            )
        if self.max_chunk_retries < 0:
            raise ConfigError(f"max_chunk_retries cannot be negative, got {self.max_chunk_retries}")
        if self.monitor_interval <= 0 or self.stall_threshold <= 0:
            raise ConfigError("monitor_interval and stall_threshold must be positive")
        return self

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('CHUNKDROP_HOST', config.host)
        config.transfer_port = int(os.getenv('CHUNKDROP_TRANSFER_PORT', config.transfer_port))
        config.api_port = int(os.getenv('CHUNKDROP_API_PORT', config.api_port))

        # Storage
        data_dir = os.getenv('CHUNKDROP_DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)

        # Transfer
        config.chunk_size = int(os.getenv('CHUNKDROP_CHUNK_SIZE', config.chunk_size))
        config.max_concurrent_chunks = int(
            os.getenv('CHUNKDROP_MAX_CONCURRENT', config.max_concurrent_chunks)
        )
        config.max_chunk_retries = int(
            os.getenv('CHUNKDROP_MAX_RETRIES', config.max_chunk_retries)
        )

        # Watchdog
        config.stall_threshold = float(
            os.getenv('CHUNKDROP_STALL_THRESHOLD', config.stall_threshold)
        )

        # Logging
        config.log_level = os.getenv('CHUNKDROP_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.transfer_port = data.get('transfer_port', config.transfer_port)
        config.api_port = data.get('api_port', config.api_port)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.max_concurrent_chunks = data.get(
            'max_concurrent_chunks', config.max_concurrent_chunks
        )
        config.max_chunk_retries = data.get('max_chunk_retries', config.max_chunk_retries)
        config.retry_backoff = data.get('retry_backoff', config.retry_backoff)

        # Watchdog
        config.monitor_interval = data.get('monitor_interval', config.monitor_interval)
        config.stall_threshold = data.get('stall_threshold', config.stall_threshold)

        # Retention
        config.chat_history_limit = data.get('chat_history_limit', config.chat_history_limit)
        config.debug_log_limit = data.get('debug_log_limit', config.debug_log_limit)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'transfer_port': self.transfer_port,
            'api_port': self.api_port,
            'connect_timeout': self.connect_timeout,
            'data_dir': str(self.data_dir),
            'chunk_size': self.chunk_size,
            'max_concurrent_chunks': self.max_concurrent_chunks,
            'max_chunk_retries': self.max_chunk_retries,
            'retry_backoff': self.retry_backoff,
            'monitor_interval': self.monitor_interval,
            'stall_threshold': self.stall_threshold,
            'chat_history_limit': self.chat_history_limit,
            'debug_log_limit': self.debug_log_limit,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


# Fields that CHUNKDROP_* variables may override
_ENV_KEYS = [
    'host', 'transfer_port', 'api_port', 'data_dir', 'chunk_size',
    'max_concurrent_chunks', 'max_chunk_retries', 'stall_threshold', 'log_level',
]


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in _ENV_KEYS:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config.validate()


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "transfer_port": 8470,
  "api_port": 8080,
  "data_dir": "./chunkdrop_data",
  "chunk_size": 16384,
  "max_concurrent_chunks": 5,
  "max_chunk_retries": 3,
  "retry_backoff": 0.5,
  "monitor_interval": 5.0,
  "stall_threshold": 10.0,
  "log_level": "INFO"
}
"""
