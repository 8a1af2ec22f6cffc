from typing import Dict, Any
import json
import os

class ProxyConfig:
    """Configuration manager for the tunnelling proxy."""

    def __init__(self, config_path: str = None):
        """
        Initialize configuration with optional config file path.

        Args:
            config_path: Path to JSON configuration file
        """
        self.config_path = config_path
        self.config = self._load_default_config()

        if config_path:
            if not os.path.exists(config_path):
                raise ValueError(f"Config file not found: {config_path}")
            self._load_config_file()
        self._validate()

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "0.0.0.0",
            "port": 3000,
            "buffer_size": 1024,
            "max_request_size": 65536,
            "relay_buffer_size": 16384,
            "max_connections": None,
            "backlog": 128,
            "connect_timeout": None
        }

    def _load_config_file(self) -> None:
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ValueError(f"Error loading config file: {e}")
        if not isinstance(file_config, dict):
            raise ValueError("Error loading config file: top level must be an object")
        self.config.update(file_config)

    def _validate(self) -> None:
        port = self.config["port"]
        if not isinstance(port, int) or not 0 <= port <= 65535:
            raise ValueError(f"Invalid port: {port!r}")
        for key in ("buffer_size", "max_request_size", "relay_buffer_size", "backlog"):
            value = self.config[key]
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"Invalid {key}: {value!r}")
        limit = self.config["max_connections"]
        if limit is not None and (not isinstance(limit, int) or limit <= 0):
            raise ValueError(f"Invalid max_connections: {limit!r}")
        timeout = self.config["connect_timeout"]
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ValueError(f"Invalid connect_timeout: {timeout!r}")

    def update(self, overrides: Dict[str, Any]) -> None:
        """
        Apply overrides, skipping keys whose value is None.

        Args:
            overrides: Mapping of configuration keys to new values
        """
        self.config.update({k: v for k, v in overrides.items() if v is not None})
        self._validate()

    def get(self, key: str) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key

        Returns:
            Configuration value
        """
        return self.config.get(key)
