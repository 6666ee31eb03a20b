"""Configuration loader for sync option files and environment variables."""

import os
import json
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union

from .schema import SyncOptions
from .settings import AppSettings, get_settings
from ..utils.logging import get_logger


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


# Environment variables that override file-provided options
ENV_OVERRIDES = {
    "FOLDERSYNC_ROOT_PATH": "root_path",
    "FOLDERSYNC_CONFLICT_POLICY": "conflict_policy",
    "FOLDERSYNC_ALLOWED_EXTENSIONS": "allowed_extensions",
    "FOLDERSYNC_SYNC_FREQUENCY": "sync_frequency",
    "FOLDERSYNC_AUTO_SYNC": "auto_sync",
}


class ConfigLoader:
    """Loads and validates sync options from various sources."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path], base: Optional[SyncOptions] = None) -> SyncOptions:
        """Load sync options from a JSON or YAML file.

        Args:
            file_path: Path to the options file
            base: Options the file values are layered onto

        Returns:
            Validated SyncOptions object

        Raises:
            ConfigurationError: If the file cannot be loaded or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading sync options from file", file_path=str(file_path))

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if file_path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f) or {}
                elif file_path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {file_path}")

        return self.load_from_dict(data, base=base)

    def load_from_dict(self, data: Dict[str, Any], base: Optional[SyncOptions] = None) -> SyncOptions:
        """Load sync options from a dictionary.

        Args:
            data: Option values
            base: Options the values are layered onto

        Returns:
            Validated SyncOptions object
        """
        data = self._apply_env_overrides(dict(data))

        try:
            options = (base or SyncOptions()).merged(data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid sync options: {e}")

        self.logger.info(
            "Sync options loaded",
            root_path=options.root_path,
            conflict_policy=options.conflict_policy.value,
            allowed_extensions=options.allowed_extensions
        )

        return options

    def save_to_file(self, options: SyncOptions, file_path: Union[str, Path], format: str = 'yaml'):
        """Save sync options to a file.

        Args:
            options: Options to save
            file_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        data = options.model_dump(mode="json")

        with open(file_path, 'w', encoding='utf-8') as f:
            if format.lower() == 'yaml':
                yaml.safe_dump(data, f, default_flow_style=False, indent=2, allow_unicode=True)
            elif format.lower() == 'json':
                json.dump(data, f, indent=2)
            else:
                raise ConfigurationError(f"Unsupported format: {format}")

        self.logger.info("Sync options saved", file_path=str(file_path))

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply FOLDERSYNC_* environment variable overrides."""
        overrides = {}

        for env_name, key in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value is None:
                continue
            if key == "auto_sync":
                overrides[key] = value.lower() in ['true', '1', 'yes']
            else:
                overrides[key] = value

        if overrides:
            self.logger.info("Applied environment variable overrides", overrides=list(overrides.keys()))
            data = {**data, **overrides}

        return data


def load_sync_options(settings: Optional[AppSettings] = None) -> SyncOptions:
    """Build sync options from settings, layering the options file if one is configured."""
    settings = settings or get_settings()
    loader = ConfigLoader()
    base = SyncOptions.from_settings(settings.sync)

    if settings.sync.options_file:
        return loader.load_from_file(settings.sync.options_file, base=base)

    return loader.load_from_dict({}, base=base)
