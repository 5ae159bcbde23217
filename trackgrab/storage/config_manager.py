"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from trackgrab.exceptions import ConfigurationError
from trackgrab.models.config import AppConfig

log = logging.getLogger(__name__)

# Environment variables understood on top of the INI file
ENV_OVERRIDES = {
    "SPOTIFY_CLIENT_ID": "spotify_client_id",
    "SPOTIFY_CLIENT_SECRET": "spotify_client_secret",
    "COOKIES_URL": "cookies_url",
    "GITHUB_TOKEN": "github_token",
    "PORT": "port",
    "TRACKGRAB_WORK_DIR": "work_dir",
    "TRACKGRAB_TOOLS_DIR": "tools_dir",
}

SENSITIVE_KEYS = ("spotify_client_secret", "github_token")


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path, environ: Mapping[str, str] | None = None):
        self.config_file_path = config_file_path
        self.environ = os.environ if environ is None else environ
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> AppConfig:
        """
        Loads configuration from the INI file, the environment and CLI
        overrides (in increasing priority) and validates it.

        A missing INI file is fine as long as the environment provides the
        required settings.

        Raises:
            ConfigurationError: If the file is invalid or validation fails.
        """
        settings: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(f"Error parsing configuration file: {e}") from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            settings.update(self._get_config_as_dict())
        else:
            log.debug(f"No configuration file at '{self.config_file_path}'.")

        settings.update(self._get_env_overrides())
        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return AppConfig(**settings, config_path=str(self.config_file_path.parent))
        except ValidationError as e:
            hint = (
                ""
                if self.config_file_path.is_file()
                else " Run 'trackgrab init' or set SPOTIFY_CLIENT_ID/SPOTIFY_CLIENT_SECRET."
            )
            raise ConfigurationError(f"Configuration validation failed:\n{e}{hint}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: A dictionary of settings to save.
        """
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}
        defaults = AppConfig.model_construct()

        for key in sorted(AppConfig.get_ini_keys()):
            value = settings.get(key, getattr(defaults, key, None))
            config["DEFAULT"][key] = self._to_ini(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def read_raw(self) -> dict[str, Any]:
        """Returns the INI values as strings, for display."""
        if not self.config_file_path.is_file():
            return {}
        self._parser.read(self.config_file_path, encoding="utf-8")
        return dict(self._parser["DEFAULT"])

    @staticmethod
    def _to_ini(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return ""
        return str(value)

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        values: dict[str, Any] = {}
        for key, field_info in AppConfig.model_fields.items():
            if key not in section or key == "config_path":
                continue
            annotation = field_info.annotation
            try:
                if annotation is bool:
                    values[key] = section.getboolean(key)
                elif annotation is int:
                    values[key] = section.getint(key)
                elif annotation is float:
                    values[key] = section.getfloat(key)
                else:
                    values[key] = section.get(key, "")
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for '{key}': {e}") from e
        return values

    def _get_env_overrides(self) -> dict[str, str]:
        return {
            field_name: self.environ[env_name]
            for env_name, field_name in ENV_OVERRIDES.items()
            if self.environ.get(env_name)
        }

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = AppConfig.model_construct()
        section = self._parser["DEFAULT"]
        needs_saving = False

        for key in sorted(AppConfig.get_ini_keys()):
            if key not in section:
                section[key] = self._to_ini(getattr(defaults, key, None))
                needs_saving = True
                log.debug(f"Migrating config: added missing key '{key}'.")

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
