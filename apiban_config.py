"""
APIBAN client configuration store.

Loads the persistent JSON document holding the API key, the last known
feed ID (LKID), the flush timestamp and the target set, normalizes it and
writes it back after a successful run.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from apiban_errors import ConfigInvalid, ConfigMalformed, ConfigMissing, ConfigPersistError

CLIENT_VERSION = 'nft1.0'
START_CURSOR = '100'
PLACEHOLDER_API_KEY = 'MY API KEY'
DEFAULT_SET_NAME = 'apiban'

# Static search locations, tried after the explicit path and the user config dir
STATIC_CONFIG_LOCATIONS = [
    '/etc/apiban/config.json',
    'config.json',
    '/usr/local/bin/apiban/config.json',
]

logger = logging.getLogger(__name__)


def user_config_dir() -> Optional[str]:
    """Return the per-user configuration directory, or None if it cannot be resolved."""
    xdg = os.environ.get('XDG_CONFIG_HOME', '')
    if xdg and os.path.isabs(xdg):
        return xdg
    home = os.environ.get('HOME', '')
    if home:
        return os.path.join(home, '.config')
    return None


def config_search_paths(explicit_path: Optional[str] = None) -> List[str]:
    """Build the ordered list of locations a configuration file is looked up in."""
    locations = []
    if explicit_path:
        locations.append(explicit_path)

    config_dir = user_config_dir()
    if config_dir:
        locations.append(os.path.join(config_dir, 'apiban', 'config.json'))

    locations.extend(STATIC_CONFIG_LOCATIONS)
    return locations


@dataclass
class ApibanConfig:
    """The persistent client state, mirrored one to one in the JSON document."""

    api_key: str
    cursor: str = START_CURSOR
    version: str = CLIENT_VERSION
    flush_epoch: str = ''
    dataset: str = ''
    set_name: str = DEFAULT_SET_NAME
    source_path: Optional[str] = field(default=None, compare=False)

    # attribute -> JSON key, in the order keys are written
    KEYS = {
        'api_key': 'apikey',
        'cursor': 'lkid',
        'version': 'version',
        'flush_epoch': 'flush',
        'dataset': 'dataset',
        'set_name': 'setname',
    }

    @classmethod
    def from_document(cls, document: object, source_path: Optional[str] = None) -> 'ApibanConfig':
        """Build a config from a decoded JSON document without normalizing it."""
        if not isinstance(document, dict):
            raise ConfigMalformed(f"Configuration in {source_path} is not a JSON object")

        values: Dict[str, str] = {}
        for attr, key in cls.KEYS.items():
            value = document.get(key)
            if value is None:
                value = ''
            if not isinstance(value, str):
                raise ConfigMalformed(
                    f"Configuration key '{key}' in {source_path} must be a string, "
                    f"got {type(value).__name__}"
                )
            values[attr] = value

        return cls(source_path=source_path, **values)

    def to_document(self) -> Dict[str, str]:
        """Return the JSON document for this config. Unknown keys are not kept."""
        return {key: getattr(self, attr) for attr, key in self.KEYS.items()}

    def normalize(self, now: Union[int, float]) -> None:
        """
        Apply load-time normalization and validation.

        Raises:
            ConfigInvalid: If the API key is missing or still the placeholder
        """
        self.version = CLIENT_VERSION

        if not self.api_key or self.api_key == PLACEHOLDER_API_KEY:
            logger.error(f'"{self.api_key}" is not a valid APIBAN key. '
                         'Please go to apiban.org and get a valid API key.')
            raise ConfigInvalid("Invalid APIKEY in configuration")

        if not self.cursor:
            logger.info("Resetting LKID")
            self.cursor = START_CURSOR

        if not self.flush_epoch:
            logger.info("Resetting FLUSH")
            self.flush_epoch = str(int(now))

        if not self.set_name:
            logger.info(f"No setname configured, using '{DEFAULT_SET_NAME}'")
            self.set_name = DEFAULT_SET_NAME

    @property
    def flush_time(self) -> int:
        """The flush timestamp as Unix seconds. Unparsable values count as 0."""
        try:
            return int(self.flush_epoch)
        except ValueError:
            logger.warning(f"Invalid flush timestamp '{self.flush_epoch}', treating it as 0")
            return 0

    @classmethod
    def load(cls, now: Union[int, float], path: Optional[str] = None) -> 'ApibanConfig':
        """
        Locate, parse and normalize the configuration file.

        The first location that can be opened wins. A file that opens but does
        not parse ends the search immediately.

        Args:
            now: Current Unix time, used to initialize an empty flush timestamp
            path: Optional explicit path, tried before the standard locations

        Raises:
            ConfigMissing: If no location could be opened
            ConfigMalformed: If the first readable file is not a valid document
            ConfigInvalid: If the API key is unusable
        """
        for location in config_search_paths(path):
            try:
                with open(location, 'r') as f:
                    try:
                        document = json.load(f)
                    except (json.JSONDecodeError, UnicodeDecodeError) as e:
                        raise ConfigMalformed(
                            f"Failed to read configuration from {location}: {e}"
                        ) from e
            except OSError as e:
                logger.debug(f"Could not open config file {location}: {e}")
                continue

            logger.info(f"Using configuration file {location}")
            config = cls.from_document(document, source_path=location)
            config.normalize(now)
            return config

        raise ConfigMissing("Failed to locate configuration file")

    def persist(self) -> None:
        """
        Rewrite the configuration file the document was loaded from.

        Raises:
            ConfigPersistError: If there is no source path or the write fails
        """
        if not self.source_path:
            raise ConfigPersistError("Configuration has no source file to write to")

        try:
            with open(self.source_path, 'w') as f:
                json.dump(self.to_document(), f, indent=2)
                f.write('\n')
            logger.debug(f"Saved configuration to {self.source_path}")
        except OSError as e:
            raise ConfigPersistError(
                f"Failed to open configuration file {self.source_path} for writing: {e}"
            ) from e
