import os
import logging
from dataclasses import dataclass

import yaml

from .certificates import load_certificate_pair
from .errors import ConfigurationError
from .megarac_handler import MegaracHandler
from .pfsense_handler import PfSenseHandler

# config section -> handler class; the handler's config_class parses each entry
HANDLERS = {
    'pfsense': PfSenseHandler,
    'megarac-bmc': MegaracHandler,
}

CERTS_SECTION = "certs"


@dataclass(frozen=True)
class Config:
    """Fully loaded configuration: the certificate pool and every resolved remote."""
    certificates: dict
    remotes: dict

    def handlers(self) -> list:
        return [
            HANDLERS[remote_type](name, config)
            for name, (remote_type, config) in self.remotes.items()
        ]


class ConfigManager:
    def __init__(self, config_path: str):
        self.config_path = os.path.abspath(config_path)
        self.base_dir = os.path.dirname(self.config_path)
        self.logger = logging.getLogger("CertInstaller.ConfigManager")

    def load_config(self) -> Config:
        """
        Loads and validates the whole configuration.

        Every certificate file and SSH key is read and every target validated here,
        so a bad entry anywhere fails the run before any remote is contacted.
        """
        raw = self.read_document()

        certificates = self.load_certificates(raw.get(CERTS_SECTION))

        remotes = {}
        for section, entries in raw.items():
            if section == CERTS_SECTION:
                continue
            handler_cls = HANDLERS.get(section)
            if handler_cls is None:
                self.logger.warning(f"Ignoring unknown config section '{section}'")
                continue
            for name, (remote_type, config) in self.load_remotes(handler_cls, entries).items():
                try:
                    resolved = config.resolve_certificate(certificates)
                except ConfigurationError as e:
                    raise ConfigurationError(f"{e} in remote config `{name}`") from e
                remotes[name] = (remote_type, resolved)

        self.logger.info(f"Loaded {len(certificates)} certificate(s) and {len(remotes)} remote(s)")
        return Config(certificates=certificates, remotes=remotes)

    def read_document(self) -> dict:
        self.logger.debug(f"Loading config file {self.config_path}")
        if not os.path.exists(self.config_path):
            raise ConfigurationError(f"{self.config_path}: file not found")

        try:
            with open(self.config_path, 'r') as file:
                raw = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{self.config_path}: invalid YAML ({e})") from e
        except OSError as e:
            raise ConfigurationError(f"{self.config_path}: {e.strerror or e}") from e

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{self.config_path}: expected a mapping at the top level")
        return raw

    def load_certificates(self, section) -> dict:
        """Builds the global pool. Each pair is loaded once and shared by every target naming it."""
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"section `{CERTS_SECTION}` must be a mapping of names to certificate pairs")

        pool = {}
        for name, raw_pair in section.items():
            pool[str(name)] = load_certificate_pair(raw_pair, self.base_dir, f"certificate `{name}`")
            self.logger.debug(f"Loaded global certificate '{name}': {pool[str(name)]!r}")
        return pool

    def load_remotes(self, handler_cls, entries) -> dict:
        remote_type = handler_cls.remote_type
        if entries is None:
            return {}
        if not isinstance(entries, dict):
            raise ConfigurationError(f"section `{remote_type}` must be a mapping of names to remotes")

        remotes = {}
        for name, raw in entries.items():
            qualified = f"{remote_type}.{name}"
            try:
                config = handler_cls.config_class.parse(raw, self.base_dir)
            except ConfigurationError as e:
                raise ConfigurationError(f"{e} in remote config `{qualified}`") from e
            remotes[qualified] = (remote_type, config)
        return remotes
