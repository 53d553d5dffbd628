from abc import ABC, abstractmethod
import dataclasses
import logging

from .certificates import CertificatePair
from .errors import ConfigurationError


class RemoteConfig:
    """
    Mixin for the frozen per-type target configs.

    A config is parsed with its `certificate` field holding a CertificateRef and
    becomes usable once resolve_certificate() swaps in the shared CertificatePair.
    """

    def resolve_certificate(self, pool: dict):
        try:
            certificate = self.certificate.resolve(pool)
        except ConfigurationError as e:
            raise ConfigurationError(f"{e} for key `certificate`") from e
        return dataclasses.replace(self, certificate=certificate)


class CertificateHandler(ABC):
    """
    Installs a certificate pair on one remote. One handler per configured target,
    built from that target's resolved configuration.
    """
    remote_type = None
    config_class = None

    def __init__(self, name: str, config):
        self.name = name
        self.config = config
        self.logger = logging.getLogger(f"CertInstaller.{name}")

    @property
    def certificate(self) -> CertificatePair:
        return self.config.certificate

    def check(self) -> None:
        """
        Local, network-free readiness check run before any remote is touched.
        Raises ConfigurationError when this target can't be updated.
        """

    @abstractmethod
    def update(self) -> None:
        """
        Installs self.certificate on the remote.

        Raises:
            TransportError: the remote could not be reached.
            AuthenticationError: the remote (or we) failed authentication.
            RemoteScriptError: the remote rejected or failed the update.
        """
