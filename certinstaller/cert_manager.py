import logging

from .cert_validator import CertValidator
from .config_manager import Config, ConfigManager
from .errors import (
    BatchUpdateError,
    CertInstallerError,
    PreflightError,
    TargetUpdateError,
)


class CertManager:
    """
    Deploys every configured certificate: pre-flight for all targets first,
    then one update at a time in config order.
    """

    def __init__(self, config: Config, keep_going: bool = False, validator: CertValidator = None):
        self.config = config
        self.keep_going = keep_going
        self.validator = validator or CertValidator()
        self.logger = logging.getLogger("CertInstaller.Manager")
        self.handlers = config.handlers()

    @classmethod
    def from_config_file(cls, config_path: str, **kwargs) -> "CertManager":
        return cls(ConfigManager(config_path).load_config(), **kwargs)

    def preflight(self) -> None:
        """
        Checks every target locally. Raises PreflightError listing all failures,
        so a single bad certificate stops the whole run before anything is changed.
        """
        failures = {}
        for handler in self.handlers:
            try:
                handler.check()
                self.validator.precheck(handler.certificate)
            except CertInstallerError as e:
                self.logger.error(f"Pre-flight failed for {handler.name}: {e}")
                failures[handler.name] = e

        if failures:
            raise PreflightError(failures)
        self.logger.info(f"Pre-flight passed for {len(self.handlers)} target(s)")

    def run(self) -> list:
        """Runs pre-flight then every update. Returns the names of the updated targets."""
        self.preflight()

        self.logger.info("Updating certificates")
        updated = []
        failures = {}
        for handler in self.handlers:
            try:
                handler.update()
            except CertInstallerError as e:
                self.logger.error(f"Failed to update certificate for {handler.name}: {e}")
                if not self.keep_going:
                    raise TargetUpdateError(handler.name, e) from e
                failures[handler.name] = e
                continue

            self.logger.info(f"Successfully updated certificate on {handler.name}")
            updated.append(handler.name)

        if failures:
            raise BatchUpdateError(failures)

        self.logger.info(f"Batch complete. Updated: {len(updated)}")
        return updated
