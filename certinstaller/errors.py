class CertInstallerError(Exception):
    """Base class for every error raised by certinstaller."""


class ConfigurationError(CertInstallerError):
    """The configuration document is invalid. Raised before any network I/O."""


class CredentialLoadError(CertInstallerError):
    """A certificate, key or password file could not be read or parsed."""

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class VerificationError(CertInstallerError):
    """A certificate pair failed local pre-flight verification."""


class TransportError(CertInstallerError):
    """The connection to the remote could not be established or was lost."""


class AuthenticationError(CertInstallerError):
    """Host key mismatch or rejected client credentials."""


class RemoteScriptError(CertInstallerError):
    """
    The update script on the remote failed.
    exit_status is None when the channel closed without reporting one.
    """

    def __init__(self, message: str, exit_status: int = None):
        super().__init__(message)
        self.exit_status = exit_status


class PreflightError(CertInstallerError):
    """One or more targets failed pre-flight. failures maps target name to error."""

    def __init__(self, failures: dict):
        self.failures = failures
        details = "; ".join(f"{name}: {err}" for name, err in failures.items())
        super().__init__(f"pre-flight failed for {len(failures)} target(s): {details}")


class TargetUpdateError(CertInstallerError):
    def __init__(self, target: str, cause: Exception):
        super().__init__(f"failed to update certificate for \"{target}\": {cause}")
        self.target = target
        self.cause = cause


class BatchUpdateError(CertInstallerError):
    """Raised after a keep-going run where at least one target failed."""

    def __init__(self, failures: dict):
        self.failures = failures
        names = ", ".join(failures)
        super().__init__(f"failed to update {len(failures)} target(s): {names}")
