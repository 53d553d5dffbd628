import os
import logging

from .errors import ConfigurationError

CREDENTIALS_PREFIX = "$CREDENTIALS_DIRECTORY"
CREDENTIALS_ENV = "CREDENTIALS_DIRECTORY"

logger = logging.getLogger("CertInstaller.Credentials")


def resolve_credential_path(value, base_dir: str) -> str:
    """
    Resolves a configured path to a filesystem path. No file is opened.

    Paths starting with $CREDENTIALS_DIRECTORY are placed under the directory named
    by that environment variable (as set up by systemd LoadCredential=).
    Other relative paths are relative to base_dir, normally the config file's directory.
    """
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"expected a non-empty path, got {value!r}")

    if value.startswith(CREDENTIALS_PREFIX):
        credentials_dir = os.environ.get(CREDENTIALS_ENV)
        if credentials_dir is None:
            raise ConfigurationError(
                f"{CREDENTIALS_PREFIX} is referenced yet that environment variable isn't set"
            )
        sub = value[len(CREDENTIALS_PREFIX):].lstrip("/" + os.sep)
        path = os.path.join(credentials_dir, sub)
        logger.debug(f"Resolved credential path {value} -> {path}")
        return path

    if os.path.isabs(value):
        return value
    return os.path.join(base_dir, value)
