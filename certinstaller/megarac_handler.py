from dataclasses import dataclass
from urllib.parse import urlsplit

from .base_handler import CertificateHandler, RemoteConfig
from .certificates import CertificateRef
from .credentials import resolve_credential_path
from .errors import ConfigurationError

NOT_IMPLEMENTED = "certificate upload to MegaRAC BMCs is not implemented"


@dataclass(frozen=True)
class MegaracConfig(RemoteConfig):
    certificate: object
    url: str
    password_path: str = None

    @classmethod
    def parse(cls, raw, base_dir: str) -> "MegaracConfig":
        if not isinstance(raw, dict):
            raise ConfigurationError("expected a mapping")

        url = raw.get('url')
        if not isinstance(url, str) or not url:
            raise ConfigurationError("missing key `url`")

        scheme = urlsplit(url).scheme.lower()
        if scheme not in ('http', 'https'):
            raise ConfigurationError(f"unknown protocol '{scheme}'")

        password_path = None
        if raw.get('password_file') is not None:
            password_path = resolve_credential_path(raw['password_file'], base_dir)

        return cls(
            certificate=CertificateRef.parse(raw.get('certificate'), base_dir, "key `certificate`"),
            url=url,
            password_path=password_path,
        )


class MegaracHandler(CertificateHandler):
    """
    ASRock Rack / AMI MegaRAC BMCs take the pair as a multipart upload to
    /api/settings/ssl/certificate. That upload isn't implemented, so these
    targets fail pre-flight instead of part-way through a run.
    """
    remote_type = "megarac-bmc"
    config_class = MegaracConfig

    def check(self) -> None:
        raise ConfigurationError(NOT_IMPLEMENTED)

    def update(self) -> None:
        raise ConfigurationError(NOT_IMPLEMENTED)
