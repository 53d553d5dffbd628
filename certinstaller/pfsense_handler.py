from dataclasses import dataclass
from importlib import resources
from urllib.parse import urlsplit

from .base_handler import CertificateHandler, RemoteConfig
from .certificates import CertificatePair, CertificateRef
from .errors import ConfigurationError
from .ssh_helper import ConnectOptions, SSHHelper

UPDATE_COMMAND = "php"
UPDATE_SCRIPT = "scripts/pfsense-update.php"


@dataclass(frozen=True)
class SshProtocol:
    options: ConnectOptions


@dataclass(frozen=True)
class HttpProtocol:
    url: str
    settings: dict = None


def select_protocol(url: str, raw: dict, base_dir: str):
    """
    Picks the update protocol from the URL scheme and rejects the other
    protocol's settings block. Decided once, at config load.
    """
    scheme = urlsplit(url).scheme.lower()

    if scheme in ('http', 'https'):
        if 'ssh' in raw:
            raise ConfigurationError(f"key `ssh` cannot be set for {scheme} connections")
        return HttpProtocol(url=url, settings=raw.get('http') or {})

    if scheme == 'ssh':
        if 'http' in raw:
            raise ConfigurationError(f"key `http` cannot be set for {scheme} connections")
        if 'ssh' not in raw:
            raise ConfigurationError(f"key `ssh` is required for {scheme} connections")
        return SshProtocol(options=ConnectOptions.from_config(url, raw['ssh'], base_dir))

    raise ConfigurationError(f"unknown protocol '{scheme}'")


@dataclass(frozen=True)
class PfSenseConfig(RemoteConfig):
    certificate: object
    refid: str
    protocol: object

    @classmethod
    def parse(cls, raw, base_dir: str) -> "PfSenseConfig":
        if not isinstance(raw, dict):
            raise ConfigurationError("expected a mapping")

        url = raw.get('url')
        if not isinstance(url, str) or not url:
            raise ConfigurationError("missing key `url`")

        # the id pfSense gives the certificate entry in config.xml
        refid = raw.get('refid')
        if not isinstance(refid, str) or not refid:
            raise ConfigurationError("key `refid` must be a non-empty string")

        certificate = CertificateRef.parse(raw.get('certificate'), base_dir, "key `certificate`")
        protocol = select_protocol(url, raw, base_dir)

        return cls(certificate=certificate, refid=refid, protocol=protocol)


def render_update_script(refid: str, certificate: CertificatePair) -> str:
    template = resources.files(__package__).joinpath(UPDATE_SCRIPT).read_text(encoding='utf-8')
    return (
        template.replace("@@REFID@@", refid)
        .replace("@@CERTIFICATE@@", certificate.fullchain_pem())
        .replace("@@PRIVATE_KEY@@", certificate.private_key_pem())
    )


class PfSenseHandler(CertificateHandler):
    """
    Updates an existing pfSense certificate entry in place.

    Over SSH, a PHP script is piped to the remote `php` interpreter. It imports the
    new pair into the entry matching `refid`, saves the config and restarts every
    service using that certificate.
    """
    remote_type = "pfsense"
    config_class = PfSenseConfig

    def check(self) -> None:
        if isinstance(self.config.protocol, HttpProtocol):
            raise ConfigurationError("certificate updates over http are not implemented for pfsense")

    def update(self) -> None:
        protocol = self.config.protocol
        if not isinstance(protocol, SshProtocol):
            raise ConfigurationError("certificate updates over http are not implemented for pfsense")

        script = render_update_script(self.config.refid, self.certificate).encode('utf-8')

        self.logger.info(f"Running PHP update script for certificate {self.config.refid}")
        SSHHelper(protocol.options, logger=self.logger).run_script(UPDATE_COMMAND, script)
