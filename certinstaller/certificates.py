import re
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .credentials import resolve_credential_path
from .errors import ConfigurationError, CredentialLoadError

logger = logging.getLogger("CertInstaller.Certificates")

DEFAULT_CERTIFICATE = "default"

PEM_BLOCK_RE = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n.*?-----END (?P=label)-----",
    re.DOTALL,
)


class KeyEncoding(enum.Enum):
    """Private key encodings we can carry. Value is the PEM label."""
    PKCS1 = "RSA PRIVATE KEY"
    SEC1 = "EC PRIVATE KEY"
    PKCS8 = "PRIVATE KEY"


_PRIVATE_FORMATS = {
    KeyEncoding.PKCS1: serialization.PrivateFormat.TraditionalOpenSSL,
    KeyEncoding.SEC1: serialization.PrivateFormat.TraditionalOpenSSL,
    KeyEncoding.PKCS8: serialization.PrivateFormat.PKCS8,
}


def _read_file(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise CredentialLoadError(f"failed to open \"{path}\" ({e.strerror or e})", path) from e


def _first_private_key_block(data: bytes, path: str):
    """Returns (encoding, pem_bytes) for the first private key block in a PEM file."""
    text = data.decode('utf-8', errors='replace')
    for match in PEM_BLOCK_RE.finditer(text):
        label = match.group('label')
        if not label.endswith("PRIVATE KEY"):
            continue
        try:
            encoding = KeyEncoding(label)
        except ValueError:
            raise CredentialLoadError(
                f"unsupported private key type \"{label}\" in PEM file \"{path}\"", path
            ) from None
        return encoding, match.group(0).encode('utf-8')

    raise CredentialLoadError(f"no private key found in PEM file \"{path}\"", path)


@dataclass(frozen=True, eq=False)
class CertificatePair:
    """
    A certificate chain (leaf first, never empty) and its private key.
    Immutable once loaded. Compared by identity: one loaded pair is one object.
    """
    chain: tuple
    private_key: object
    key_encoding: KeyEncoding
    chain_path: str = None
    key_path: str = None

    @classmethod
    def load(cls, chain_path: str, key_path: str) -> "CertificatePair":
        chain = cls.load_certificate_chain(chain_path)
        private_key, encoding = cls.load_private_key(key_path)
        return cls(
            chain=chain,
            private_key=private_key,
            key_encoding=encoding,
            chain_path=chain_path,
            key_path=key_path,
        )

    @staticmethod
    def load_certificate_chain(path: str) -> tuple:
        """Loads every certificate of a PEM file, in file order."""
        data = _read_file(path)
        try:
            certs = x509.load_pem_x509_certificates(data)
        except ValueError as e:
            if b"-----BEGIN CERTIFICATE-----" not in data:
                raise CredentialLoadError(f"no certificates found in PEM file \"{path}\"", path) from e
            raise CredentialLoadError(
                f"failed to read certificates from PEM file \"{path}\" ({e})", path
            ) from e

        if not certs:
            raise CredentialLoadError(f"no certificates found in PEM file \"{path}\"", path)

        logger.debug(f"Loaded {len(certs)} certificate(s) from {path}")
        return tuple(certs)

    @staticmethod
    def load_private_key(path: str):
        """Loads the first private key of a PEM file. Returns (key, KeyEncoding)."""
        data = _read_file(path)
        encoding, block = _first_private_key_block(data, path)
        try:
            key = serialization.load_pem_private_key(block, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CredentialLoadError(
                f"failed to read private key from PEM file \"{path}\" ({e})", path
            ) from e
        return key, encoding

    @property
    def leaf(self) -> x509.Certificate:
        return self.chain[0]

    def der_chain(self) -> list:
        return [cert.public_bytes(serialization.Encoding.DER) for cert in self.chain]

    def fullchain_pem(self) -> str:
        """The full chain, in order, as concatenated CERTIFICATE blocks."""
        return "".join(
            cert.public_bytes(serialization.Encoding.PEM).decode('ascii') for cert in self.chain
        )

    def private_key_pem(self) -> str:
        """The private key as PEM, labelled according to its original encoding."""
        private_format = _PRIVATE_FORMATS.get(self.key_encoding)
        if private_format is None:
            raise NotImplementedError(f"private keys of type {self.key_encoding!r} are not supported")

        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=private_format,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode('ascii')

    def __repr__(self):
        subject = self.leaf.subject.rfc4514_string()
        return f"CertificatePair(subject={subject!r}, chain_length={len(self.chain)}, key={self.key_encoding.name})"


def load_certificate_pair(raw, base_dir: str, context: str) -> CertificatePair:
    """Loads a pair from its config mapping (certificate_chain_path, private_key_path)."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{context}: expected a mapping with certificate_chain_path and private_key_path")

    for key in ('certificate_chain_path', 'private_key_path'):
        if key not in raw:
            raise ConfigurationError(f"{context}: missing key `{key}`")

    chain_path = resolve_credential_path(raw['certificate_chain_path'], base_dir)
    key_path = resolve_credential_path(raw['private_key_path'], base_dir)
    return CertificatePair.load(chain_path, key_path)


class CertificateRef(ABC):
    """
    Either the name of a globally defined certificate pair, or an inline pair
    specific to the remote that declares it.
    """

    @staticmethod
    def parse(raw, base_dir: str, context: str) -> "CertificateRef":
        if raw is None:
            return NamedCertificate(DEFAULT_CERTIFICATE)
        if isinstance(raw, str):
            return NamedCertificate(raw)
        if isinstance(raw, dict):
            return InlineCertificate(load_certificate_pair(raw, base_dir, context))
        raise ConfigurationError(
            f"{context}: expected a global certificate pair name or a certificate pair"
        )

    @abstractmethod
    def resolve(self, pool: dict) -> CertificatePair:
        """Returns the shared pair this reference points at."""


@dataclass(frozen=True)
class NamedCertificate(CertificateRef):
    name: str

    def resolve(self, pool: dict) -> CertificatePair:
        try:
            return pool[self.name]
        except KeyError:
            raise ConfigurationError(f"no such global certificate named \"{self.name}\"") from None


@dataclass(frozen=True)
class InlineCertificate(CertificateRef):
    pair: CertificatePair

    def resolve(self, pool: dict) -> CertificatePair:
        return self.pair
