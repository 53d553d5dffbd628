import datetime
import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from .certificates import CertificatePair
from .errors import VerificationError


class CertValidator:
    """
    Local sanity checks that a pair is usable as a TLS server certificate.
    Nothing here touches the network.
    """

    def __init__(self, now: datetime.datetime = None):
        self.now = now
        self.logger = logging.getLogger("CertInstaller.Validator")

    def precheck(self, pair: CertificatePair) -> None:
        """Raises VerificationError describing the first problem found."""
        leaf = pair.leaf
        self.check_validity(leaf)
        self.check_server_usage(leaf)
        self.check_chain(pair.chain)
        if not self.validate_key_match(leaf, pair.private_key):
            raise VerificationError("private key does not match the certificate's public key")

        self.logger.debug(f"Certificate {leaf.subject.rfc4514_string()} passed pre-flight checks")

    def check_validity(self, cert: x509.Certificate) -> None:
        now = self.now or datetime.datetime.now(datetime.timezone.utc)
        if now < cert.not_valid_before_utc:
            raise VerificationError(f"certificate is not valid before {cert.not_valid_before_utc.isoformat()}")
        if now > cert.not_valid_after_utc:
            raise VerificationError(f"certificate expired on {cert.not_valid_after_utc.isoformat()}")

    def check_server_usage(self, cert: x509.Certificate) -> None:
        extensions = cert.extensions

        try:
            constraints = extensions.get_extension_for_class(x509.BasicConstraints).value
            if constraints.ca:
                raise VerificationError("certificate is a CA certificate, not an end-entity certificate")
        except x509.ExtensionNotFound:
            pass

        try:
            usage = extensions.get_extension_for_class(x509.KeyUsage).value
            if not (usage.digital_signature or usage.key_encipherment):
                raise VerificationError("key usage allows neither digitalSignature nor keyEncipherment")
        except x509.ExtensionNotFound:
            pass

        try:
            ext_usage = extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
            if ExtendedKeyUsageOID.SERVER_AUTH not in ext_usage:
                raise VerificationError("extended key usage does not include serverAuth")
        except x509.ExtensionNotFound:
            pass

    def check_chain(self, chain) -> None:
        """Each certificate must be directly issued by the one after it."""
        for position, (cert, issuer) in enumerate(zip(chain, chain[1:])):
            try:
                cert.verify_directly_issued_by(issuer)
            except (ValueError, TypeError, InvalidSignature) as e:
                raise VerificationError(
                    f"certificate {position} in the chain ({cert.subject.rfc4514_string()}) "
                    f"is not issued by the next one ({issuer.subject.rfc4514_string()})"
                ) from e

    def validate_key_match(self, cert_obj, key_obj) -> bool:
        """Checks if the private key matches the certificate's public key."""
        def spki(public_key):
            return public_key.public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        return spki(key_obj.public_key()) == spki(cert_obj.public_key())
