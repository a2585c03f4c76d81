#!/usr/bin/env python
"""
Self-signed credentials for the TLS listener.

The key and the certificate live in two files ("key" and "cert" by default).
They are produced together and reused as long as both files exist.
"""
import datetime
import ipaddress
import logging
import os

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ssltunnel.config import DEFAULT_ORGANIZATION

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
NOT_AFTER = datetime.datetime(2049, 12, 31, 23, 59, 59, tzinfo=datetime.timezone.utc)
BIND_ADDRESS = ipaddress.IPv4Address("0.0.0.0")

KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o666  # reduced by the umask


class CredentialsError(Exception):
    """The key/certificate pair could not be produced or persisted."""


class CredentialBundle(object):
    """
    A private key and the self-signed certificate binding it to our host names.
    """
    def __init__(self, key, certificate):
        self.key = key
        self.certificate = certificate

    @classmethod
    def generate(cls, host_names, organization=DEFAULT_ORGANIZATION, now=None):
        """
        Create a fresh RSA key and a certificate signed by that same key.
        The serial number is the generation time in whole seconds, so two
        bundles generated within the same second share a serial number.
        """
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        logger.info("Generating private key...")
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
        logger.info("Generated new RSA Private key.")

        logger.info("Self-signing certificate...")
        name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization)])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(int(now.timestamp()))
            .not_valid_before(now)
            .not_valid_after(NOT_AFTER)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(
                x509.SubjectAlternativeName(
                    [x509.DNSName(host) for host in host_names] + [x509.IPAddress(BIND_ADDRESS)]
                ),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
        logger.info("Created self-signed certificate.")
        return cls(key, certificate)

    @classmethod
    def load(cls, key_path, cert_path):
        """
        Read a bundle back from disk. Raises CredentialsError if either file
        is missing or does not hold a PEM key/certificate.
        """
        try:
            with open(key_path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
            with open(cert_path, "rb") as f:
                certificate = x509.load_pem_x509_certificate(f.read())
        except (OSError, ValueError, TypeError) as e:
            raise CredentialsError("Unable to load key and cert: %s" % e) from e
        return cls(key, certificate)

    def key_pem(self):
        # "RSA PRIVATE KEY" block, PKCS#1
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def cert_pem(self):
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def matches(self):
        """True if the certificate carries this bundle's public key."""
        return self.certificate.public_key().public_numbers() == self.key.public_key().public_numbers()

    def is_expired(self, now=None):
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        return not (self.certificate.not_valid_before_utc <= now <= self.certificate.not_valid_after_utc)

    def write(self, key_path, cert_path):
        """
        Persist both files. Each one is first written in full next to its
        destination, and only then are both renamed into place: a failure
        while encoding or writing leaves the existing files untouched.
        """
        logger.info("Writing files...")
        try:
            pending = [
                (_write_temporary(cert_path, self.cert_pem(), CERT_FILE_MODE), cert_path),
                (_write_temporary(key_path, self.key_pem(), KEY_FILE_MODE), key_path),
            ]
        except (OSError, ValueError) as e:
            for path in (cert_path, key_path):
                _discard(_temporary_name(path))
            raise CredentialsError("Unable to write key and cert files: %s" % e) from e

        try:
            for temporary, destination in pending:
                os.replace(temporary, destination)
        except OSError as e:
            for temporary, _ in pending:
                _discard(temporary)
            raise CredentialsError("Unable to write key and cert files: %s" % e) from e


def _temporary_name(path):
    return path + ".tmp"


def _discard(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _write_temporary(path, data, mode):
    temporary = _temporary_name(path)
    # a stale file would keep its old mode
    _discard(temporary)
    fd = os.open(temporary, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return temporary


def _is_usable(key_path, cert_path):
    try:
        bundle = CredentialBundle.load(key_path, cert_path)
    except CredentialsError as e:
        logger.warning("%s", e)
        return False
    if not bundle.matches():
        logger.warning("Existing key does not match the certificate.")
        return False
    if bundle.is_expired():
        logger.warning("Existing certificate is not valid at this time.")
        return False
    return True


def ensure_credentials(key_path, cert_path, host_names, organization=DEFAULT_ORGANIZATION, verify=False):
    """
    Make sure a key and a self-signed certificate exist at the given paths.

    If both files exist they are reused as they are (their content is not
    looked at unless verify=True). If either one is missing, both are
    generated again and any existing file is overwritten.

    Returns True if new credentials were written, False if existing ones are
    reused. Raises CredentialsError on any generation or write failure.
    """
    if os.path.exists(key_path) and os.path.exists(cert_path):
        if not verify or _is_usable(key_path, cert_path):
            logger.info("Using existing key and cert.")
            return False
        logger.info("Replacing unusable key and cert.")

    try:
        bundle = CredentialBundle.generate(host_names, organization)
    except (ValueError, TypeError) as e:
        raise CredentialsError("Unable to generate certificate: %s" % e) from e
    bundle.write(key_path, cert_path)
    return True
