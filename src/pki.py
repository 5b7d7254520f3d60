#!/usr/bin/env python3
# src/pki.py
"""
Certificate issuance for secured ingress.

Generates a self-signed CA and CA-signed server/client leaf certificates, all
PEM encoded. The CA private key is held in memory only, for the lifetime of
the issuer; it is never written anywhere.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger("plumber-operator.pki")

KEY_SIZE = 2048
VALIDITY = timedelta(days=8 * 365)


class CertificateBundle(NamedTuple):
    ca_cert: bytes
    ca_key: bytes
    server_cert: bytes
    server_key: bytes
    client_cert: bytes
    client_key: bytes


def _subject(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "JP"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Plumber"),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Replication"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _pem_cert(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _pem_key(key: rsa.RSAPrivateKey) -> bytes:
    # PKCS#1 ("RSA PRIVATE KEY"), what ingress-nginx expects in tls.key
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


class CertificateIssuer:
    """Issues a CA and leaf certificates signed by the most recent CA."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ca_key: Optional[rsa.RSAPrivateKey] = None
        self._ca_cert: Optional[x509.Certificate] = None

    @property
    def has_ca(self) -> bool:
        return self._ca_key is not None

    def issue_ca(self) -> Tuple[bytes, bytes]:
        """Generate a new self-signed CA and make it the signer for later leafs."""
        with self._lock:
            return self._issue_ca()

    def issue_server(self, hostname: str) -> Tuple[bytes, bytes]:
        with self._lock:
            self._require_ca()
            return self._issue_leaf(
                "server",
                ExtendedKeyUsageOID.SERVER_AUTH,
                key_encipherment=False,
                dns_name=hostname,
            )

    def issue_client(self) -> Tuple[bytes, bytes]:
        with self._lock:
            self._require_ca()
            return self._issue_leaf(
                "client", ExtendedKeyUsageOID.CLIENT_AUTH, key_encipherment=True
            )

    def issue_bundle(self, hostname: str) -> CertificateBundle:
        """Fresh CA plus server and client leafs, issued together under one lock."""
        with self._lock:
            ca_cert, ca_key = self._issue_ca()
            server_cert, server_key = self._issue_leaf(
                "server",
                ExtendedKeyUsageOID.SERVER_AUTH,
                key_encipherment=False,
                dns_name=hostname,
            )
            client_cert, client_key = self._issue_leaf(
                "client", ExtendedKeyUsageOID.CLIENT_AUTH, key_encipherment=True
            )
        return CertificateBundle(
            ca_cert, ca_key, server_cert, server_key, client_cert, client_key
        )

    def _require_ca(self):
        if not self.has_ca:
            logger.info("No CA issued in this process yet, generating one")
            self._issue_ca()

    def _issue_ca(self) -> Tuple[bytes, bytes]:
        key = _new_key()
        subject = _subject("ca")
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        self._ca_key = key
        self._ca_cert = cert
        logger.debug(f"Issued CA certificate serial={cert.serial_number}")
        return _pem_cert(cert), _pem_key(key)

    def _issue_leaf(
        self,
        common_name: str,
        usage,
        key_encipherment: bool,
        dns_name: Optional[str] = None,
    ) -> Tuple[bytes, bytes]:
        key = _new_key()
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(_subject(common_name))
            .issuer_name(self._ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + VALIDITY)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=key_encipherment,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        )
        if dns_name:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False
            )
        cert = builder.sign(self._ca_key, hashes.SHA256())
        return _pem_cert(cert), _pem_key(key)
