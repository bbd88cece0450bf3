"""Certificate authority material for federated meshes.

All functions are pure apart from key generation randomness. Certificate
data is returned as dictionaries keyed by the file names Istio expects in its
``cacerts`` secret, so the results can be stored in secrets unchanged.
"""

import ipaddress
import logging
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from meshloom.core.constants import CA_CERT_KEY, CA_KEY_KEY, CERT_CHAIN_KEY, CSR_HOST_KEY, CSR_KEY, ROOT_CERT_KEY
from meshloom.core.errors import ProtocolError

logger = logging.getLogger(__name__)

ROOT_CA_ORG = "meshloom"
ROOT_CA_TTL = timedelta(days=3650)
INTERMEDIATE_CA_ORG = "Istio"
INTERMEDIATE_CA_TTL = timedelta(days=365)
DEFAULT_KEY_SIZE = 4096


def _generate_key(key_size: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    # PKCS#1 "RSA PRIVATE KEY", the format istiod reads from ca-key.pem
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _general_names(hosts: list[str]) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = []
    for host in hosts:
        if "://" in host:
            names.append(x509.UniformResourceIdentifier(host))
            continue
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    return names


def _ca_extensions(builder: x509.CertificateBuilder, public_key: rsa.RSAPublicKey) -> x509.CertificateBuilder:
    return (
        builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
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
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )


def build_root_ca(key_size: int = DEFAULT_KEY_SIZE) -> dict[str, bytes]:
    """
    Generate a self-signed root certificate authority.

    Args:
        key_size: RSA modulus size in bits.

    Returns:
        Secret data holding the certificate under ``ca-cert.pem``,
        ``root-cert.pem`` and ``cert-chain.pem`` and the key under ``ca-key.pem``.
    """
    key = _generate_key(key_size)
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, ROOT_CA_ORG)])
    now = datetime.now(timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + ROOT_CA_TTL)
    )
    cert = _ca_extensions(builder, key.public_key()).sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)

    logger.info("Generated root CA with %d-bit key", key_size)
    return {
        CA_CERT_KEY: cert_pem,
        ROOT_CERT_KEY: cert_pem,
        CERT_CHAIN_KEY: cert_pem,
        CA_KEY_KEY: _key_pem(key),
    }


def build_intermediate_csr(
    hosts: list[str], mesh_identity: str, key_size: int = DEFAULT_KEY_SIZE
) -> tuple[dict[str, bytes], dict[str, bytes]]:
    """
    Generate an intermediate CA signing request and its private key.

    Args:
        hosts: Subject alternative names, typically one SPIFFE URI.
        mesh_identity: Organizational unit distinguishing the requesting mesh.
        key_size: RSA modulus size in bits.

    Returns:
        A pair of secret payloads: the CSR data (``cert-csr.pem`` and
        ``csr-host``), which travels to the hub, and the private key data
        (``ca-key.pem``), which must stay on the spoke.
    """
    key = _generate_key(key_size)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, INTERMEDIATE_CA_ORG),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, mesh_identity),
        ]
    )
    builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
    if hosts:
        builder = builder.add_extension(x509.SubjectAlternativeName(_general_names(hosts)), critical=False)
    csr = builder.sign(key, hashes.SHA256())

    csr_data = {
        CSR_KEY: csr.public_bytes(serialization.Encoding.PEM),
        CSR_HOST_KEY: ",".join(hosts).encode(),
    }
    return csr_data, {CA_KEY_KEY: _key_pem(key)}


def build_cert_for_csr(
    csr_pem: bytes,
    signing_cert_pem: bytes,
    signing_key_pem: bytes,
    hosts: list[str],
    ttl: timedelta = INTERMEDIATE_CA_TTL,
) -> bytes:
    """
    Sign a CSR into an intermediate CA certificate.

    The subject is taken from the CSR; the subject alternative names are
    exactly ``hosts``.

    Raises:
        ProtocolError: The CSR is unparsable or its signature is invalid.
    """
    try:
        csr = x509.load_pem_x509_csr(csr_pem)
    except ValueError as e:
        raise ProtocolError(f"Failed to parse certificate signing request: {e}") from e
    if not csr.is_signature_valid:
        raise ProtocolError("Certificate signing request signature is invalid")

    signing_cert = x509.load_pem_x509_certificate(signing_cert_pem)
    signing_key = serialization.load_pem_private_key(signing_key_pem, password=None)
    public_key = csr.public_key()
    now = datetime.now(timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(signing_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + ttl)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_cert.public_key()),
            critical=False,
        )
    )
    if hosts:
        builder = builder.add_extension(x509.SubjectAlternativeName(_general_names(hosts)), critical=False)
    cert = _ca_extensions(builder, public_key).sign(signing_key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM)


def append_parent_certs(child_pem: bytes, parent_pem: bytes) -> bytes:
    """Concatenate a certificate with its parent chain, one newline apart."""
    if not parent_pem:
        return child_pem
    return child_pem.rstrip(b"\n") + b"\n" + parent_pem


def build_intermediate_ca(csr_data: dict[str, bytes], root_ca: dict[str, bytes]) -> dict[str, bytes]:
    """
    Sign a spoke's CSR payload with the shared root CA.

    Returns:
        Secret data with the intermediate certificate, its chain up to the
        root, and the root certificate.

    Raises:
        ProtocolError: A required key is missing from either payload.
    """
    for data, keys, what in (
        (csr_data, (CSR_KEY, CSR_HOST_KEY), "CSR"),
        (root_ca, (CA_CERT_KEY, CA_KEY_KEY), "root CA"),
    ):
        missing = [key for key in keys if key not in data]
        if missing:
            raise ProtocolError(f"{what} data is missing {', '.join(missing)}")

    hosts = [host for host in csr_data[CSR_HOST_KEY].decode().split(",") if host]
    cert_pem = build_cert_for_csr(csr_data[CSR_KEY], root_ca[CA_CERT_KEY], root_ca[CA_KEY_KEY], hosts)
    root_pem = root_ca.get(ROOT_CERT_KEY, root_ca[CA_CERT_KEY])
    return {
        CA_CERT_KEY: cert_pem,
        CERT_CHAIN_KEY: append_parent_certs(cert_pem, root_ca.get(CERT_CHAIN_KEY, root_pem)),
        ROOT_CERT_KEY: root_pem,
    }
