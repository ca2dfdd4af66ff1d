"""
Certificates exchanged while pairing with a device.

The chain mirrors what iTunes produces: an empty-DN self-signed root, a host leaf and a device leaf (both
signed by the root, serial 1, ten years of validity). Devices older than iOS 4 only accept SHA-1 signatures.
"""
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, load_pem_public_key
from cryptography.x509 import Certificate
from packaging.version import Version

from pylockdown.exceptions import PairingError

_SERIAL = 1
_KEY_SIZE = 2048
_PUBLIC_EXPONENT = 65537
_VALIDITY = timedelta(days=365 * 10)
_SHA1_BEFORE = Version('4.0')

_LEAF_KEY_USAGE = x509.KeyUsage(
    digital_signature=True,
    key_encipherment=True,
    key_cert_sign=False,
    crl_sign=False,
    content_commitment=False,
    data_encipherment=False,
    key_agreement=False,
    encipher_only=False,
    decipher_only=False,
)


class PairingCertificates(NamedTuple):
    host_certificate: bytes
    host_private_key: bytes
    device_certificate: bytes
    root_certificate: bytes
    root_private_key: bytes


def select_hash_algorithm(device_version: Union[Version, str, None]) -> hashes.HashAlgorithm:
    if device_version is None:
        return hashes.SHA256()
    if not isinstance(device_version, Version):
        device_version = Version(device_version)
    return hashes.SHA1() if device_version < _SHA1_BEFORE else hashes.SHA256()


def generate_private_key() -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=_PUBLIC_EXPONENT, key_size=_KEY_SIZE)


def _build_certificate(public_key: RSAPublicKey, signing_key: RSAPrivateKey, alg: hashes.HashAlgorithm,
                       is_ca: bool = False, with_key_identifier: bool = False) -> Certificate:
    now = datetime.now(timezone.utc)
    builder = x509.CertificateBuilder() \
        .subject_name(x509.Name([])) \
        .issuer_name(x509.Name([])) \
        .public_key(public_key) \
        .serial_number(_SERIAL) \
        .not_valid_before(now - timedelta(minutes=1)) \
        .not_valid_after(now + _VALIDITY) \
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    if not is_ca:
        builder = builder.add_extension(_LEAF_KEY_USAGE, critical=True)
    if with_key_identifier:
        builder = builder.add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    return builder.sign(signing_key, alg)


def _key_pem(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())


def generate_pairing_cert_chain(device_public_key_pem: bytes, private_key: Optional[RSAPrivateKey] = None,
                                device_version: Union[Version, str, None] = None) -> PairingCertificates:
    """
    Create the root, host and device certificates for a pairing request.

    :param device_public_key_pem: DevicePublicKey as reported by lockdownd (PEM).
    :param private_key: Host key to reuse. A new one is generated when omitted.
    :param device_version: ProductVersion of the device, selects the signature hash.
    :return: All certificates and keys as PEM bytes.
    """
    device_public_key = load_pem_public_key(device_public_key_pem)
    if not isinstance(device_public_key, RSAPublicKey):
        raise PairingError('DevicePublicKey is not an RSA key')

    alg = select_hash_algorithm(device_version)
    root_key = generate_private_key()
    root_cert = _build_certificate(root_key.public_key(), root_key, alg, is_ca=True)

    host_key = private_key or generate_private_key()
    host_cert = _build_certificate(host_key.public_key(), root_key, alg)
    device_cert = _build_certificate(device_public_key, root_key, alg, with_key_identifier=True)

    return PairingCertificates(
        host_certificate=host_cert.public_bytes(Encoding.PEM),
        host_private_key=_key_pem(host_key),
        device_certificate=device_cert.public_bytes(Encoding.PEM),
        root_certificate=root_cert.public_bytes(Encoding.PEM),
        root_private_key=_key_pem(root_key),
    )
