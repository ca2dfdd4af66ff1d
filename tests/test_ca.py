import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat, load_pem_private_key
from packaging.version import Version

from pylockdown.ca import generate_pairing_cert_chain, generate_private_key, select_hash_algorithm
from pylockdown.exceptions import PairingError


@pytest.mark.parametrize('version, expected', [
    (None, hashes.SHA256),
    ('3.1.3', hashes.SHA1),
    (Version('4.0'), hashes.SHA256),
    ('17.0', hashes.SHA256),
])
def test_select_hash_algorithm(version, expected) -> None:
    assert isinstance(select_hash_algorithm(version), expected)


def test_chain_is_signed_by_root(device_public_key_pem: bytes) -> None:
    chain = generate_pairing_cert_chain(device_public_key_pem, device_version='16.4')
    root = x509.load_pem_x509_certificate(chain.root_certificate)
    root_key = root.public_key()

    assert root.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    for pem in (chain.host_certificate, chain.device_certificate):
        cert = x509.load_pem_x509_certificate(pem)
        assert isinstance(cert.signature_hash_algorithm, hashes.SHA256)
        assert not cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
        root_key.verify(cert.signature, cert.tbs_certificate_bytes, padding.PKCS1v15(), cert.signature_hash_algorithm)


def test_device_certificate_carries_device_key(device_public_key_pem: bytes) -> None:
    chain = generate_pairing_cert_chain(device_public_key_pem)
    cert = x509.load_pem_x509_certificate(chain.device_certificate)
    assert cert.public_key().public_bytes(Encoding.PEM, PublicFormat.PKCS1) == device_public_key_pem
    cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)


def test_host_key_is_reused(device_public_key_pem: bytes) -> None:
    key = generate_private_key()
    chain = generate_pairing_cert_chain(device_public_key_pem, private_key=key)
    host_key = load_pem_private_key(chain.host_private_key, password=None)
    assert host_key.private_numbers() == key.private_numbers()
    host_cert = x509.load_pem_x509_certificate(chain.host_certificate)
    assert host_cert.public_key().public_numbers() == key.public_key().public_numbers()


def test_non_rsa_device_key() -> None:
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
    with pytest.raises(PairingError):
        generate_pairing_cert_chain(pem)
