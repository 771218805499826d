"""Shared fixtures: scripted transport, fake clock and throwaway certificates."""

import base64
import datetime
import json

import pytest

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.asymmetric.padding import OAEP, MGF1
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ksefsend import ksefRetry

NOW = datetime.datetime(2025, 10, 18, 12, 0, 0, tzinfo=datetime.timezone.utc)


class FakeClock(ksefRetry.ksefClock):
    """Monotonic time that only moves when someone sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, text='', headers=None, status_code=200):
        self.text = text
        self.headers = headers or {}
        self.status_code = status_code

    def json(self):
        return json.loads(self.text)


class FakeTransport:
    """
    Transport double answering from a script keyed by (method, endpoint).

    Each script entry is a list of outcomes consumed in order; the last one
    repeats. An outcome that is an exception instance is raised.
    """

    def __init__(self, script=None):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.calls = []

    def add(self, method, endpoint, *outcomes):
        self.script.setdefault((method, endpoint), []).extend(outcomes)

    def _next(self, method, endpoint, kwargs):
        self.calls.append((method, endpoint, kwargs))
        outcomes = self.script.get((method, endpoint))
        if not outcomes:
            raise AssertionError(f"Unexpected request: {method} {endpoint}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def request(self, method, endpoint, **kwargs):
        return self._next(method, endpoint, kwargs)

    def send(self, method, endpoint, **kwargs):
        return self._next(method, endpoint, kwargs)

    def called(self, method, endpoint):
        return [call for call in self.calls if call[0] == method and call[1] == endpoint]


def make_certificate(private_key, common_name='Test Signer', serial=1234567,
                     not_before=None, not_after=None) -> x509.Certificate:
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, 'PL'),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before or NOW - datetime.timedelta(days=1))
        .not_valid_after(not_after or NOW + datetime.timedelta(days=365))
        .sign(private_key, hashes.SHA256())
    )


def certificate_base64(certificate: x509.Certificate) -> str:
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode()


def aes_cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """What KSeF does with an uploaded invoice: AES-256-CBC decrypt, then strip PKCS#7."""
    decryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(bytes(iv))).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def rsa_oaep_unwrap(private_key, wrapped: bytes) -> bytes:
    return private_key.decrypt(wrapped, OAEP(mgf=MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None))


@pytest.fixture(scope='session')
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def rsa_certificate(rsa_key):
    return make_certificate(rsa_key)


@pytest.fixture(scope='session')
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope='session')
def ec_certificate(ec_key):
    return make_certificate(ec_key, common_name='Test EC Signer')


@pytest.fixture(scope='session')
def ksef_encryption_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def ksef_encryption_certificate(ksef_encryption_key):
    return make_certificate(ksef_encryption_key, common_name='KSeF Encryption', serial=42)


@pytest.fixture
def public_key_certificates(ksef_encryption_certificate):
    return [
        {
            'certificate': certificate_base64(ksef_encryption_certificate),
            'usage': ['SymmetricKeyEncryption'],
            'validFrom': '2025-01-01T00:00:00Z',
            'validTo': '2026-12-31T00:00:00Z',
        },
        {
            'certificate': certificate_base64(ksef_encryption_certificate),
            'usage': ['KsefTokenEncryption'],
            'validFrom': '2025-06-01T00:00:00Z',
            'validTo': '2026-12-31T00:00:00Z',
        },
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(clock):
    return ksefRetry.ksefPoller(clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def invoice_xml():
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<Faktura xmlns="http://crd.gov.pl/wzor/2025/06/25/13775/">'
        '<Naglowek><KodFormularza kodSystemowy="FA (3)" wersjaSchemy="1-0E">FA</KodFormularza></Naglowek>'
        '<Podmiot1><DaneIdentyfikacyjne><NIP>1234567890</NIP><Nazwa>Sprzedawca</Nazwa></DaneIdentyfikacyjne></Podmiot1>'
        '<Podmiot2><DaneIdentyfikacyjne><NIP>9876543210</NIP><Nazwa>Nabywca</Nazwa></DaneIdentyfikacyjne></Podmiot2>'
        '<Fa><KodWaluty>PLN</KodWaluty><P_1>2025-10-15</P_1><P_2>FV/1/10/2025</P_2></Fa>'
        '</Faktura>'
    )
