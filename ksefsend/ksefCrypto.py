import os
import base64
import hashlib
import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization, padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.asymmetric.padding import OAEP, MGF1
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend

from ksefsend import ksefError
from ksefsend import ksefModels
from ksefsend import ksefXades

AES_KEY_SIZE = 32
AES_IV_SIZE = 16


def sha256_base64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode()


def sha256_base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode().rstrip('=')


def load_certificate(data) -> x509.Certificate:
    """
    Load an X.509 certificate from PEM text, DER bytes or base64 DER.

    KSeF hands out its encryption certificates as bare base64 DER, user
    certificates usually come as PEM files.
    """
    if isinstance(data, x509.Certificate):
        return data
    if isinstance(data, str):
        data = data.strip().encode()

    if b'-----BEGIN' in data:
        try:
            return x509.load_pem_x509_certificate(data, default_backend())
        except ValueError as e:
            raise ksefError.ksefInputValidationError(f"Invalid PEM certificate: {e}")

    try:
        return x509.load_der_x509_certificate(data, default_backend())
    except ValueError:
        pass

    try:
        der = base64.b64decode(data, validate=False)
        return x509.load_der_x509_certificate(der, default_backend())
    except ValueError as e:
        raise ksefError.ksefInputValidationError(f"Invalid certificate data: {e}")


def load_private_key(data, password: str = None):
    if isinstance(data, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        return data
    if isinstance(data, str):
        data = data.strip().encode()

    secret = password.encode() if password else None

    try:
        if b'-----BEGIN' in data:
            return serialization.load_pem_private_key(data, password=secret, backend=default_backend())
        return serialization.load_der_private_key(data, password=secret, backend=default_backend())
    except (ValueError, TypeError) as e:
        raise ksefError.ksefInputValidationError(f"Error loading private key: {e}")


def read_file(path: str) -> bytes:
    if not os.path.exists(path):
        raise ksefError.ksefInputValidationError(f"File not found: {path}")
    with open(path, 'rb') as f:
        return f.read()


def aes_cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(bytes(iv)), backend=default_backend()).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _oaep():
    return OAEP(mgf=MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def rsa_oaep_wrap(certificate, key: bytes) -> bytes:
    public_key = load_certificate(certificate).public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ksefError.ksefInputValidationError("KSeF encryption certificate does not carry an RSA key")
    return public_key.encrypt(bytes(key), _oaep())


class ksefCryptoOperations:
    """
    Default cryptographic capability used by the auth flow and the session manager.

    Every method can be replaced in tests or by an HSM backed implementation.
    """

    def __init__(self, signer=None, logger: logging.Logger = None):
        self.signer = signer
        self.logger = logger or logging.getLogger(__name__)

    def build_auth_request_xml(self, challenge: str, context_value: str,
                               context_type: str = 'Nip',
                               subject_identifier_type: str = 'certificateSubject') -> str:
        return ksefXades.build_auth_token_request_xml(
            challenge, context_value, context_type=context_type,
            subject_identifier_type=subject_identifier_type
        )

    def sign_xml(self, xml_content: str) -> str:
        if self.signer is None:
            raise ksefError.ksefInputValidationError("No signing certificate and key configured")
        return self.signer.sign(xml_content)

    def generate_session_keys(self) -> ksefModels.EncryptionKeys:
        return ksefModels.EncryptionKeys(
            symmetric_key=bytearray(os.urandom(AES_KEY_SIZE)),
            iv=bytearray(os.urandom(AES_IV_SIZE)),
            wrapped_key=b''
        )

    def wrap_symmetric_key(self, certificate, key) -> bytes:
        return rsa_oaep_wrap(certificate, key)

    def encrypt_invoice(self, keys: ksefModels.EncryptionKeys, plaintext: bytes) -> ksefModels.EncryptedInvoice:
        ciphertext = aes_cbc_encrypt(keys.symmetric_key, keys.iv, plaintext)
        return ksefModels.EncryptedInvoice(
            ciphertext=ciphertext,
            plain_hash=sha256_base64(plaintext),
            plain_size=len(plaintext),
            cipher_hash=sha256_base64(ciphertext),
            cipher_size=len(ciphertext),
        )
