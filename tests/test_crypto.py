"""Tests for crypto primitives and the default crypto operations."""

import base64
import hashlib

import pytest

from cryptography.hazmat.primitives import serialization

from ksefsend import ksefCrypto
from ksefsend import ksefError

from conftest import aes_cbc_decrypt, certificate_base64, rsa_oaep_unwrap


class TestPrimitives:

    def test_aes_round_trip_with_padding(self):
        key, iv = bytes(range(32)), bytes(range(16))
        plaintext = '<Faktura>zażółć gęślą jaźń</Faktura>'.encode('utf-8')

        ciphertext = ksefCrypto.aes_cbc_encrypt(key, iv, plaintext)

        assert len(ciphertext) % 16 == 0
        assert ciphertext != plaintext
        assert aes_cbc_decrypt(key, iv, ciphertext) == plaintext

    def test_block_aligned_input_gets_full_padding_block(self):
        ciphertext = ksefCrypto.aes_cbc_encrypt(bytes(32), bytes(16), b'x' * 32)

        assert len(ciphertext) == 48

    def test_oaep_wrap_unwraps_with_private_key(self, ksef_encryption_certificate, ksef_encryption_key):
        key = bytearray(range(32))

        wrapped = ksefCrypto.rsa_oaep_wrap(certificate_base64(ksef_encryption_certificate), key)

        assert rsa_oaep_unwrap(ksef_encryption_key, wrapped) == bytes(key)

    def test_oaep_requires_rsa_certificate(self, ec_certificate):
        with pytest.raises(ksefError.ksefInputValidationError):
            ksefCrypto.rsa_oaep_wrap(ec_certificate, bytes(32))

    def test_hashes(self):
        digest = hashlib.sha256(b'abc').digest()

        assert ksefCrypto.sha256_base64(b'abc') == base64.b64encode(digest).decode()
        assert ksefCrypto.sha256_base64url(b'abc') == base64.urlsafe_b64encode(digest).decode().rstrip('=')


class TestLoading:

    def test_certificate_formats(self, rsa_certificate):
        pem = rsa_certificate.public_bytes(serialization.Encoding.PEM)
        der = rsa_certificate.public_bytes(serialization.Encoding.DER)

        assert ksefCrypto.load_certificate(pem) == rsa_certificate
        assert ksefCrypto.load_certificate(pem.decode()) == rsa_certificate
        assert ksefCrypto.load_certificate(der) == rsa_certificate
        assert ksefCrypto.load_certificate(certificate_base64(rsa_certificate)) == rsa_certificate
        assert ksefCrypto.load_certificate(rsa_certificate) is rsa_certificate

    def test_invalid_certificate(self):
        with pytest.raises(ksefError.ksefInputValidationError):
            ksefCrypto.load_certificate('-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----')

    def test_encrypted_private_key(self, ec_key):
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b'haslo')
        )

        loaded = ksefCrypto.load_private_key(pem, 'haslo')

        assert loaded.private_numbers() == ec_key.private_numbers()

    def test_wrong_password(self, ec_key):
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b'haslo')
        )

        with pytest.raises(ksefError.ksefInputValidationError):
            ksefCrypto.load_private_key(pem, 'zle')

    def test_der_private_key(self, rsa_key):
        der = rsa_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption()
        )

        assert ksefCrypto.load_private_key(der).private_numbers() == rsa_key.private_numbers()


class TestCryptoOperations:

    def test_session_keys_are_random_and_wipeable(self):
        operations = ksefCrypto.ksefCryptoOperations()

        first = operations.generate_session_keys()
        second = operations.generate_session_keys()

        assert len(first.symmetric_key) == 32 and len(first.iv) == 16
        assert first.symmetric_key != second.symmetric_key
        assert 'symmetric_key' not in repr(first)

        first.wipe()
        assert first.wiped
        assert bytes(first.symmetric_key) == bytes(32)

    def test_encrypt_invoice_reports_hashes_of_transmitted_bytes(self):
        operations = ksefCrypto.ksefCryptoOperations()
        keys = operations.generate_session_keys()
        plaintext = b'<Faktura/>'

        encrypted = operations.encrypt_invoice(keys, plaintext)

        assert encrypted.plain_size == len(plaintext)
        assert encrypted.plain_hash == ksefCrypto.sha256_base64(plaintext)
        assert encrypted.cipher_size == len(encrypted.ciphertext)
        assert encrypted.cipher_hash == ksefCrypto.sha256_base64(encrypted.ciphertext)
        assert aes_cbc_decrypt(keys.symmetric_key, keys.iv, encrypted.ciphertext) == plaintext
