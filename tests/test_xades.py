"""Tests for the XAdES enveloped signature."""

import base64
import copy
import hashlib

import pytest

from lxml import etree

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from ksefsend import ksefCanonical
from ksefsend import ksefError
from ksefsend import ksefXades

from conftest import NOW

NS = {'ds': ksefXades.NS_DS, 'xades': ksefXades.NS_XADES, 'a': ksefXades.NS_AUTH}
P256_ORDER = ksefXades.CURVE_ORDERS['secp256r1']


def _digest(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode()


def _sign_request(certificate, key, **kwargs):
    signer = ksefXades.ksefXadesSigner(certificate, key, now=lambda: NOW, **kwargs)
    xml = ksefXades.build_auth_token_request_xml('20251018-CR-ABCDEF', '1234567890')
    signed = signer.sign(xml)
    return signed, etree.fromstring(signed.encode('utf-8'))


class TestAuthTokenRequestXml:

    def test_structure(self):
        xml = ksefXades.build_auth_token_request_xml('challenge-1', '1234567890')
        root = etree.fromstring(xml.encode('utf-8'))

        assert xml.startswith('<?xml version="1.0" encoding="utf-8"?>')
        assert root.tag == '{%s}AuthTokenRequest' % ksefXades.NS_AUTH
        assert root.findtext('a:Challenge', namespaces=NS) == 'challenge-1'
        assert root.findtext('a:ContextIdentifier/a:Nip', namespaces=NS) == '1234567890'
        assert root.findtext('a:SubjectIdentifierType', namespaces=NS) == 'certificateSubject'

    def test_custom_id_context(self):
        xml = ksefXades.build_auth_token_request_xml('c', 'ABC-1', context_type='CustomId')
        root = etree.fromstring(xml.encode('utf-8'))

        assert root.findtext('a:ContextIdentifier/a:CustomId', namespaces=NS) == 'ABC-1'

    @pytest.mark.parametrize('kwargs', [
        {'context_type': 'Pesel'},
        {'subject_identifier_type': 'certificateSerial'},
    ])
    def test_unknown_identifier_types_rejected(self, kwargs):
        with pytest.raises(ksefError.ksefInputValidationError):
            ksefXades.build_auth_token_request_xml('c', '1234567890', **kwargs)


class TestXadesSigner:

    def test_rsa_signature_structure_and_digests(self, rsa_certificate, rsa_key):
        signed, root = _sign_request(rsa_certificate, rsa_key)

        signature = root[-1]
        assert signature.tag == '{%s}Signature' % ksefXades.NS_DS
        assert signature.get('Id') == 'Signature'
        assert signature.find('ds:SignedInfo/ds:SignatureMethod', NS).get('Algorithm') == ksefXades.ALG_RSA_SHA256
        assert signature.find('ds:SignedInfo/ds:CanonicalizationMethod', NS).get('Algorithm') == ksefCanonical.C14N

        references = signature.findall('ds:SignedInfo/ds:Reference', NS)
        assert [ref.get('URI') for ref in references] == ['', '#SignedProperties']
        assert references[1].get('Type') == 'http://uri.etsi.org/01903#SignedProperties'
        assert [t.get('Algorithm') for t in references[0].findall('ds:Transforms/ds:Transform', NS)] == [
            ksefXades.ALG_ENVELOPED, ksefCanonical.EXC_C14N
        ]

        # document digest: the root without the enveloped signature
        unsigned = copy.deepcopy(root)
        unsigned.remove(unsigned[-1])
        assert references[0].findtext('ds:DigestValue', namespaces=NS) == _digest(
            ksefCanonical.exclusive_c14n(unsigned)
        )

        signed_properties = signature.find('ds:Object/xades:QualifyingProperties/xades:SignedProperties', NS)
        assert signed_properties.get('Id') == 'SignedProperties'
        assert references[1].findtext('ds:DigestValue', namespaces=NS) == _digest(
            ksefCanonical.exclusive_c14n(signed_properties)
        )

    def test_rsa_signature_value_verifies(self, rsa_certificate, rsa_key):
        signed, root = _sign_request(rsa_certificate, rsa_key)

        signed_info = root.find('ds:Signature/ds:SignedInfo', NS)
        signature_value = base64.b64decode(root.findtext('ds:Signature/ds:SignatureValue', namespaces=NS))

        rsa_certificate.public_key().verify(
            signature_value,
            ksefCanonical.inclusive_c14n(signed_info),
            padding.PKCS1v15(),
            hashes.SHA256()
        )

    def test_ecdsa_signature_is_low_s_p1363(self, ec_certificate, ec_key):
        signed, root = _sign_request(ec_certificate, ec_key)

        assert root.find('ds:Signature/ds:SignedInfo/ds:SignatureMethod', NS).get('Algorithm') == \
            ksefXades.ALG_ECDSA_SHA256

        raw = base64.b64decode(root.findtext('ds:Signature/ds:SignatureValue', namespaces=NS))
        assert len(raw) == 64
        r = int.from_bytes(raw[:32], 'big')
        s = int.from_bytes(raw[32:], 'big')
        assert s <= P256_ORDER // 2

        signed_info = root.find('ds:Signature/ds:SignedInfo', NS)
        ec_certificate.public_key().verify(
            encode_dss_signature(r, s),
            ksefCanonical.inclusive_c14n(signed_info),
            ec.ECDSA(hashes.SHA256())
        )

    def test_signed_properties_content(self, rsa_certificate, rsa_key):
        signed, root = _sign_request(rsa_certificate, rsa_key, clock_skew_seconds=60)

        props = root.find('.//xades:SignedSignatureProperties', NS)
        assert props.findtext('xades:SigningTime', namespaces=NS) == '2025-10-18T11:59:00.000Z'
        assert props.findtext('.//ds:X509SerialNumber', namespaces=NS) == '1234567'
        assert props.findtext('.//ds:X509IssuerName', namespaces=NS) == rsa_certificate.issuer.rfc4514_string()

        qualifying = root.find('.//xades:QualifyingProperties', NS)
        assert qualifying.get('Target') == '#Signature'

    def test_signing_time_skew_is_configurable(self, rsa_certificate, rsa_key):
        signed, root = _sign_request(rsa_certificate, rsa_key, clock_skew_seconds=0)

        assert root.findtext('.//xades:SigningTime', namespaces=NS) == '2025-10-18T12:00:00.000Z'

    def test_mismatched_key_is_rejected(self, rsa_certificate, ec_key):
        signer = ksefXades.ksefXadesSigner(rsa_certificate, ec_key)

        with pytest.raises(ksefError.ksefKeyCertificateMismatch):
            signer.sign('<r/>')

    def test_other_rsa_key_is_rejected(self, rsa_certificate, ksef_encryption_key):
        signer = ksefXades.ksefXadesSigner(rsa_certificate, ksef_encryption_key)

        with pytest.raises(ksefError.ksefKeyCertificateMismatch):
            signer.sign('<r/>')

    def test_malformed_document_rejected(self, rsa_certificate, rsa_key):
        signer = ksefXades.ksefXadesSigner(rsa_certificate, rsa_key)

        with pytest.raises(ksefError.ksefInputValidationError):
            signer.sign('<r>')


class TestDerToP1363:

    def test_high_s_is_normalised(self):
        der = encode_dss_signature(5, P256_ORDER - 7)

        raw = ksefXades.der_to_p1363(der, ec.SECP256R1())

        assert raw == (5).to_bytes(32, 'big') + (7).to_bytes(32, 'big')

    def test_low_s_is_kept_and_padded(self):
        raw = ksefXades.der_to_p1363(encode_dss_signature(1, 2), ec.SECP256R1())

        assert len(raw) == 64
        assert raw[-1] == 2 and raw[31] == 1

    def test_p521_components_are_66_bytes(self):
        raw = ksefXades.der_to_p1363(encode_dss_signature(1, 2), ec.SECP521R1())

        assert len(raw) == 132

    def test_garbage_raises_decoding_error(self):
        with pytest.raises(ksefError.ksefSignatureDecodingError):
            ksefXades.der_to_p1363(b'\x01\x02\x03', ec.SECP256R1())


class TestKeyCertificateCheck:

    def test_matching_pairs(self, rsa_certificate, rsa_key, ec_certificate, ec_key):
        assert ksefXades.verify_key_matches_certificate(rsa_certificate, rsa_key)
        assert ksefXades.verify_key_matches_certificate(ec_certificate, ec_key)

    def test_mismatched_types(self, rsa_certificate, ec_key):
        assert not ksefXades.verify_key_matches_certificate(rsa_certificate, ec_key)
