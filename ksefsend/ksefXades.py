import base64
import hashlib
import logging
import datetime

from lxml import etree

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from ksefsend import ksefError
from ksefsend import ksefCanonical

NS_AUTH = 'http://ksef.mf.gov.pl/auth/token/2.0'
NS_DS = 'http://www.w3.org/2000/09/xmldsig#'
NS_XADES = 'http://uri.etsi.org/01903/v1.3.2#'

ALG_RSA_SHA256 = 'http://www.w3.org/2001/04/xmldsig-more#rsa-sha256'
ALG_ECDSA_SHA256 = 'http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256'
ALG_SHA256 = 'http://www.w3.org/2001/04/xmlenc#sha256'
ALG_ENVELOPED = 'http://www.w3.org/2000/09/xmldsig#enveloped-signature'
SIGNED_PROPERTIES_TYPE = 'http://uri.etsi.org/01903#SignedProperties'

SIGNATURE_ID = 'Signature'
SIGNED_PROPERTIES_ID = 'SignedProperties'

KEY_CHECK_MESSAGE = b'test message for key verification'

XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>'

CONTEXT_TYPES = ('Nip', 'CustomId')
SUBJECT_IDENTIFIER_TYPES = ('certificateSubject', 'certificateFingerprint')

# Group orders used for low-S normalisation
CURVE_ORDERS = {
    'secp256r1': 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    'secp384r1': int(
        'FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF'
        '581A0DB248B0A77AECEC196ACCC52973', 16),
    'secp521r1': int(
        '01FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF'
        'FA51868783BF2F966B7FCC0148F709A5D03BB5C9B8899C47AEBB6FB71E91386409', 16),
}


def _ds(tag):
    return '{%s}%s' % (NS_DS, tag)


def _xades(tag):
    return '{%s}%s' % (NS_XADES, tag)


def _sha256_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode()


def build_auth_token_request_xml(
    challenge: str,
    context_value: str,
    context_type: str = 'Nip',
    subject_identifier_type: str = 'certificateSubject'
) -> str:
    """
    Build AuthTokenRequest XML document.

    Args:
        challenge: Challenge from API
        context_value: NIP or custom identifier of the authenticated entity
        context_type: 'Nip' or 'CustomId'
        subject_identifier_type: 'certificateSubject' or 'certificateFingerprint'

    Returns:
        XML as string (without signature)
    """
    if context_type not in CONTEXT_TYPES:
        raise ksefError.ksefInputValidationError(f"Unknown context type: {context_type}")
    if subject_identifier_type not in SUBJECT_IDENTIFIER_TYPES:
        raise ksefError.ksefInputValidationError(f"Unknown subject identifier type: {subject_identifier_type}")

    root = etree.Element('{%s}AuthTokenRequest' % NS_AUTH, nsmap={None: NS_AUTH})

    challenge_elem = etree.SubElement(root, '{%s}Challenge' % NS_AUTH)
    challenge_elem.text = challenge

    context_elem = etree.SubElement(root, '{%s}ContextIdentifier' % NS_AUTH)
    value_elem = etree.SubElement(context_elem, '{%s}%s' % (NS_AUTH, context_type))
    value_elem.text = context_value

    subject_type_elem = etree.SubElement(root, '{%s}SubjectIdentifierType' % NS_AUTH)
    subject_type_elem.text = subject_identifier_type

    return XML_DECLARATION + etree.tostring(root, encoding='unicode')


def verify_key_matches_certificate(certificate: x509.Certificate, private_key) -> bool:
    public_key = certificate.public_key()

    if isinstance(private_key, rsa.RSAPrivateKey):
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        signature = private_key.sign(KEY_CHECK_MESSAGE, padding.PKCS1v15(), hashes.SHA256())
        verify_args = (padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            return False
        signature = private_key.sign(KEY_CHECK_MESSAGE, ec.ECDSA(hashes.SHA256()))
        verify_args = (ec.ECDSA(hashes.SHA256()),)
    else:
        raise ksefError.ksefInputValidationError(f"Unsupported private key type: {type(private_key).__name__}")

    try:
        public_key.verify(signature, KEY_CHECK_MESSAGE, *verify_args)
    except InvalidSignature:
        return False
    return True


def certificate_issuer_and_serial(certificate: x509.Certificate):
    return certificate.issuer.rfc4514_string(), str(certificate.serial_number)


def format_signing_time(now: datetime.datetime, skew_seconds: int = 60) -> str:
    moment = (now - datetime.timedelta(seconds=skew_seconds)).astimezone(datetime.timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S') + f'.{moment.microsecond // 1000:03d}Z'


def der_to_p1363(der_signature: bytes, curve: ec.EllipticCurve) -> bytes:
    """
    Convert a DER ECDSA signature to the fixed width r||s form used by XML-DSig.

    s is normalised to the lower half of the group order, so the result is the
    same whichever of the two valid signatures the key produced.
    """
    try:
        r, s = decode_dss_signature(der_signature)
    except ValueError as e:
        raise ksefError.ksefSignatureDecodingError(f"Invalid DER signature: {e}")

    order = CURVE_ORDERS.get(curve.name)
    if order is not None and s > order // 2:
        s = order - s

    component_size = (curve.key_size + 7) // 8
    return r.to_bytes(component_size, byteorder='big') + s.to_bytes(component_size, byteorder='big')


class ksefXadesSigner:
    """Produces XAdES-BES enveloped signatures for KSeF auth requests."""

    def __init__(
        self,
        certificate: x509.Certificate,
        private_key,
        clock_skew_seconds: int = 60,
        now=None,
        logger: logging.Logger = None
    ):
        self.certificate = certificate
        self.private_key = private_key
        self.clock_skew_seconds = clock_skew_seconds
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

    def signature_algorithm(self) -> str:
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return ALG_RSA_SHA256
        if isinstance(self.private_key, ec.EllipticCurvePrivateKey):
            return ALG_ECDSA_SHA256
        raise ksefError.ksefInputValidationError(f"Unsupported private key type: {type(self.private_key).__name__}")

    def _sign_bytes(self, data: bytes) -> bytes:
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return self.private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

        der_signature = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        return der_to_p1363(der_signature, self.private_key.curve)

    def _build_qualifying_properties(self, parent):
        cert_der = self.certificate.public_bytes(serialization.Encoding.DER)
        issuer, serial = certificate_issuer_and_serial(self.certificate)

        qualifying_properties = etree.SubElement(
            parent,
            _xades('QualifyingProperties'),
            nsmap={'xades': NS_XADES},
            Target=f'#{SIGNATURE_ID}'
        )
        signed_properties = etree.SubElement(qualifying_properties, _xades('SignedProperties'), Id=SIGNED_PROPERTIES_ID)
        signed_sig_props = etree.SubElement(signed_properties, _xades('SignedSignatureProperties'))

        signing_time_elem = etree.SubElement(signed_sig_props, _xades('SigningTime'))
        signing_time_elem.text = format_signing_time(self._now(), self.clock_skew_seconds)

        signing_cert = etree.SubElement(signed_sig_props, _xades('SigningCertificate'))
        cert_elem = etree.SubElement(signing_cert, _xades('Cert'))
        cert_digest_elem = etree.SubElement(cert_elem, _xades('CertDigest'))
        etree.SubElement(cert_digest_elem, _ds('DigestMethod'), Algorithm=ALG_SHA256)
        etree.SubElement(cert_digest_elem, _ds('DigestValue')).text = _sha256_b64(cert_der)

        issuer_serial = etree.SubElement(cert_elem, _xades('IssuerSerial'))
        etree.SubElement(issuer_serial, _ds('X509IssuerName')).text = issuer
        etree.SubElement(issuer_serial, _ds('X509SerialNumber')).text = serial

        return signed_properties

    def _add_reference(self, signed_info, uri, transforms, ref_type=None):
        attrs = {'URI': uri}
        if ref_type:
            attrs['Type'] = ref_type
        reference = etree.SubElement(signed_info, _ds('Reference'), **attrs)
        transforms_elem = etree.SubElement(reference, _ds('Transforms'))
        for algorithm in transforms:
            etree.SubElement(transforms_elem, _ds('Transform'), Algorithm=algorithm)
        etree.SubElement(reference, _ds('DigestMethod'), Algorithm=ALG_SHA256)
        return etree.SubElement(reference, _ds('DigestValue'))

    def sign(self, xml_content: str) -> str:
        """
        Sign XML document with an enveloped XAdES-BES signature.

        Args:
            xml_content: XML to sign

        Returns:
            Signed XML as string

        Raises:
            ksefKeyCertificateMismatch: private key does not belong to the certificate
            ksefInputValidationError: unsupported key type or malformed XML
            ksefSignatureDecodingError: key returned an undecodable ECDSA signature
        """
        if not verify_key_matches_certificate(self.certificate, self.private_key):
            raise ksefError.ksefKeyCertificateMismatch("Private key does not match certificate")

        algorithm = self.signature_algorithm()
        self.logger.debug(f"Signing with {algorithm}")

        if isinstance(xml_content, str):
            xml_content = xml_content.encode('utf-8')
        try:
            doc = etree.fromstring(xml_content)
        except etree.XMLSyntaxError as e:
            raise ksefError.ksefInputValidationError(f"Cannot sign malformed XML: {e}")

        document_digest = _sha256_b64(ksefCanonical.exclusive_c14n(doc))

        signature = etree.Element(_ds('Signature'), nsmap={None: NS_DS}, Id=SIGNATURE_ID)
        signed_info = etree.SubElement(signature, _ds('SignedInfo'))
        etree.SubElement(signed_info, _ds('CanonicalizationMethod'), Algorithm=ksefCanonical.C14N)
        etree.SubElement(signed_info, _ds('SignatureMethod'), Algorithm=algorithm)

        doc_digest_elem = self._add_reference(signed_info, '', (ALG_ENVELOPED, ksefCanonical.EXC_C14N))
        props_digest_elem = self._add_reference(
            signed_info, f'#{SIGNED_PROPERTIES_ID}', (ksefCanonical.EXC_C14N,), SIGNED_PROPERTIES_TYPE
        )

        sig_value = etree.SubElement(signature, _ds('SignatureValue'))

        key_info = etree.SubElement(signature, _ds('KeyInfo'))
        x509_data = etree.SubElement(key_info, _ds('X509Data'))
        cert_der = self.certificate.public_bytes(serialization.Encoding.DER)
        etree.SubElement(x509_data, _ds('X509Certificate')).text = base64.b64encode(cert_der).decode()

        object_elem = etree.SubElement(signature, _ds('Object'))
        signed_properties = self._build_qualifying_properties(object_elem)

        # Digests are taken in place so a verifier sees the same namespace context
        doc.append(signature)
        doc_digest_elem.text = document_digest
        props_digest_elem.text = _sha256_b64(ksefCanonical.exclusive_c14n(signed_properties))

        signed_info_c14n = ksefCanonical.inclusive_c14n(signed_info)
        sig_value.text = base64.b64encode(self._sign_bytes(signed_info_c14n)).decode()

        self.logger.debug("XML signed successfully (XAdES)")
        return XML_DECLARATION + etree.tostring(doc, encoding='unicode')
