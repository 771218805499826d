import os
import re
import base64
import datetime

from urllib.parse import quote

from lxml import etree

from ksefsend import ksefError

_FRACTION_RE = re.compile(r'(\.\d+)')
_NIP_RE = re.compile(r'^\d{10}$')
_ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_QR_DATE_RE = re.compile(r'^\d{2}-\d{2}-\d{4}$')


def parse_timestamp(value) -> datetime.datetime:
    """
    Parse an ISO-8601 timestamp returned by KSeF.

    KSeF renders timestamps the .NET way ("2025-10-18T08:15:00.1234567+00:00"),
    so the fraction is cut down to microseconds before parsing. Naive values are
    treated as UTC.

    Raises:
        ksefInputValidationError: when the value is empty or not a valid instant
    """
    if not value or not isinstance(value, str):
        raise ksefError.ksefInputValidationError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[1:7].ljust(6, '0'), text, count=1)

    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        raise ksefError.ksefInputValidationError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def timestamp_to_ms(value) -> int:
    return int(parse_timestamp(value).timestamp() * 1000)


def _strip_namespaces(root):
    for elem in root.iter(tag=etree.Element):
        if '}' in elem.tag:
            elem.tag = elem.tag.split('}')[1]
    return root


def _parse_invoice(xml_content):
    if isinstance(xml_content, str):
        xml_content = xml_content.encode('utf-8')
    try:
        root = etree.fromstring(xml_content)
    except etree.XMLSyntaxError as e:
        raise ksefError.ksefInputValidationError(f"Invoice XML is not well-formed: {e}")
    return _strip_namespaces(root)


def extract_seller_nip(xml_content) -> str:
    root = _parse_invoice(xml_content)

    seller = root.find('.//Podmiot1')
    candidates = seller.iterfind('.//NIP') if seller is not None else []
    for nip in list(candidates) + list(root.iterfind('.//NIP')):
        value = (nip.text or '').strip()
        if _NIP_RE.match(value):
            return value

    raise ksefError.ksefInputValidationError("Cannot extract seller NIP from XML")


def extract_issue_date(xml_content) -> str:
    root = _parse_invoice(xml_content)
    raw = (root.findtext('.//P_1') or '').strip()
    if not raw:
        raise ksefError.ksefInputValidationError("Cannot extract issue date (P_1) from XML")

    if _ISO_DATE_RE.match(raw[:10]):
        return raw[:10]
    return raw


def format_date_for_qr(date_str: str) -> str:
    """YYYY-MM-DD (optionally with a time part) -> DD-MM-YYYY."""
    s = str(date_str).strip()
    if _QR_DATE_RE.match(s):
        return s

    iso_part = s[:10]
    if _ISO_DATE_RE.match(iso_part):
        yyyy, mm, dd = iso_part.split('-')
        return f"{dd}-{mm}-{yyyy}"

    raise ksefError.ksefInputValidationError(f"Unsupported date format: {s!r}")


def normalize_to_base64url(hash_value: str) -> str:
    """Accepts base64url, base64 or hex SHA-256 and returns unpadded base64url."""
    v = str(hash_value or '').strip()
    if not v:
        raise ksefError.ksefInputValidationError("Empty hash")

    if re.fullmatch(r'[a-fA-F0-9]{64}', v):
        v = base64.b64encode(bytes.fromhex(v)).decode()

    if re.fullmatch(r'[A-Za-z0-9+/=_\-]+', v):
        return v.split('=')[0].replace('+', '-').replace('/', '_')

    raise ksefError.ksefInputValidationError("Unsupported hash format")


def build_verification_url(qr_base_url: str, seller_nip: str, issue_date_for_qr: str, hash_base64url: str) -> str:
    return (
        f"{qr_base_url}/invoice/{quote(seller_nip, safe='')}"
        f"/{quote(issue_date_for_qr, safe='')}/{quote(hash_base64url, safe='')}"
    )


def safe_filename(ksef_number: str) -> str:
    return ksef_number.replace('/', '_').replace('\\', '_')


def create_filename(filename, path=".", prefix_filename="ksef", fileextension=".json"):
    str_timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    new_filename = f"{prefix_filename}_{safe_filename(filename)}_{str_timestamp}{fileextension}"
    return os.path.join(path, new_filename)
