import enum
import logging
import datetime

from dataclasses import dataclass, field
from typing import Optional, List

from ksefsend import ksefError
from ksefsend import ksefMisc

logger = logging.getLogger(__name__)

# Observed terminal processing codes of an online session. Not a published
# contract, so managers and the client accept their own set.
TERMINAL_SESSION_STATUS_CODES = frozenset({200, 405, 415, 420, 430, 435, 440, 445, 500})

SYMMETRIC_KEY_ENCRYPTION = 'SymmetricKeyEncryption'

_CERTIFICATE_LIST_FIELDS = ('certificates', 'publicKeys', 'items')


def is_terminal_session_status(code, terminal_codes=None) -> bool:
    codes = TERMINAL_SESSION_STATUS_CODES if terminal_codes is None else terminal_codes
    return code in codes


def parse_status_code(code) -> Optional[int]:
    if code is None:
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        raise ksefError.ksefProtocolViolation(f"Invalid status code in KSeF response: {code!r}")


@dataclass(frozen=True)
class Challenge:
    challenge: str
    issued_at_ms: int


@dataclass(frozen=True)
class AuthSession:
    reference_number: str
    temporary_token: str
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    session_token: str
    timestamp: Optional[str] = None


@dataclass
class EncryptionKeys:
    symmetric_key: bytearray
    iv: bytearray
    wrapped_key: bytes

    def __repr__(self):
        return f"EncryptionKeys(wiped={self.wiped})"

    @property
    def wiped(self) -> bool:
        return not any(self.symmetric_key) and not any(self.iv)

    def wipe(self):
        for buf in (self.symmetric_key, self.iv):
            for i in range(len(buf)):
                buf[i] = 0


@dataclass(frozen=True)
class EncryptedInvoice:
    ciphertext: bytes
    plain_hash: str
    plain_size: int
    cipher_hash: str
    cipher_size: int


@dataclass(frozen=True)
class SendInvoiceResult:
    reference_number: str
    invoice_hash: str
    invoice_size: int
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    code: Optional[int]
    description: str = ''
    details: List[str] = field(default_factory=list)
    invoice_count: Optional[int] = None
    successful_invoice_count: Optional[int] = None
    failed_invoice_count: Optional[int] = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionStatus':
        data = data or {}
        status = data.get('status') or {}
        code = status.get('code')
        return cls(
            code=parse_status_code(code),
            description=status.get('description') or '',
            details=list(status.get('details') or []),
            invoice_count=data.get('invoiceCount'),
            successful_invoice_count=data.get('successfulInvoiceCount'),
            failed_invoice_count=data.get('failedInvoiceCount'),
            raw=data,
        )


@dataclass(frozen=True)
class PublicKeyCertificate:
    certificate: str
    usage: List[str] = field(default_factory=list)
    valid_from: Optional[datetime.datetime] = None
    valid_to: Optional[datetime.datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'PublicKeyCertificate':
        usage = data.get('usage') or []
        if isinstance(usage, str):
            usage = [usage]
        return cls(
            certificate=data.get('certificate') or data.get('publicKey') or '',
            usage=list(usage),
            valid_from=_optional_timestamp(data.get('validFrom')),
            valid_to=_optional_timestamp(data.get('validTo')),
        )

    def is_valid_at(self, moment: datetime.datetime) -> bool:
        if self.valid_from is None or self.valid_to is None:
            return False
        return self.valid_from <= moment <= self.valid_to

    def can_encrypt_symmetric_key(self) -> bool:
        return SYMMETRIC_KEY_ENCRYPTION in self.usage


def _optional_timestamp(value):
    if not value:
        return None
    try:
        return ksefMisc.parse_timestamp(value)
    except ksefError.ksefInputValidationError:
        logger.warning(f"Ignoring unparseable certificate date: {value!r}")
        return None


def normalize_certificate_list(response) -> List[PublicKeyCertificate]:
    """
    Resolve the public-key-certificates response into a list.

    KSeF has returned a bare array as well as objects wrapping the array in
    'certificates', 'publicKeys' or 'items'.
    """
    if isinstance(response, list):
        entries = response
    elif isinstance(response, dict):
        entries = []
        for name in _CERTIFICATE_LIST_FIELDS:
            if response.get(name):
                entries = response[name]
                break
    else:
        entries = []

    return [PublicKeyCertificate.from_dict(entry) for entry in entries if isinstance(entry, dict)]


class SessionPhase(enum.Enum):
    CLOSED = 'closed'
    OPENING = 'opening'
    ACTIVE = 'active'
    CLOSING = 'closing'


@dataclass(frozen=True)
class ksefSessionState:
    """
    Online session state value.

    ACTIVE and CLOSING carry both the reference number and the keys. CLOSED
    and OPENING never carry keys; CLOSED may remember the reference number of
    the last session so its status can still be polled.
    """
    phase: SessionPhase = SessionPhase.CLOSED
    reference_number: Optional[str] = None
    keys: Optional[EncryptionKeys] = None

    def __post_init__(self):
        if self.phase in (SessionPhase.ACTIVE, SessionPhase.CLOSING):
            if not self.reference_number or self.keys is None:
                raise ValueError(f"{self.phase.name} session requires reference number and keys")
        elif self.keys is not None:
            raise ValueError(f"{self.phase.name} session cannot hold key material")

    @classmethod
    def closed(cls, reference_number: str = None) -> 'ksefSessionState':
        return cls(SessionPhase.CLOSED, reference_number)

    @classmethod
    def opening(cls) -> 'ksefSessionState':
        return cls(SessionPhase.OPENING)

    @classmethod
    def active(cls, reference_number: str, keys: EncryptionKeys) -> 'ksefSessionState':
        return cls(SessionPhase.ACTIVE, reference_number, keys)

    def closing(self) -> 'ksefSessionState':
        return ksefSessionState(SessionPhase.CLOSING, self.reference_number, self.keys)


@dataclass
class SubmitMeta:
    seller_id: str = ''
    issue_date: str = ''
    hash_base64url: str = ''
    verification_url: str = ''

    def to_dict(self) -> dict:
        return {
            'sellerId': self.seller_id,
            'issueDate': self.issue_date,
            'hashBase64Url': self.hash_base64url,
            'verificationUrl': self.verification_url,
        }


@dataclass
class SubmitResult:
    status: int
    session_reference_number: str
    error: Optional[str] = None
    invoice_ksef_number: Optional[str] = None
    invoice_reference_number: str = ''
    invoice_hash: str = ''
    invoice_size: int = 0
    meta: SubmitMeta = field(default_factory=SubmitMeta)
    upo: Optional[dict] = None
    qr_code: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    def to_dict(self) -> dict:
        result = {'status': self.status}
        if self.error:
            result['error'] = self.error
        result.update({
            'invoiceKsefNumber': self.invoice_ksef_number,
            'invoiceReferenceNumber': self.invoice_reference_number,
            'sessionReferenceNumber': self.session_reference_number,
            'invoiceHash': self.invoice_hash,
            'invoiceSize': self.invoice_size,
            'meta': self.meta.to_dict(),
        })
        if self.upo:
            result['upo'] = self.upo
        if self.qr_code:
            result['qrCode'] = self.qr_code
        return result
