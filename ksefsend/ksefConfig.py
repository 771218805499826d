import re
import logging

from dataclasses import dataclass, field
from typing import Optional, FrozenSet

from ksefsend import ksefError
from ksefsend import ksefModels

KSEF_URLS = {
    'test': 'https://api-test.ksef.mf.gov.pl/v2',
    'demo': 'https://api-demo.ksef.mf.gov.pl/v2',
    'prod': 'https://api.ksef.mf.gov.pl/v2',
}

KSEF_QR_URLS = {
    'test': 'https://qr-test.ksef.mf.gov.pl',
    'demo': 'https://qr-demo.ksef.mf.gov.pl',
    'prod': 'https://qr.ksef.mf.gov.pl',
}

ENVIRONMENT_ALIASES = {
    'production': 'prod',
}

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

_NIP_RE = re.compile(r'^\d{10}$')


def resolve_environment(environment: str) -> str:
    name = ENVIRONMENT_ALIASES.get(environment, environment)
    if name not in KSEF_URLS:
        raise ksefError.ksefInputValidationError(
            f"Unknown environment: {environment}. Available: {list(KSEF_URLS.keys())}"
        )
    return name


@dataclass(frozen=True)
class ksefClientConfig:
    """
    Client configuration, validated on construction.

    certificate and private_key accept PEM text, DER bytes or already loaded
    cryptography objects; key_password unlocks an encrypted private key.
    """
    nip: str
    certificate: object = field(repr=False)
    private_key: object = field(repr=False)
    key_password: Optional[str] = field(default=None, repr=False)
    environment: str = 'prod'
    subject_identifier_type: str = 'certificateSubject'
    context_type: str = 'Nip'
    poll_interval_ms: int = 1200
    max_wait_ms: int = 30000
    request_timeout_ms: int = 30000
    processing_delay_ms: int = 3000
    max_polling_attempts: int = 8
    upo_timeout_ms: int = 60000
    upo_max_attempts: int = 40
    signing_clock_skew_seconds: int = 60
    terminal_status_codes: FrozenSet[int] = ksefModels.TERMINAL_SESSION_STATUS_CODES
    debug: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'environment', resolve_environment(self.environment))
        object.__setattr__(self, 'terminal_status_codes', frozenset(self.terminal_status_codes))

        if not self.nip:
            raise ksefError.ksefInputValidationError("Missing context identifier")
        if self.context_type not in ('Nip', 'CustomId'):
            raise ksefError.ksefInputValidationError(f"Unknown context type: {self.context_type}")
        if self.context_type == 'Nip' and not _NIP_RE.match(str(self.nip)):
            raise ksefError.ksefInputValidationError(f"Invalid NIP (expected 10 digits): {self.nip!r}")
        if self.subject_identifier_type not in ('certificateSubject', 'certificateFingerprint'):
            raise ksefError.ksefInputValidationError(
                f"Unknown subject identifier type: {self.subject_identifier_type}"
            )
        if not self.certificate or not self.private_key:
            raise ksefError.ksefInputValidationError("Certificate and private key are required")

        for name in ('poll_interval_ms', 'max_wait_ms', 'request_timeout_ms', 'processing_delay_ms',
                     'max_polling_attempts', 'upo_timeout_ms', 'upo_max_attempts'):
            if getattr(self, name) <= 0:
                raise ksefError.ksefInputValidationError(f"{name} must be positive")
        if self.signing_clock_skew_seconds < 0:
            raise ksefError.ksefInputValidationError("signing_clock_skew_seconds cannot be negative")

    @property
    def base_url(self) -> str:
        return KSEF_URLS[self.environment]

    @property
    def qr_base_url(self) -> str:
        return KSEF_QR_URLS[self.environment]

    @property
    def log_level(self) -> int:
        return logging.DEBUG if self.debug else logging.WARNING

    def without_secrets(self) -> dict:
        return {
            'nip': self.nip,
            'environment': self.environment,
            'baseUrl': self.base_url,
            'qrBaseUrl': self.qr_base_url,
            'subjectIdentifierType': self.subject_identifier_type,
            'contextType': self.context_type,
            'pollIntervalMs': self.poll_interval_ms,
            'maxWaitMs': self.max_wait_ms,
            'requestTimeoutMs': self.request_timeout_ms,
            'processingDelayMs': self.processing_delay_ms,
            'maxPollingAttempts': self.max_polling_attempts,
            'debug': self.debug,
        }


def setup_logging(debug: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT
    )
