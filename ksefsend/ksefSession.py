import base64
import logging
import datetime

from typing import List

from ksefsend import ksefError
from ksefsend import ksefCrypto
from ksefsend import ksefModels
from ksefsend import ksefRetry

DEFAULT_FORM_CODE = {
    'systemCode': 'FA (3)',
    'schemaVersion': '1-0E',
    'value': 'FA',
}

STATUS_REQUEST_TIMEOUT = 20


def select_encryption_certificate(
    certificates: List[ksefModels.PublicKeyCertificate],
    now: datetime.datetime
) -> ksefModels.PublicKeyCertificate:
    """Pick the newest valid certificate usable for symmetric key encryption."""
    usable = [
        cert for cert in certificates
        if cert.certificate and cert.can_encrypt_symmetric_key() and cert.is_valid_at(now)
    ]
    if not usable:
        raise ksefError.ksefNoValidEncryptionCertificate(
            "No valid KSeF certificate for SymmetricKeyEncryption"
        )
    return max(usable, key=lambda cert: cert.valid_from)


class ksefSessionManager:
    """
    Online (interactive) KSeF session.

    Holds the session reference number and the AES key material between
    open() and close(). Not safe for concurrent use; callers submit through
    one session at a time.
    """

    def __init__(
        self,
        transport,
        access_token: str = None,
        crypto: ksefCrypto.ksefCryptoOperations = None,
        terminal_status_codes=None,
        poller: ksefRetry.ksefPoller = None,
        now=None,
        logger: logging.Logger = None
    ):
        self.transport = transport
        self.access_token = access_token
        self.crypto = crypto or ksefCrypto.ksefCryptoOperations()
        self.terminal_status_codes = (
            frozenset(terminal_status_codes) if terminal_status_codes is not None
            else ksefModels.TERMINAL_SESSION_STATUS_CODES
        )
        self.logger = logger or logging.getLogger(__name__)
        self.poller = poller or ksefRetry.ksefPoller(logger=self.logger)
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self.state = ksefModels.ksefSessionState.closed()

    @property
    def is_active(self) -> bool:
        return self.state.phase == ksefModels.SessionPhase.ACTIVE

    @property
    def reference_number(self):
        return self.state.reference_number

    def update_access_token(self, token: str):
        self.access_token = token

    def _require_active(self):
        if not self.is_active:
            raise ksefError.ksefSessionStateError(
                f"No active session (state: {self.state.phase.name}). Call open() first."
            )

    def get_public_certificates(self) -> List[ksefModels.PublicKeyCertificate]:
        self.logger.info("Fetching KSeF public key certificates...")
        response = self.transport.request('GET', '/security/public-key-certificates', token=self.access_token)
        return ksefModels.normalize_certificate_list(response)

    def open(self, system_code: str = None, schema_version: str = None, value: str = None) -> str:
        """
        Open an online session, or return the reference of the one already open.

        Returns:
            session reference number
        """
        if self.is_active:
            self.logger.warning(f"Session already active: {self.state.reference_number}")
            return self.state.reference_number

        if not self.access_token:
            raise ksefError.ksefSessionStateError("Not authenticated. Access token required.")
        if self.state.phase != ksefModels.SessionPhase.CLOSED:
            raise ksefError.ksefSessionStateError(f"Cannot open session in state {self.state.phase.name}")

        self.logger.info("Opening session...")
        self.state = ksefModels.ksefSessionState.opening()
        keys = None
        try:
            certificate = select_encryption_certificate(self.get_public_certificates(), self._now())

            keys = self.crypto.generate_session_keys()
            keys.wrapped_key = self.crypto.wrap_symmetric_key(certificate.certificate, keys.symmetric_key)

            data = {
                'formCode': {
                    'systemCode': system_code or DEFAULT_FORM_CODE['systemCode'],
                    'schemaVersion': schema_version or DEFAULT_FORM_CODE['schemaVersion'],
                    'value': value or DEFAULT_FORM_CODE['value'],
                },
                'encryption': {
                    'encryptedSymmetricKey': base64.b64encode(keys.wrapped_key).decode(),
                    'initializationVector': base64.b64encode(bytes(keys.iv)).decode(),
                },
            }
            response = self.transport.request('POST', '/sessions/online', data=data, token=self.access_token)

            reference_number = response.get('referenceNumber')
            if not reference_number:
                raise ksefError.ksefProtocolViolation(
                    message="Missing session referenceNumber in response",
                    response_data=response
                )
        except Exception:
            if keys is not None:
                keys.wipe()
            self.state = ksefModels.ksefSessionState.closed()
            raise

        self.state = ksefModels.ksefSessionState.active(reference_number, keys)
        self.logger.info(f"Session opened: {reference_number}")
        return reference_number

    def send_invoice(self, invoice_xml, offline_mode: bool = False) -> ksefModels.SendInvoiceResult:
        self._require_active()

        plaintext = invoice_xml.encode('utf-8') if isinstance(invoice_xml, str) else invoice_xml
        encrypted = self.crypto.encrypt_invoice(self.state.keys, plaintext)

        data = {
            'invoiceHash': encrypted.plain_hash,
            'invoiceSize': encrypted.plain_size,
            'encryptedInvoiceHash': encrypted.cipher_hash,
            'encryptedInvoiceSize': encrypted.cipher_size,
            'encryptedInvoiceContent': base64.b64encode(encrypted.ciphertext).decode(),
            'offlineMode': offline_mode,
        }

        self.logger.info("Sending invoice...")
        response = self.transport.request(
            'POST',
            f'/sessions/online/{self.state.reference_number}/invoices',
            data=data,
            token=self.access_token
        )

        reference_number = response.get('referenceNumber')
        if not reference_number:
            raise ksefError.ksefProtocolViolation(
                message="Missing invoice referenceNumber in response",
                response_data=response
            )

        self.logger.info(f"Invoice sent: {reference_number}")
        return ksefModels.SendInvoiceResult(
            reference_number=reference_number,
            invoice_hash=encrypted.plain_hash,
            invoice_size=encrypted.plain_size,
            timestamp=response.get('timestamp')
        )

    def close(self):
        self._require_active()

        active = self.state
        self.logger.info(f"Closing session {active.reference_number}...")
        self.state = active.closing()
        try:
            self.transport.request(
                'POST',
                f'/sessions/online/{active.reference_number}/close',
                token=self.access_token
            )
        except Exception:
            self.state = active
            raise

        active.keys.wipe()
        self.state = ksefModels.ksefSessionState.closed(active.reference_number)
        self.logger.info(f"Session closed: {active.reference_number}")

    def force_close(self):
        if self.state.keys is not None:
            self.state.keys.wipe()
        self.state = ksefModels.ksefSessionState.closed()
        self.logger.warning("Session force closed (no API call)")

    def get_status(self, reference_number: str = None) -> ksefModels.SessionStatus:
        reference_number = reference_number or self.state.reference_number
        if not reference_number:
            raise ksefError.ksefSessionStateError("No session reference number")

        response = self.transport.request(
            'GET',
            f'/sessions/{reference_number}',
            token=self.access_token,
            timeout=STATUS_REQUEST_TIMEOUT
        )
        return ksefModels.SessionStatus.from_dict(response)

    def poll_until_terminal(self, interval_ms: int, timeout_ms: int) -> ksefModels.SessionStatus:
        """
        Poll the session status until it reaches a terminal code.

        Returns the last status seen when the timeout runs out; raises
        ksefTimeout only when no status was received at all.
        """
        def attempt():
            status = self.get_status()
            self.logger.debug(f"Session status: {status.code} {status.description}")
            return ksefModels.is_terminal_session_status(status.code, self.terminal_status_codes), status

        try:
            return self.poller.run(
                attempt,
                interval=interval_ms / 1000,
                max_wait=timeout_ms / 1000,
                label='session status'
            )
        except ksefError.ksefTimeout as e:
            if e.last_value is not None:
                return e.last_value
            raise ksefError.ksefTimeout(
                f"Timeout waiting for session terminal status: {self.state.reference_number}"
            )
