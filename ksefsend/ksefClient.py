import logging

from ksefsend import ksefAuth
from ksefsend import ksefConfig
from ksefsend import ksefCrypto
from ksefsend import ksefError
from ksefsend import ksefInvoice
from ksefsend import ksefMisc
from ksefsend import ksefModels
from ksefsend import ksefRetry
from ksefsend import ksefSession
from ksefsend import ksefTransport
from ksefsend import ksefXades

PACKAGE_LOGGER = 'ksefsend'


class ksefClient:
    """
    Sends invoices to KSeF through an online session.

    One client instance handles one submission at a time. The access token is
    kept in memory only and reused until the client is discarded.
    """

    def __init__(
        self,
        config: ksefConfig.ksefClientConfig,
        transport: ksefTransport.ksefTransport = None,
        crypto: ksefCrypto.ksefCryptoOperations = None,
        clock: ksefRetry.ksefClock = None,
        now=None,
        logger: logging.Logger = None
    ):
        """
        Initialize KSeF client.

        Args:
            config: validated client configuration
            transport: HTTP transport, built from config when omitted
            crypto: cryptographic operations, built from the config certificate and key when omitted
            clock: time source for every polling loop
            now: callable returning the current UTC datetime
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        if config.debug:
            # without an injected logger the whole package follows the debug switch
            (logger or logging.getLogger(PACKAGE_LOGGER)).setLevel(config.log_level)

        self.transport = transport or ksefTransport.ksefTransport(
            config.base_url,
            timeout=config.request_timeout_ms / 1000,
            logger=self.logger
        )
        self.crypto = crypto or self._build_crypto(config, now)
        self.poller = ksefRetry.ksefPoller(clock, logger=self.logger)

        self.access_token = None
        self.session_token = None

        self.auth_service = ksefAuth.ksefAuthService(
            self.transport,
            self.crypto,
            config.nip,
            context_type=config.context_type,
            subject_identifier_type=config.subject_identifier_type,
            poll_interval_ms=config.poll_interval_ms,
            max_wait_ms=config.max_wait_ms,
            poller=self.poller,
            logger=self.logger
        )
        self.session_manager = ksefSession.ksefSessionManager(
            self.transport,
            crypto=self.crypto,
            terminal_status_codes=config.terminal_status_codes,
            poller=self.poller,
            now=now,
            logger=self.logger
        )
        self.invoice_service = ksefInvoice.ksefInvoiceService(
            self.transport,
            lambda: self.access_token,
            config.qr_base_url,
            poller=self.poller,
            now=now,
            logger=self.logger
        )

    def _build_crypto(self, config: ksefConfig.ksefClientConfig, now) -> ksefCrypto.ksefCryptoOperations:
        certificate = ksefCrypto.load_certificate(config.certificate)
        private_key = ksefCrypto.load_private_key(config.private_key, config.key_password)
        signer = ksefXades.ksefXadesSigner(
            certificate,
            private_key,
            clock_skew_seconds=config.signing_clock_skew_seconds,
            now=now,
            logger=self.logger
        )
        return ksefCrypto.ksefCryptoOperations(signer, logger=self.logger)

    @classmethod
    def from_certificate(cls, cert_path: str, key_path: str, nip: str, key_password: str = None,
                         environment: str = 'prod', **kwargs):
        """
        Create KSeF client for certificate (XAdES) authentication.

        Args:
            cert_path: Path to X.509 certificate (PEM or DER)
            key_path: Path to private key (PEM or DER)
            nip: NIP of the entity
            key_password: Password for encrypted private key
            environment: API environment ('test', 'demo', 'prod')
            **kwargs: remaining ksefClientConfig fields
        """
        config = ksefConfig.ksefClientConfig(
            nip=nip,
            certificate=ksefCrypto.read_file(cert_path),
            private_key=ksefCrypto.read_file(key_path),
            key_password=key_password,
            environment=environment,
            **kwargs
        )
        return cls(config)

    def authenticate(self) -> ksefModels.AuthResult:
        result = self.auth_service.authenticate()
        self.access_token = result.access_token
        self.session_token = result.session_token
        self.session_manager.update_access_token(result.access_token)
        self.logger.info("Authenticated successfully")
        return result

    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def ensure_authenticated(self):
        if not self.is_authenticated():
            self.authenticate()

    def get_config(self) -> dict:
        return self.config.without_secrets()

    def send_invoice(self, invoice_xml: str, upo: bool = False, qr: bool = False) -> ksefModels.SubmitResult:
        """
        Submit one invoice and collect everything KSeF reports about it.

        Authentication and session opening errors are raised. Everything after
        the session is open is recorded in the result instead: a failed send
        sets status 500, the session status overrides it once KSeF reports a
        final code, and missing metadata, UPO or QR leave their fields empty.

        Args:
            invoice_xml: invoice document (FA(3) XML)
            upo: also download the UPO once the invoice is accepted
            qr: also render the verification QR code once the invoice is accepted

        Returns:
            SubmitResult
        """
        if not invoice_xml or not isinstance(invoice_xml, str):
            raise ksefError.ksefInputValidationError("Invalid invoice XML")

        self.ensure_authenticated()
        session_reference_number = self.session_manager.open()

        result = ksefModels.SubmitResult(status=200, session_reference_number=session_reference_number)

        try:
            sent = self.session_manager.send_invoice(invoice_xml)
            result.invoice_reference_number = sent.reference_number
            result.invoice_hash = sent.invoice_hash
            result.invoice_size = sent.invoice_size
            self._close_session()
        except Exception as e:
            self.logger.error(f"Invoice send failed: {e}")
            result.error = str(e)
            result.status = 500
            self._emergency_close()

        self._apply_session_status(result)

        try:
            invoice = self.invoice_service.wait_for_ksef_number(
                session_reference_number,
                delay_ms=self.config.processing_delay_ms,
                max_attempts=self.config.max_polling_attempts
            )
            if invoice:
                result.invoice_ksef_number = invoice.get('ksefNumber')
                result.invoice_reference_number = result.invoice_reference_number or invoice.get('referenceNumber', '')
        except Exception as e:
            self.logger.error(f"Error fetching invoice metadata: {e}")

        result.meta = self._build_meta(invoice_xml)

        if result.ok and result.invoice_ksef_number:
            if upo:
                result.upo = self._fetch_upo(session_reference_number)
            if qr:
                result.qr_code = self._render_qr(invoice_xml, result.invoice_ksef_number)

        self.logger.info(f"Invoice submission finished with status {result.status}")
        return result

    def _close_session(self):
        try:
            self.session_manager.close()
        except Exception as e:
            self.logger.warning(f"Session close failed: {e}")
            self.session_manager.force_close()

    def _emergency_close(self):
        if not self.session_manager.is_active:
            return
        try:
            self.session_manager.close()
        except Exception as e:
            self.logger.warning(f"Emergency session close failed: {e}")
            self.session_manager.force_close()

    def _poll_session_status(self, session_reference_number: str) -> ksefModels.SessionStatus:
        terminal_codes = self.config.terminal_status_codes

        def attempt():
            status = self.session_manager.get_status(session_reference_number)
            self.logger.info(f"Session status: {status.code} {status.description}")
            done = status.code is not None and (
                ksefModels.is_terminal_session_status(status.code, terminal_codes) or status.code >= 400
            )
            return done, status

        return self.poller.run(
            attempt,
            interval=self.config.processing_delay_ms / 1000,
            max_attempts=self.config.max_polling_attempts,
            retry_on=(ksefError.ksefTimeout, ksefError.ksefConnectionError, ksefError.ksefHttpError),
            label='session status'
        )

    def _apply_session_status(self, result: ksefModels.SubmitResult):
        try:
            status = self._poll_session_status(result.session_reference_number)
        except Exception as e:
            self.logger.error(f"Session status polling failed: {e}")
            if not result.error:
                result.error = str(e)
                result.status = 500
            return

        if status.code >= 400:
            result.status = status.code
            result.error = status.description or f"Error code: {status.code}"
        else:
            result.status = status.code
            result.error = None

    def _build_meta(self, invoice_xml: str) -> ksefModels.SubmitMeta:
        meta = ksefModels.SubmitMeta()
        try:
            meta.seller_id = ksefMisc.extract_seller_nip(invoice_xml)
            meta.issue_date = ksefMisc.extract_issue_date(invoice_xml)
            meta.hash_base64url = ksefInvoice.compute_sha256_base64url(invoice_xml)
            meta.verification_url = ksefMisc.build_verification_url(
                self.config.qr_base_url,
                meta.seller_id,
                ksefMisc.format_date_for_qr(meta.issue_date),
                meta.hash_base64url
            )
        except Exception as e:
            self.logger.error(f"Cannot extract invoice data from XML: {e}")
        return meta

    def _fetch_upo(self, session_reference_number: str):
        try:
            upo = self.invoice_service.get_invoice_upo(
                session_reference_number,
                polling_delay_ms=self.config.processing_delay_ms,
                timeout_ms=self.config.upo_timeout_ms,
                max_attempts=self.config.upo_max_attempts
            )
        except Exception as e:
            self.logger.error(f"UPO download failed: {e}")
            return None
        return {'xml': upo['xml'], 'sha256Base64': upo['sha256Base64']}

    def _render_qr(self, invoice_xml: str, ksef_number: str):
        try:
            qr_code = self.invoice_service.generate_qr_code_from_xml(invoice_xml, ksef_number)
        except Exception as e:
            self.logger.error(f"QR code generation failed: {e}")
            return None
        return {'pngBase64': qr_code['qrPngBase64'], 'label': qr_code['label']}

    def download_invoice(self, ksef_number: str) -> dict:
        self.ensure_authenticated()
        return self.invoice_service.download_invoice(ksef_number)

    def get_invoice_upo(self, session_reference_number: str, **kwargs) -> dict:
        self.ensure_authenticated()
        return self.invoice_service.get_invoice_upo(session_reference_number, **kwargs)

    def get_invoice_qr_code(self, ksef_number: str, **kwargs) -> dict:
        self.ensure_authenticated()
        return self.invoice_service.get_invoice_qr_code(ksef_number, **kwargs)

    def generate_qr_code_from_xml(self, invoice_xml: str, ksef_number: str, **kwargs) -> dict:
        return self.invoice_service.generate_qr_code_from_xml(invoice_xml, ksef_number, **kwargs)

    def query_invoices(self, query: dict, **kwargs) -> dict:
        self.ensure_authenticated()
        return self.invoice_service.query_invoices(query, **kwargs)
