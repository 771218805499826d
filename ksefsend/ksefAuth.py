import enum
import logging

from ksefsend import ksefError
from ksefsend import ksefMisc
from ksefsend import ksefModels
from ksefsend import ksefRetry

DEFAULT_POLL_INTERVAL_MS = 1200
DEFAULT_MAX_WAIT_MS = 30000
STATUS_REQUEST_TIMEOUT = 15


class AuthPhase(enum.Enum):
    IDLE = 'idle'
    CHALLENGE_OBTAINED = 'challenge_obtained'
    REQUEST_SIGNED = 'request_signed'
    SUBMITTED = 'submitted'
    POLLING = 'polling'
    AUTHENTICATED = 'authenticated'
    FAILED = 'failed'


def extract_status_code(status: dict):
    status_obj = status.get('status') or {}
    code = status_obj.get('code')
    if code is None:
        code = status.get('processingCode')
    return int(code) if code is not None else None


def is_auth_success(status: dict, code) -> bool:
    return code == 200 or 'upo' in status or 'elementReferenceNumber' in status


def is_auth_error(status: dict, code) -> bool:
    return (code is not None and code >= 400) or 'exception' in status


def auth_error_message(status: dict) -> str:
    exception = status.get('exception') or {}
    status_obj = status.get('status') or {}
    return (
        exception.get('serviceMessage')
        or status_obj.get('description')
        or status.get('processingDescription')
        or 'Unknown error'
    )


class ksefAuthService:
    """
    Certificate (XAdES) authentication against KSeF.

    Flow:
    1. Get challenge from /auth/challenge
    2. Build and sign XML AuthTokenRequest
    3. Send to /auth/xades-signature
    4. Poll authorization status with the temporary token
    5. Exchange for accessToken
    """

    def __init__(
        self,
        transport,
        crypto,
        context_value: str,
        context_type: str = 'Nip',
        subject_identifier_type: str = 'certificateSubject',
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        poller: ksefRetry.ksefPoller = None,
        logger: logging.Logger = None
    ):
        self.transport = transport
        self.crypto = crypto
        self.context_value = context_value
        self.context_type = context_type
        self.subject_identifier_type = subject_identifier_type
        self.poll_interval_ms = poll_interval_ms
        self.max_wait_ms = max_wait_ms
        self.logger = logger or logging.getLogger(__name__)
        self.poller = poller or ksefRetry.ksefPoller(logger=self.logger)
        self.phase = AuthPhase.IDLE

    def get_challenge(self) -> ksefModels.Challenge:
        data = {
            "contextIdentifier": {
                "type": self.context_type,
                "value": self.context_value
            }
        }
        response = self.transport.request('POST', '/auth/challenge', data=data)

        challenge = response.get('challenge')
        if not challenge:
            raise ksefError.ksefProtocolViolation(
                message="No challenge received from KSeF",
                response_data=response
            )

        timestamp = response.get('timestamp')
        try:
            issued_at_ms = ksefMisc.timestamp_to_ms(timestamp)
        except ksefError.ksefInputValidationError:
            raise ksefError.ksefInputValidationError(
                f"Cannot extract timestamp from challenge response: {timestamp!r}",
                response_data=response
            )

        self.logger.info(f"Received challenge: {challenge[:20]}...")
        return ksefModels.Challenge(challenge=challenge, issued_at_ms=issued_at_ms)

    def submit_signed_request(self, signed_xml: str) -> ksefModels.AuthSession:
        self.logger.info("Sending signed XML to /auth/xades-signature...")
        response = self.transport.request('POST', '/auth/xades-signature', xml_data=signed_xml)

        reference_number = response.get('referenceNumber')
        token = (response.get('authenticationToken') or {}).get('token')
        if not reference_number or not token:
            raise ksefError.ksefProtocolViolation(
                message="Missing referenceNumber or authenticationToken in response",
                response_data=response
            )

        self.logger.info(f"Received authenticationToken, referenceNumber: {reference_number}")
        return ksefModels.AuthSession(
            reference_number=reference_number,
            temporary_token=token,
            timestamp=response.get('timestamp')
        )

    def check_auth_status(self, auth_session: ksefModels.AuthSession) -> dict:
        return self.transport.request(
            'GET',
            f'/auth/{auth_session.reference_number}',
            token=auth_session.temporary_token,
            timeout=STATUS_REQUEST_TIMEOUT
        )

    def wait_for_completion(self, auth_session: ksefModels.AuthSession) -> dict:
        def attempt():
            status = self.check_auth_status(auth_session)
            code = extract_status_code(status)

            if is_auth_success(status, code):
                self.logger.info("Authorization completed successfully")
                return True, status

            if is_auth_error(status, code):
                message = auth_error_message(status)
                raise ksefError.ksefServerBusinessError(
                    f"Authentication failed with status {code}: {message}",
                    code=code,
                    response_data=status
                )

            self.logger.info(f"Authorization in progress (status code: {code})...")
            return False, status

        try:
            return self.poller.run(
                attempt,
                interval=self.poll_interval_ms / 1000,
                max_wait=self.max_wait_ms / 1000,
                retry_on=(ksefError.ksefTimeout,),
                label='auth status'
            )
        except ksefError.ksefAuthenticationTimeout:
            raise
        except ksefError.ksefTimeout as e:
            raise ksefError.ksefAuthenticationTimeout(
                f"Authentication timeout after {self.max_wait_ms}ms",
                last_value=e.last_value
            )

    def redeem_token(self, auth_session: ksefModels.AuthSession) -> str:
        response = self.transport.request('POST', '/auth/token/redeem', token=auth_session.temporary_token)

        access_token = (response.get('accessToken') or {}).get('token')
        if not access_token:
            raise ksefError.ksefProtocolViolation(
                message="Missing accessToken in redeem response",
                response_data=response
            )
        return access_token

    def authenticate(self) -> ksefModels.AuthResult:
        self.phase = AuthPhase.IDLE
        try:
            return self._authenticate()
        except ksefError.ksefError:
            self.phase = AuthPhase.FAILED
            raise

    def _authenticate(self) -> ksefModels.AuthResult:
        self.logger.info(f"Getting challenge for {self.context_type}: {self.context_value}")
        challenge = self.get_challenge()
        self.phase = AuthPhase.CHALLENGE_OBTAINED

        self.logger.info("Building and signing AuthTokenRequest XML...")
        xml_content = self.crypto.build_auth_request_xml(
            challenge.challenge,
            self.context_value,
            context_type=self.context_type,
            subject_identifier_type=self.subject_identifier_type
        )
        signed_xml = self.crypto.sign_xml(xml_content)
        self.phase = AuthPhase.REQUEST_SIGNED

        auth_session = self.submit_signed_request(signed_xml)
        self.phase = AuthPhase.SUBMITTED

        self.phase = AuthPhase.POLLING
        self.wait_for_completion(auth_session)

        self.logger.info("Exchanging authenticationToken for accessToken...")
        access_token = self.redeem_token(auth_session)
        self.phase = AuthPhase.AUTHENTICATED

        return ksefModels.AuthResult(
            access_token=access_token,
            session_token=auth_session.temporary_token,
            timestamp=auth_session.timestamp
        )
