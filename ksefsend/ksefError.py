class ksefError(Exception):
    """Exception for KSeF API errors."""
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class ksefInputValidationError(ksefError):
    """Malformed configuration or input data (dates, identifiers, PEM material)."""


class ksefKeyCertificateMismatch(ksefError):
    """Private key does not belong to the signing certificate."""


class ksefSignatureDecodingError(ksefError):
    """Raw signature returned by the key could not be decoded."""


class ksefProtocolViolation(ksefError):
    """KSeF response is missing a field the protocol requires."""


class ksefNoValidEncryptionCertificate(ksefError):
    pass


class ksefSessionStateError(ksefError):
    """Operation is not allowed in the current online session state."""


class ksefServerBusinessError(ksefError):
    """KSeF reported an error code inside an otherwise successful response."""
    def __init__(self, message: str, code: int = None, response_data: dict = None):
        self.code = code
        super().__init__(message, response_data=response_data)


class ksefTimeout(ksefError):
    """A request or a polling loop ran out of time or attempts."""
    def __init__(self, message: str, last_value=None):
        self.last_value = last_value
        super().__init__(message)


class ksefAuthenticationTimeout(ksefTimeout):
    pass


class ksefHttpError(ksefError):
    """HTTP error status returned by KSeF."""
    def __init__(
        self,
        message: str,
        status_code: int = None,
        response_data: dict = None,
        retry_after: float = None,
        url: str = None,
        method: str = None
    ):
        self.retry_after = retry_after
        self.url = url
        self.method = method
        super().__init__(message, status_code=status_code, response_data=response_data)


class ksefRateLimited(ksefHttpError):
    """HTTP 429 - retry after the server supplied delay."""


class ksefNotYetVisible(ksefHttpError):
    """HTTP 404 - resource not visible on the server side yet."""


class ksefConnectionError(ksefError):
    """Network level failure talking to KSeF (DNS, refused connection, TLS)."""
