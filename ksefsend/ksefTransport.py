import json
import logging
import datetime

from email.utils import parsedate_to_datetime

import requests

from ksefsend import ksefError

JSON = 'application/json'


def parse_retry_after(value, now: datetime.datetime = None):
    """Retry-After header as seconds; accepts delta-seconds and HTTP-date forms."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _error_details(response):
    content_type = response.headers.get('Content-Type', '')
    error_msg = f"KSeF API Error: HTTP {response.status_code}"
    error_data = {}
    try:
        if 'application/json' in content_type:
            error_data = response.json()
            if isinstance(error_data, dict):
                if 'exception' in error_data:
                    exc = error_data['exception'] or {}
                    detail_list = exc.get('exceptionDetailList') or []
                    if detail_list:
                        error_msg = detail_list[0].get('exceptionDescription', error_msg)
                    elif exc.get('serviceMessage'):
                        error_msg = exc['serviceMessage']
                elif 'message' in error_data:
                    error_msg = error_data['message']
                elif isinstance(error_data.get('status'), dict) and error_data['status'].get('description'):
                    error_msg = error_data['status']['description']
        else:
            error_data = {'raw': response.text[:500], 'content_type': content_type}
    except ValueError:
        error_data = {'raw': response.text[:500], 'content_type': content_type}
    return error_msg, error_data


class ksefTransport:
    """HTTP access to the KSeF API on top of requests."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        session: requests.Session = None,
        logger: logging.Logger = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def _headers(self, token: str = None, content_type: str = JSON, accept: str = JSON) -> dict:
        headers = {
            'Content-Type': content_type,
            'Accept': accept,
        }
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def send(
        self,
        method: str,
        endpoint: str,
        data=None,
        xml_data: str = None,
        token: str = None,
        accept: str = JSON,
        params: dict = None,
        timeout: float = None
    ) -> requests.Response:
        """
        Send a request and map HTTP errors to exceptions.

        Args:
            method: HTTP method (GET, POST, DELETE)
            endpoint: API endpoint (without base_url) or an absolute URL
            data: JSON data to send
            xml_data: XML data to send
            token: bearer token, omitted when None
            accept: expected response format
            params: query string parameters
            timeout: per call timeout in seconds, defaults to the transport timeout

        Returns:
            requests.Response with a status below 400

        Raises:
            ksefRateLimited: HTTP 429
            ksefNotYetVisible: HTTP 404
            ksefHttpError: any other HTTP status of 400 or above
            ksefTimeout: the request timed out
            ksefConnectionError: connection error
        """
        url = endpoint if endpoint.startswith(('http://', 'https://')) else f"{self.base_url}{endpoint}"
        method = method.upper()

        content_type = 'application/xml; charset=utf-8' if xml_data is not None else JSON
        headers = self._headers(token, content_type, accept)

        self.logger.info(f"KSeF Request: {method} {url}")
        if data is not None:
            self.logger.debug(f"KSeF Request data: {json.dumps(data, indent=2)}")

        kwargs = {'headers': headers, 'params': params, 'timeout': timeout or self.timeout}
        if xml_data is not None:
            kwargs['data'] = xml_data.encode('utf-8')
        elif data is not None:
            kwargs['json'] = data

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.Timeout as e:
            self.logger.error(f"KSeF Request Timeout: {method} {url}")
            raise ksefError.ksefTimeout(f"Request timed out: {method} {url}: {e}")
        except requests.RequestException as e:
            self.logger.error(f"KSeF Request Error: {e}")
            raise ksefError.ksefConnectionError(message=f"Connection error with KSeF: {str(e)}")

        self.logger.info(f"KSeF Response: {response.status_code}")
        self.logger.debug(f"KSeF Response body: {response.text[:2000] if response.text else 'EMPTY'}")

        if response.status_code >= 400:
            error_msg, error_data = _error_details(response)
            retry_after = parse_retry_after(response.headers.get('Retry-After'))

            if response.status_code == 429:
                error_cls = ksefError.ksefRateLimited
            elif response.status_code == 404:
                error_cls = ksefError.ksefNotYetVisible
            else:
                error_cls = ksefError.ksefHttpError

            raise error_cls(
                message=error_msg,
                status_code=response.status_code,
                response_data=error_data,
                retry_after=retry_after,
                url=url,
                method=method
            )

        return response

    def request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Like send(), with the body decoded: JSON as dict or list, anything else as {'raw_content': text}."""
        response = self.send(method, endpoint, **kwargs)

        if not response.text:
            return {}

        content_type = response.headers.get('Content-Type', '')
        if 'application/json' in content_type:
            try:
                return response.json()
            except ValueError as e:
                self.logger.error(f"KSeF Response is not valid JSON: {method} {endpoint}")
                raise ksefError.ksefProtocolViolation(
                    f"Invalid JSON in KSeF response: {e}",
                    status_code=response.status_code,
                    response_data={'raw': response.text[:2000]}
                )
        elif any(ct in content_type for ct in ['application/octet-stream', 'text/xml', 'application/xml']):
            return {'raw_content': response.text}
        else:
            try:
                return response.json()
            except ValueError:
                return {'raw_content': response.text}
