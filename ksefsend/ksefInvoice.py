import copy
import logging
import datetime

from ksefsend import ksefCrypto
from ksefsend import ksefError
from ksefsend import ksefMisc
from ksefsend import ksefModels
from ksefsend import ksefQRCode
from ksefsend import ksefRetry

DEFAULT_TIMEOUT_MS = 20000
DEFAULT_POLLING_DELAY_MS = 3000
DEFAULT_UPO_TIMEOUT_MS = 60000
MAX_POLLING_ATTEMPTS = 40

MIN_PAGE_SIZE = 10
MAX_PAGE_SIZE = 250
MAX_DATE_RANGE_DAYS = 93
DEFAULT_MAX_REQUESTS = 2000

SORT_FIELDS = {
    'PermanentStorage': 'permanentStorageDate',
    'Invoicing': 'invoicingDate',
    'Issue': 'issueDate',
}


def clamp_page_size(size) -> int:
    try:
        size = int(size)
    except (TypeError, ValueError):
        return MAX_PAGE_SIZE
    return min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, size))


def sort_field_for_date_type(date_type: str) -> str:
    return SORT_FIELDS.get(date_type, 'issueDate')


def format_timestamp(moment: datetime.datetime) -> str:
    moment = moment.astimezone(datetime.timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S') + f'.{moment.microsecond // 1000:03d}Z'


def add_milliseconds(value: str, delta: int) -> str:
    try:
        moment = ksefMisc.parse_timestamp(value)
    except ksefError.ksefInputValidationError:
        return value
    return format_timestamp(moment + datetime.timedelta(milliseconds=delta))


def validate_date_range(date_from: str, date_to: str):
    try:
        start = ksefMisc.parse_timestamp(date_from)
        end = ksefMisc.parse_timestamp(date_to)
    except ksefError.ksefInputValidationError:
        return

    days = abs((end - start).total_seconds()) / 86400
    if days > MAX_DATE_RANGE_DAYS:
        raise ksefError.ksefInputValidationError(
            f"Invalid dateRange: max 3 months allowed (got ~{days:.1f} days)"
        )


def compute_sha256_base64url(xml_content: str) -> str:
    return ksefCrypto.sha256_base64url(xml_content.encode('utf-8'))


class ksefInvoiceService:
    """Invoice retrieval: session invoice lookup, UPO, XML download, metadata query and QR codes."""

    def __init__(
        self,
        transport,
        get_access_token,
        qr_base_url: str,
        poller: ksefRetry.ksefPoller = None,
        now=None,
        logger: logging.Logger = None
    ):
        self.transport = transport
        self.get_access_token = get_access_token
        self.qr_base_url = qr_base_url
        self.logger = logger or logging.getLogger(__name__)
        self.poller = poller or ksefRetry.ksefPoller(logger=self.logger)
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))

    def _token(self) -> str:
        token = self.get_access_token()
        if not token:
            raise ksefError.ksefSessionStateError("Not authenticated")
        return token

    @staticmethod
    def _require(value, name: str) -> str:
        clean = str(value or '').strip()
        if not clean:
            raise ksefError.ksefInputValidationError(f"Missing {name}")
        return clean

    def fetch_session_invoice(self, session_reference_number: str, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        ref = self._require(session_reference_number, 'sessionReferenceNumber')
        response = self.transport.request(
            'GET',
            f'/sessions/{ref}/invoices',
            params={'pageSize': 10},
            token=self._token(),
            timeout=timeout_ms / 1000
        )
        invoices = (response.get('invoices') or []) if isinstance(response, dict) else []
        return invoices[0] if invoices else None

    @staticmethod
    def _raise_on_invoice_error(invoice: dict):
        status = invoice.get('status') or {}
        code = ksefModels.parse_status_code(status.get('code'))
        if code is not None and code >= 400:
            raise ksefError.ksefServerBusinessError(
                f"Invoice has error status: code={code}, description={status.get('description')}",
                code=code,
                response_data=invoice
            )

    def wait_for_ksef_number(self, session_reference_number: str, delay_ms: int, max_attempts: int):
        """
        Poll the session invoice list until the first invoice carries its KSeF number.

        Returns:
            invoice metadata dict, or None when the number did not show up in time

        Raises:
            ksefServerBusinessError: KSeF rejected the invoice
        """
        def attempt():
            invoice = self.fetch_session_invoice(session_reference_number)
            if not invoice:
                return False, None
            self._raise_on_invoice_error(invoice)
            return bool(invoice.get('ksefNumber')), invoice

        try:
            return self.poller.run(
                attempt,
                interval=delay_ms / 1000,
                max_attempts=max_attempts,
                retry_on=(ksefError.ksefTimeout, ksefError.ksefConnectionError, ksefError.ksefHttpError),
                label='invoice metadata'
            )
        except ksefError.ksefTimeout:
            self.logger.warning(f"KSeF number not available for session {session_reference_number}")
            return None

    def get_invoice_upo(
        self,
        session_reference_number: str,
        polling_delay_ms: int = DEFAULT_POLLING_DELAY_MS,
        timeout_ms: int = DEFAULT_UPO_TIMEOUT_MS,
        max_attempts: int = MAX_POLLING_ATTEMPTS,
        download_timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> dict:
        """
        Wait for the UPO of the first invoice in a session and download it.

        Returns:
            dict with invoiceReferenceNumber, ksefNumber, upoDownloadUrlExpirationDate,
            xml and sha256Base64
        """
        ref = self._require(session_reference_number, 'sessionReferenceNumber')
        self._token()

        def attempt():
            invoice = self.fetch_session_invoice(ref)
            if not invoice:
                self.logger.debug("UPO poll: no invoice yet")
                return False, None
            self._raise_on_invoice_error(invoice)
            if invoice.get('upoDownloadUrl'):
                return True, invoice
            self.logger.debug("UPO poll: waiting for UPO URL...")
            return False, invoice

        try:
            invoice = self.poller.run(
                attempt,
                interval=polling_delay_ms / 1000,
                max_wait=timeout_ms / 1000,
                max_attempts=max_attempts,
                label='invoice UPO'
            )
        except ksefError.ksefTimeout as e:
            raise ksefError.ksefTimeout(
                f"Timeout waiting for invoice UPO: session={ref}",
                last_value=e.last_value
            )

        upo = self.download_upo_xml(invoice['upoDownloadUrl'], download_timeout_ms)
        return {
            'invoiceReferenceNumber': invoice.get('referenceNumber'),
            'ksefNumber': invoice.get('ksefNumber'),
            'upoDownloadUrlExpirationDate': invoice.get('upoDownloadUrlExpirationDate'),
            'xml': upo['xml'],
            'sha256Base64': upo['sha256Base64'],
        }

    def download_upo_xml(self, download_url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> dict:
        # Pre-signed storage URL, must be fetched without the KSeF bearer token
        response = self.transport.send('GET', download_url, accept='application/xml', timeout=timeout_ms / 1000)
        return {
            'xml': response.text,
            'sha256Base64': response.headers.get('x-ms-meta-hash'),
        }

    def download_invoice(self, ksef_number: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> dict:
        """
        Download invoice XML from KSeF.

        Returns:
            dict with 'xml' and 'sha256Base64' (None when KSeF sent no hash header)
        """
        number = self._require(ksef_number, 'ksefNumber')
        response = self.transport.send(
            'GET',
            f'/invoices/ksef/{number}',
            token=self._token(),
            accept='application/xml',
            timeout=timeout_ms / 1000
        )
        return {
            'xml': response.text,
            'sha256Base64': response.headers.get('x-ms-meta-hash'),
        }

    def _prepare_query(self, query: dict) -> dict:
        if not isinstance(query, dict) or not query.get('subjectType'):
            raise ksefError.ksefInputValidationError("Missing query.subjectType")
        date_range = query.get('dateRange') or {}
        if not date_range.get('dateType') or not date_range.get('from'):
            raise ksefError.ksefInputValidationError("Missing query.dateRange.dateType or from")

        working = copy.deepcopy(query)
        if not working['dateRange'].get('to'):
            working['dateRange']['to'] = format_timestamp(self._now())

        validate_date_range(working['dateRange']['from'], working['dateRange']['to'])
        return working

    @staticmethod
    def _shift_window(query: dict, last_invoice: dict, sort_field: str, sort_order: str) -> dict:
        last_date = str(last_invoice.get(sort_field) or '').strip()
        if not last_date:
            raise ksefError.ksefProtocolViolation(f"Cannot shift window: missing {sort_field} in last invoice")

        shifted = copy.deepcopy(query)
        date_range = shifted['dateRange']
        if sort_order == 'Asc':
            date_range['from'] = add_milliseconds(last_date, 1) if date_range['from'] == last_date else last_date
        else:
            date_range['to'] = add_milliseconds(last_date, -1) if date_range.get('to') == last_date else last_date

        validate_date_range(date_range['from'], date_range['to'])
        return shifted

    def query_invoices(
        self,
        query: dict,
        sort_order: str = 'Asc',
        page_size: int = MAX_PAGE_SIZE,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        dedupe: bool = True,
        timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> dict:
        """
        Search invoice metadata, following pages and date windows until KSeF reports no more.

        Args:
            query: KSeF metadata query, e.g. {'subjectType': 'Subject1',
                'dateRange': {'dateType': 'Invoicing', 'from': '...', 'to': '...'}}
            sort_order: 'Asc' or 'Desc'
            page_size: results per page, clamped to 10..250
            max_requests: hard limit of HTTP calls
            dedupe: drop ksefNumbers already returned by an earlier window

        Returns:
            dict with invoices, permanentStorageHwmDate, stats and cursor
        """
        token = self._token()
        if sort_order not in ('Asc', 'Desc'):
            raise ksefError.ksefInputValidationError(f"Unknown sort order: {sort_order}")

        working = self._prepare_query(query)
        page_size = clamp_page_size(page_size)
        sort_field = sort_field_for_date_type(working['dateRange']['dateType'])

        page_offset = 0
        stats = {'requests': 0, 'pages': 0, 'windows': 0, 'deduped': 0}
        permanent_storage_hwm_date = None
        results = []
        seen = set()

        while True:
            if stats['requests'] >= max_requests:
                raise ksefError.ksefError(f"query_invoices exceeded max_requests={max_requests}")

            stats['requests'] += 1
            try:
                response = self.transport.request(
                    'POST',
                    '/invoices/query/metadata',
                    data=working,
                    params={'sortOrder': sort_order, 'pageOffset': page_offset, 'pageSize': page_size},
                    token=token,
                    timeout=timeout_ms / 1000
                )
            except ksefError.ksefRateLimited as e:
                delay = e.retry_after if e.retry_after is not None else self.poller.default_retry_after
                self.logger.warning(f"Invoice query rate limited, waiting {delay}s")
                self.poller.clock.sleep(delay)
                continue
            stats['pages'] += 1

            permanent_storage_hwm_date = response.get('permanentStorageHwmDate') or permanent_storage_hwm_date
            invoices = response.get('invoices') or []

            for invoice in invoices:
                ksef_number = str(invoice.get('ksefNumber') or '')
                if dedupe and ksef_number and ksef_number in seen:
                    stats['deduped'] += 1
                    continue
                if ksef_number:
                    seen.add(ksef_number)
                results.append(invoice)

            if not response.get('hasMore'):
                break

            if not response.get('isTruncated'):
                page_offset += 1
                continue

            if not invoices:
                raise ksefError.ksefProtocolViolation(
                    "isTruncated=true but no invoices returned - cannot advance window",
                    response_data=response
                )

            working = self._shift_window(working, invoices[-1], sort_field, sort_order)
            stats['windows'] += 1
            page_offset = 0

        self.logger.info(f"Invoice query finished: {len(results)} invoices in {stats['requests']} requests")
        return {
            'invoices': results,
            'permanentStorageHwmDate': permanent_storage_hwm_date,
            'stats': stats,
            'cursor': {
                'sortOrder': sort_order,
                'pageSize': page_size,
                'pageOffset': page_offset,
                'dateRange': dict(working['dateRange']),
            },
        }

    def _qr_result(self, xml_content: str, label: str, hash_base64url: str,
                   pixels_per_module: int, margin: int, error_correction: str, include_data_url: bool) -> dict:
        seller_nip = ksefMisc.extract_seller_nip(xml_content)
        issue_date_raw = ksefMisc.extract_issue_date(xml_content)
        issue_date_for_qr = ksefMisc.format_date_for_qr(issue_date_raw)

        url = ksefMisc.build_verification_url(self.qr_base_url, seller_nip, issue_date_for_qr, hash_base64url)
        qr_code = ksefQRCode.generate_qr_code(
            url, pixels_per_module=pixels_per_module, margin=margin, error_correction=error_correction
        )

        result = {
            'url': url,
            'qrPngBase64': qr_code['pngBase64'],
            'label': label,
            'meta': {
                'sellerNip': seller_nip,
                'issueDateRaw': issue_date_raw,
                'issueDateForQr': issue_date_for_qr,
                'invoiceHashBase64Url': hash_base64url,
                'qrBaseUrl': self.qr_base_url,
            },
        }
        if include_data_url:
            result['qrDataUrl'] = qr_code['dataUrl']
        return result

    def get_invoice_qr_code(
        self,
        ksef_number: str,
        pixels_per_module: int = 5,
        margin: int = 1,
        error_correction: str = 'M',
        include_data_url: bool = False,
        label_uses_ksef_number: bool = True
    ) -> dict:
        number = self._require(ksef_number, 'ksefNumber')
        invoice = self.download_invoice(number)

        if invoice['sha256Base64']:
            hash_base64url = ksefMisc.normalize_to_base64url(invoice['sha256Base64'])
        else:
            hash_base64url = compute_sha256_base64url(invoice['xml'])

        label = number if label_uses_ksef_number else 'OFFLINE'
        return self._qr_result(invoice['xml'], label, hash_base64url,
                               pixels_per_module, margin, error_correction, include_data_url)

    def generate_qr_code_from_xml(
        self,
        invoice_xml: str,
        ksef_number: str,
        pixels_per_module: int = 5,
        margin: int = 1,
        error_correction: str = 'M',
        include_data_url: bool = False
    ) -> dict:
        """QR code for a locally held invoice XML; no download from KSeF."""
        if not invoice_xml or not isinstance(invoice_xml, str):
            raise ksefError.ksefInputValidationError("Invalid invoice XML")
        number = self._require(ksef_number, 'ksefNumber')

        return self._qr_result(invoice_xml, number, compute_sha256_base64url(invoice_xml),
                               pixels_per_module, margin, error_correction, include_data_url)
