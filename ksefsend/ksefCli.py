"""
Command line tool for sending an invoice to KSeF (Krajowy System e-Faktur).

Authenticates with a qualified certificate (XAdES), sends one FA(3) invoice
through an online session and prints the result as JSON.

Usage:
    ksef-invoice-send --nip 1234567890 --cert cert.pem --key key.pem --password secret faktura.xml
    ksef-invoice-send --nip 1234567890 --cert cert.pem --key key.pem --password-file haslo.txt \\
        --env test --upo --qr --output-dir ./wyniki faktura.xml

Exit codes:
    0   invoice accepted (status below 400)
    1   KSeF rejected the invoice or the submission failed
    2   invalid arguments or configuration
"""

import argparse
import base64
import json
import logging
import os
import sys

from ksefsend import ksefClient
from ksefsend import ksefConfig
from ksefsend import ksefCrypto
from ksefsend import ksefError
from ksefsend import ksefMisc

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ksef-invoice-send',
        description='Send an invoice to KSeF (Krajowy System e-Faktur)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s --nip 1234567890 --cert cert.pem --key key.pem --password secret faktura.xml
    %(prog)s --nip 1234567890 --cert cert.pem --key key.pem --password-file pass.txt --env test faktura.xml

    # Save UPO and QR code next to the result
    %(prog)s --nip 1234567890 --cert cert.pem --key key.pem --upo --qr --output-dir ./out faktura.xml
        """
    )

    parser.add_argument('invoice', help='Path to invoice XML file (FA(3))')
    parser.add_argument('--nip', required=True, help='NIP of the entity')

    auth_cert = parser.add_argument_group('Certificate authentication (XAdES)')
    auth_cert.add_argument('--cert', required=True, help='Path to certificate file (PEM or DER)')
    auth_cert.add_argument('--key', required=True, help='Path to private key file (PEM or DER)')
    auth_cert.add_argument('--password', help='Password for encrypted private key')
    auth_cert.add_argument('--password-file', help='File containing password for private key')
    auth_cert.add_argument('--subject-identifier-type', default='certificateSubject',
                           choices=['certificateSubject', 'certificateFingerprint'],
                           help='How KSeF identifies the signer (default: certificateSubject)')

    parser.add_argument('--env', choices=['test', 'demo', 'prod', 'production'], default='prod',
                        help='KSeF environment (default: prod)')
    parser.add_argument('--poll-interval-ms', type=int, default=1200,
                        help='Authorization status poll interval in ms (default: 1200)')
    parser.add_argument('--max-wait-ms', type=int, default=30000,
                        help='Maximum wait for authorization in ms (default: 30000)')
    parser.add_argument('--timeout-ms', type=int, default=30000,
                        help='HTTP request timeout in ms (default: 30000)')

    output_group = parser.add_argument_group('Output')
    output_group.add_argument('--upo', action='store_true', help='Download UPO for the accepted invoice')
    output_group.add_argument('--qr', action='store_true', help='Generate verification QR code')
    output_group.add_argument('--output-dir',
                              help='Directory to save UPO XML and QR PNG files (not saved when omitted)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    return parser


def _fail(message: str, code: int = EXIT_CONFIG):
    print(f"Błąd: {message}", file=sys.stderr)
    sys.exit(code)


def read_password(args):
    password = args.password
    if not password and args.password_file:
        if not os.path.exists(args.password_file):
            _fail(f"Plik hasła nie znaleziony: {args.password_file}")
        with open(args.password_file, 'r') as f:
            password = f.read().strip()
    return password


def save_outputs(result, output_dir: str) -> list:
    """Write UPO XML and QR PNG of a submission to output_dir; returns written paths."""
    if not result.upo and not result.qr_code:
        return []

    os.makedirs(output_dir, exist_ok=True)
    name = result.invoice_ksef_number or result.invoice_reference_number
    saved = []

    if result.upo:
        upo_path = ksefMisc.create_filename(name, path=output_dir, prefix_filename='UPO', fileextension='.xml')
        with open(upo_path, 'w', encoding='utf-8') as f:
            f.write(result.upo['xml'])
        saved.append(upo_path)

    if result.qr_code:
        qr_path = ksefMisc.create_filename(name, path=output_dir, prefix_filename='QR', fileextension='.png')
        with open(qr_path, 'wb') as f:
            f.write(base64.b64decode(result.qr_code['pngBase64']))
        saved.append(qr_path)

    return saved


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    for label, path in (('faktury', args.invoice), ('certyfikatu', args.cert), ('klucza prywatnego', args.key)):
        if not os.path.exists(path):
            _fail(f"Plik {label} nie znaleziony: {path}")

    password = read_password(args)

    with open(args.invoice, 'r', encoding='utf-8') as f:
        invoice_xml = f.read()

    try:
        config = ksefConfig.ksefClientConfig(
            nip=args.nip,
            certificate=ksefCrypto.read_file(args.cert),
            private_key=ksefCrypto.read_file(args.key),
            key_password=password,
            environment=args.env,
            subject_identifier_type=args.subject_identifier_type,
            poll_interval_ms=args.poll_interval_ms,
            max_wait_ms=args.max_wait_ms,
            request_timeout_ms=args.timeout_ms,
            debug=args.verbose
        )
        ksefConfig.setup_logging(config.debug)
        client = ksefClient.ksefClient(config)
    except ksefError.ksefInputValidationError as e:
        _fail(e.message)

    try:
        print(f"Łączenie z KSeF (środowisko: {config.environment})...", file=sys.stderr)
        print(f"NIP: {config.nip}", file=sys.stderr)

        result = client.send_invoice(invoice_xml, upo=args.upo, qr=args.qr)

        if args.output_dir:
            for path in save_outputs(result, args.output_dir):
                print(f"Zapisano: {path}", file=sys.stderr)

        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

    except ksefError.ksefError as e:
        print(f"\nBłąd KSeF: {e.message}", file=sys.stderr)
        if e.response_data:
            print(f"Szczegóły: {json.dumps(e.response_data, indent=2)}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


if __name__ == '__main__':
    main()
