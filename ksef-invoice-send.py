"""
Standalone script for sending an invoice to KSeF (Krajowy System e-Faktur).

Usage:
    python ksef-invoice-send.py --nip 1234567890 --cert cert.pem --key key.pem --password secret faktura.xml

See ksefsend/ksefCli.py for all options.
"""

from ksefsend import ksefCli


if __name__ == '__main__':
    ksefCli.main()
