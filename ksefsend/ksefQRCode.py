import base64

from io import BytesIO

import qrcode
import qrcode.constants

from ksefsend import ksefError

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,
    'M': qrcode.constants.ERROR_CORRECT_M,
    'Q': qrcode.constants.ERROR_CORRECT_Q,
    'H': qrcode.constants.ERROR_CORRECT_H,
}


def generate_qr_code(content: str, pixels_per_module: int = 5, margin: int = 1, error_correction: str = 'M') -> dict:
    """
    Render content as a PNG QR code.

    Returns:
        dict with 'pngBase64' (plain base64) and 'dataUrl'
    """
    level = ERROR_CORRECTION_LEVELS.get(str(error_correction).upper())
    if level is None:
        raise ksefError.ksefInputValidationError(f"Unknown QR error correction level: {error_correction}")

    qr = qrcode.QRCode(
        version=None,
        error_correction=level,
        box_size=max(1, int(pixels_per_module)),
        border=max(0, int(margin))
    )
    qr.add_data(content)
    qr.make(fit=True)

    buffered = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffered, format="PNG")
    png_base64 = base64.b64encode(buffered.getvalue()).decode('utf-8')

    return {
        'pngBase64': png_base64,
        'dataUrl': f"data:image/png;base64,{png_base64}",
    }
