import io
import logging

logger = logging.getLogger(__name__)


def render_qr(config_text):
    """
    Rend le texte de config en QR code ASCII.

    Retourne None si la librairie qrcode n'est pas disponible.
    """
    try:
        import qrcode
    except ImportError:
        logger.warning("qrcode is not installed, skipping QR code")
        return None

    # Rendu ASCII pour le terminal, scannable par l'app WireGuard
    qr = qrcode.QRCode(border=2)
    qr.add_data(config_text)
    qr.make(fit=True)

    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    return buffer.getvalue()
