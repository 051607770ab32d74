# src/signalrelay/infrastructure/payments/qr.py
"""QR images for UPI payment strings, written under QR_CODE_DIR and served from /qr-codes/."""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import qrcode

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class QrImage:
    path: str
    url: str
    data: str


class QrCodeStore:
    def __init__(self, directory: str, url_prefix: str = "/qr-codes"):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")

    def render(self, payment_string: str, transaction_id: str) -> QrImage:
        os.makedirs(self.directory, exist_ok=True)
        filename = f"qr_{transaction_id}_{int(time.time() * 1000)}.png"
        path = os.path.join(self.directory, filename)

        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=2,
        )
        qr.add_data(payment_string)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        image.save(path)

        log.debug(f"QR code written for {transaction_id}: {path}")
        return QrImage(path=path, url=f"{self.url_prefix}/{filename}", data=payment_string)

    def remove(self, path: Optional[str]) -> bool:
        """Best-effort delete; a missing file is not an error."""
        if not path:
            return False
        try:
            os.remove(path)
            log.info(f"Cleaned up QR code: {os.path.basename(path)}")
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning(f"Failed to cleanup QR code {path}: {e}")
            return False
