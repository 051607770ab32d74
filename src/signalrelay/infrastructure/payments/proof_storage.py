# src/signalrelay/infrastructure/payments/proof_storage.py
"""Local-disk storage for proof-of-payment uploads (screenshots, PDF receipts)."""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime

from signalrelay.domain.value_objects import utcnow

log = logging.getLogger(__name__)

ALLOWED_PROOF_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


@dataclass(frozen=True)
class StoredProof:
    original_name: str
    filename: str
    path: str
    url: str
    size: int
    mimetype: str
    uploaded_at: datetime


class ProofStorage:
    def __init__(self, directory: str, url_prefix: str = "/uploads/payment-proofs"):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")

    @staticmethod
    def _extension(original_name: str, mimetype: str) -> str:
        ext = os.path.splitext(os.path.basename(original_name or ""))[1].lower()
        if ext in {".jpg", ".jpeg", ".png", ".webp", ".pdf"}:
            return ext
        return ALLOWED_PROOF_TYPES.get(mimetype, "")

    def save(self, transaction_id: str, original_name: str, content: bytes, mimetype: str) -> StoredProof:
        os.makedirs(self.directory, exist_ok=True)
        # never trust the client's filename for the path
        filename = f"proof_{transaction_id}_{int(time.time() * 1000)}{self._extension(original_name, mimetype)}"
        path = os.path.join(self.directory, filename)
        with open(path, "wb") as fh:
            fh.write(content)
        log.info(f"Payment proof stored for {transaction_id}: {filename} ({len(content)} bytes)")
        return StoredProof(
            original_name=os.path.basename(original_name or filename),
            filename=filename,
            path=path,
            url=f"{self.url_prefix}/{filename}",
            size=len(content),
            mimetype=mimetype,
            uploaded_at=utcnow(),
        )

    def remove(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
