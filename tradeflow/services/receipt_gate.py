"""Receipt upload gate: local checks on a payment receipt before it touches the network."""

from dataclasses import dataclass

from tradeflow.config import settings
from tradeflow.utils.constants import RECEIPT_CONTENT_TYPE, RECEIPT_MAGIC


class ReceiptRejected(ValueError):
    """The selected file is not an acceptable receipt. Never reaches the ledger."""


@dataclass(frozen=True)
class Receipt:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def check_receipt(receipt: Receipt | None, max_bytes: int | None = None) -> Receipt:
    """Return the receipt if it is a single PDF within the size limit.

    Raises ReceiptRejected with a user-facing message otherwise.
    """
    if receipt is None:
        raise ReceiptRejected("Please select a PDF file")
    if receipt.content_type != RECEIPT_CONTENT_TYPE or not receipt.data.startswith(RECEIPT_MAGIC):
        if receipt.size == 0:
            raise ReceiptRejected("PDF file is empty")
        raise ReceiptRejected("Only PDF files are supported")

    limit = max_bytes if max_bytes is not None else settings.max_receipt_bytes
    if receipt.size > limit:
        raise ReceiptRejected(f"PDF file too large (max {limit // (1024 * 1024)}MB)")
    return receipt
