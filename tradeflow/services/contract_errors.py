"""Escrow contract revert decoding.

Maps 4-byte custom error selectors (as they appear in relayer error strings)
to human-readable messages.
"""

import re

_SELECTOR_RE = re.compile(r"0x[0-9a-fA-F]{8,}")

CONTRACT_ERRORS: dict[str, tuple[str, str]] = {
    "0x2fcd1a0f": ("AmountBelowMinimum", "Trade amount is below the minimum. Please increase your purchase amount."),
    "0x339cee21": ("AmountExceedsAvailable", "The requested amount exceeds what's available in this order. Try a smaller amount or refresh to see updated availability."),
    "0x06250401": ("AmountTooLarge", "Trade amount exceeds the maximum. Please reduce your purchase amount."),
    "0xd36d8965": ("OrderNotFound", "This order no longer exists. It may have been filled or cancelled. Please refresh and try a different order."),
    "0x630bae04": ("TradeNotFound", "Trade not found. Please refresh and try again."),
    "0x5f3f6cfc": ("TradeNotPending", "This trade is no longer pending. It may have already been settled or expired."),
    "0xe170cd29": ("TradeNotExpired", "This trade has not expired yet and cannot be cancelled."),
    "0xea8e4eb5": ("NotAuthorized", "You are not authorized to perform this action."),
    "0xd611c318": ("ProofVerificationFailed", "Payment proof verification failed. Please ensure you uploaded the correct Alipay payment receipt."),
    "0x826d29e4": ("PaymentDetailsMismatch", "Payment details do not match the trade requirements. Please check the payment amount and recipient."),
    "0x90b8ec18": ("TransferFailed", "Token transfer failed. Please check your wallet balance and approvals."),
}


def decode_contract_error(error_data: str) -> str:
    selector = error_data[:10].lower()
    known = CONTRACT_ERRORS.get(selector)
    if known:
        name, message = known
        return f"{name}: {message}"
    return f"Contract error ({selector}). Please try again or contact support if the issue persists."


def describe_error(message: str | None, fallback: str = "An unknown error occurred") -> str:
    """Decode a contract revert embedded in message, else return message unchanged."""
    if not message:
        return fallback
    for match in _SELECTOR_RE.finditer(message):
        data = match.group(0)
        # Unknown long hex is usually a tx hash, not revert data
        if data[:10].lower() in CONTRACT_ERRORS or len(data) == 10:
            return decode_contract_error(data)
    return message
