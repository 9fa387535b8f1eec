"""Display helpers for amounts and countdowns."""

from decimal import Decimal, ROUND_HALF_UP


def format_cny_amount(amount_in_cents: str | int) -> str:
    """Format a CNY amount in cents as yuan with two decimals ("70000" -> "700.00")."""
    yuan = Decimal(str(amount_in_cents)) / 100
    return str(yuan.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_time(seconds: int) -> str:
    """Format seconds as M:SS."""
    seconds = max(0, int(seconds))
    mins, secs = divmod(seconds, 60)
    return f"{mins}:{secs:02d}"
