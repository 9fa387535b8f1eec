"""Shared constants and defaults, mirrored from the escrow contract and token list."""

RECEIPT_CONTENT_TYPE = "application/pdf"
RECEIPT_MAGIC = b"%PDF"

DEFAULT_TOKEN_DECIMALS = 6

# Token address (lowercase) to decimals (Base Sepolia test tokens)
TOKEN_DECIMALS: dict[str, int] = {
    "0xdfcd0f5ae31008bc94224735a81881d651ab1a8b": 6,   # USDC
    "0x9c607084a30b3e5f222b8f92313c3f75fa12667f": 6,   # USDT
    "0x9913854799d1bb4e049cde227156508bb3ba1abf": 9,   # SOL
    "0x819509cf2a5cd7849399c9a137547731686914ae": 8,   # BTC
    "0x9e0cdc73bee1c6b8d99857ffa18b7c02d8ba162f": 18,  # WETH
}


def token_decimals(address: str | None) -> int:
    if not address:
        return DEFAULT_TOKEN_DECIMALS
    return TOKEN_DECIMALS.get(address.lower(), DEFAULT_TOKEN_DECIMALS)
