"""Pydantic schemas for the backend ledger request/response contract."""

from pydantic import BaseModel, Field, field_validator


class Fill(BaseModel):
    order_id: str = Field(min_length=1)
    seller: str
    fill_amount: str  # token base units
    exchange_rate: str  # CNY cents per whole token
    alipay_id: str = ""
    alipay_name: str = ""
    token: str = ""
    cny_amount: str | None = None  # added client-side before execute-fill

    @field_validator("fill_amount", "exchange_rate")
    @classmethod
    def _validate_decimal_text(cls, value: str) -> str:
        text = value.strip()
        if not text or not text.replace(".", "", 1).isdigit():
            raise ValueError("must be a non-negative decimal string")
        return text


class MatchPlan(BaseModel):
    fills: list[Fill] = Field(min_length=1)
    total_filled: str = "0"
    fully_fillable: bool = True


class ExecuteFillRequest(BaseModel):
    match_plan: MatchPlan
    buyer_address: str = Field(min_length=1)


class UploadReceiptResponse(BaseModel):
    trade_id: str | None = None
    filename: str
    size: int
    uploaded_at: str | None = None


class ValidationResult(BaseModel):
    is_valid: bool
    expected_hash: str = ""
    actual_hash: str = ""
    details: str = ""


class ProofGenerationResult(BaseModel):
    success: bool
    message: str = ""
    proof_id: str | None = None


class BlockchainSubmissionResult(BaseModel):
    success: bool
    tx_hash: str = ""
    message: str = ""
