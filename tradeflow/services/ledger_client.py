"""Backend ledger client for trade creation, receipts, validation, proofs and settlement.

Wraps the orderbook REST API with httpx. Every call is a suspension point for
the trade state machines; failures surface as LedgerError.
"""

import logging

import httpx

from tradeflow.config import settings
from tradeflow.models.trade import CreatedTrade, Trade
from tradeflow.schemas.ledger import (
    BlockchainSubmissionResult,
    ExecuteFillRequest,
    MatchPlan,
    ProofGenerationResult,
    UploadReceiptResponse,
    ValidationResult,
)
from tradeflow.services.receipt_gate import Receipt

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """A ledger call failed to complete or returned a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TradeNotFoundError(LedgerError):
    """The ledger has not indexed this trade (yet)."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


def _parse(model, response: httpx.Response):
    try:
        return model.model_validate(response.json())
    except ValueError as e:
        raise LedgerError(f"Unexpected ledger response: {e}", status_code=response.status_code) from e


class LedgerClient:
    """Async wrapper around the orderbook/relayer REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Lazily create the shared AsyncClient."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Ledger {method} {path} failed: {e}")
            raise LedgerError(str(e) or type(e).__name__) from e

        if response.status_code == 404:
            raise TradeNotFoundError(_error_message(response), status_code=404)
        if response.is_error:
            message = _error_message(response)
            logger.error(f"Ledger {method} {path} -> {response.status_code}: {message}")
            raise LedgerError(message, status_code=response.status_code)
        return response

    async def execute_fill(self, match_plan: MatchPlan, buyer_address: str) -> list[CreatedTrade]:
        """Ask the relayer to fill every order in the plan on-chain."""
        body = ExecuteFillRequest(match_plan=match_plan, buyer_address=buyer_address)
        response = await self._request(
            "POST", "/api/execute-fill", json=body.model_dump(mode="json", exclude_none=True)
        )
        try:
            trades = [CreatedTrade.model_validate(t) for t in response.json().get("trades") or []]
        except (ValueError, AttributeError) as e:
            raise LedgerError(f"Unexpected ledger response: {e}", status_code=response.status_code) from e
        logger.info(f"Execute-fill created {len(trades)} trades for {buyer_address}")
        return trades

    async def get_trade(self, trade_id: str) -> Trade:
        response = await self._request("GET", f"/api/trades/{trade_id}")
        return _parse(Trade, response)

    async def upload_receipt(self, trade_id: str, receipt: Receipt) -> UploadReceiptResponse:
        files = {"pdf": (receipt.filename, receipt.data, receipt.content_type)}
        response = await self._request("POST", f"/api/trades/{trade_id}/pdf", files=files)
        result = _parse(UploadReceiptResponse, response)
        logger.info(f"[{trade_id}] Receipt uploaded: {result.filename} ({result.size} bytes)")
        return result

    async def validate_receipt(self, trade_id: str) -> ValidationResult:
        """Compare the locally computed fingerprint with the remote execution's output."""
        response = await self._request(
            "POST", "/api/validate-pdf-axiom", json={"trade_id": trade_id}
        )
        return _parse(ValidationResult, response)

    async def generate_proof(self, trade_id: str) -> ProofGenerationResult:
        """Request a proof for the validated receipt. Takes minutes; no client timeout."""
        response = await self._request(
            "POST", "/api/generate-proof", json={"trade_id": trade_id}, timeout=None
        )
        return _parse(ProofGenerationResult, response)

    async def submit_blockchain_proof(self, trade_id: str) -> BlockchainSubmissionResult:
        response = await self._request(
            "POST", "/api/submit-blockchain-proof", json={"trade_id": trade_id}, timeout=None
        )
        return _parse(BlockchainSubmissionResult, response)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
        self._client = None
