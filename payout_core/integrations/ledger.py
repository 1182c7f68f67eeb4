"""
Ledger clients.

The bookkeeping service is external; postings are idempotent by key, so a
posting repeated after a crash or a replayed event lands exactly once.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from payout_core.domain.models import LedgerEntryKind, new_id, utc_now

logger = structlog.get_logger(__name__)


class LedgerEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("led"))
    transaction_id: Optional[str] = None
    amount_cents: int
    currency: str
    kind: LedgerEntryKind
    idempotency_key: str
    reference: Optional[str] = None
    created_at: str = Field(default_factory=lambda: utc_now().isoformat())


class LedgerResult(BaseModel):
    ok: bool
    entry_id: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None


class LedgerClient(ABC):
    """Posts money movements to the ledger."""

    @abstractmethod
    async def post(
        self,
        transaction_id: Optional[str],
        amount_cents: int,
        currency: str,
        kind: LedgerEntryKind,
        idempotency_key: str,
        reference: Optional[str] = None,
    ) -> LedgerResult: ...


class InMemoryLedger(LedgerClient):
    """Ledger kept in memory, for tests and local runs."""

    def __init__(self) -> None:
        self.entries: List[LedgerEntry] = []
        self._by_key: Dict[str, LedgerEntry] = {}
        self.fail_next: Optional[str] = None

    async def post(
        self,
        transaction_id: Optional[str],
        amount_cents: int,
        currency: str,
        kind: LedgerEntryKind,
        idempotency_key: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            return LedgerResult(ok=False, error=error)

        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            logger.info("ledger_duplicate_posting", idempotency_key=idempotency_key)
            return LedgerResult(ok=True, entry_id=existing.id, duplicate=True)

        entry = LedgerEntry(
            transaction_id=transaction_id,
            amount_cents=amount_cents,
            currency=currency,
            kind=kind,
            idempotency_key=idempotency_key,
            reference=reference,
        )
        self.entries.append(entry)
        self._by_key[idempotency_key] = entry
        logger.info(
            "ledger_posted",
            entry_id=entry.id,
            kind=kind.value,
            amount_cents=amount_cents,
            transaction_id=transaction_id,
        )
        return LedgerResult(ok=True, entry_id=entry.id)

    def entries_for(self, transaction_id: str) -> List[LedgerEntry]:
        return [e for e in self.entries if e.transaction_id == transaction_id]


class HttpLedgerClient(LedgerClient):
    """
    Ledger client for the bookkeeping service's HTTP API.

    Sends ``POST /entries`` with an ``Idempotency-Key`` header. A 409 means
    the key was already posted and is treated as success.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def post(
        self,
        transaction_id: Optional[str],
        amount_cents: int,
        currency: str,
        kind: LedgerEntryKind,
        idempotency_key: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        payload = {
            "transaction_id": transaction_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "kind": kind.value,
            "reference": reference,
        }
        try:
            response = await self.client.post(
                "/entries", json=payload, headers={"Idempotency-Key": idempotency_key}
            )
        except httpx.HTTPError as e:
            logger.error("ledger_request_failed", idempotency_key=idempotency_key, error=str(e))
            return LedgerResult(ok=False, error=f"request_failed: {e}")

        if response.status_code == 409:
            body = response.json() if response.content else {}
            return LedgerResult(ok=True, entry_id=body.get("id"), duplicate=True)
        if response.is_success:
            return LedgerResult(ok=True, entry_id=response.json().get("id"))

        logger.error(
            "ledger_posting_rejected",
            idempotency_key=idempotency_key,
            status_code=response.status_code,
        )
        return LedgerResult(ok=False, error=f"http_{response.status_code}")

    async def close(self) -> None:
        await self.client.aclose()
