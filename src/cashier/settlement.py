"""
Settlement executors.

The pipeline never moves funds itself. It hands a transfer to a
``SettlementExecutor`` exactly once per order and records what came back.
No retries are attempted here; a failed transfer fails the run.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from .amounts import amount_to_micros, format_amount, micros_to_decimal, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """Outcome of one transfer attempt."""

    success: bool
    settlement_ref: Optional[str] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "settlement_ref": self.settlement_ref,
            "failure_reason": self.failure_reason,
        }


class SettlementExecutor(Protocol):
    def execute_transfer(self, destination: str, amount: Decimal, asset_ref: str) -> SettlementResult: ...


class BalanceProvider(Protocol):
    def available_balance(self, asset_ref: str) -> Decimal: ...


class DryRunSettlementExecutor:
    """In-memory executor that debits a local balance instead of moving funds.

    ``fail_with`` forces every transfer to fail with that reason.
    """

    def __init__(self, balance=Decimal("10"), fail_with: Optional[str] = None):
        self._balance_micros = amount_to_micros(balance)
        self.fail_with = fail_with
        self.transfers: list[dict] = []
        self._lock = threading.Lock()

    def available_balance(self, asset_ref: str) -> Decimal:
        with self._lock:
            return micros_to_decimal(self._balance_micros)

    def execute_transfer(self, destination: str, amount: Decimal, asset_ref: str) -> SettlementResult:
        if self.fail_with:
            logger.warning("Dry-run transfer to %s forced to fail: %s", destination, self.fail_with)
            return SettlementResult(success=False, failure_reason=self.fail_with)

        amount_micros = amount_to_micros(amount)
        with self._lock:
            if amount_micros > self._balance_micros:
                return SettlementResult(
                    success=False,
                    failure_reason=(
                        f"Insufficient funds: {format_amount(micros_to_decimal(self._balance_micros))} "
                        f"available, {format_amount(amount)} requested"
                    ),
                )
            self._balance_micros -= amount_micros
            seed = f"{destination}|{amount_micros}|{asset_ref}|{time.time_ns()}|{len(self.transfers)}"
            ref = "dry-run-" + hashlib.sha256(seed.encode()).hexdigest()[:32]
            self.transfers.append(
                {"destination": destination, "amount": str(to_decimal(amount)), "asset_ref": asset_ref, "ref": ref}
            )
        logger.info("Dry-run transfer of %s to %s: %s", format_amount(amount), destination, ref)
        return SettlementResult(success=True, settlement_ref=ref)


class HttpSettlementExecutor:
    """Executor that delegates transfers to a settlement service over HTTP.

    POST ``{base_url}/transfers`` with ``{destination, amount, asset_ref}``
    and expects ``{"settlement_ref": ...}`` on success. GET
    ``{base_url}/balance?asset_ref=...`` returns ``{"balance": "..."}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._http = client or httpx.Client(timeout=timeout_seconds, headers=headers)

    def execute_transfer(self, destination: str, amount: Decimal, asset_ref: str) -> SettlementResult:
        payload = {
            "destination": destination,
            "amount": str(to_decimal(amount)),
            "asset_ref": asset_ref,
        }
        try:
            response = self._http.post(f"{self.base_url}/transfers", json=payload)
        except httpx.TimeoutException as e:
            return SettlementResult(success=False, failure_reason=f"Request timeout: {e}")
        except httpx.HTTPError as e:
            return SettlementResult(success=False, failure_reason=f"Connection failed: {e}")

        if response.status_code >= 400:
            reason = _error_text(response)
            logger.warning("Settlement service returned %d: %s", response.status_code, reason)
            return SettlementResult(success=False, failure_reason=f"HTTP {response.status_code}: {reason}")

        try:
            body = response.json()
        except ValueError:
            return SettlementResult(success=False, failure_reason="Settlement service returned invalid JSON")

        ref = body.get("settlement_ref") if isinstance(body, dict) else None
        if not ref:
            return SettlementResult(success=False, failure_reason="Settlement service returned no settlement_ref")
        return SettlementResult(success=True, settlement_ref=str(ref))

    def available_balance(self, asset_ref: str) -> Decimal:
        response = self._http.get(f"{self.base_url}/balance", params={"asset_ref": asset_ref})
        response.raise_for_status()
        return to_decimal(response.json()["balance"])

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "no body"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)
