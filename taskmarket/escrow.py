import asyncio
import uuid
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import EscrowConfig


class EscrowError(Exception):
    """Raised when a token transfer cannot be completed."""


class EscrowService(Protocol):
    async def transfer(self, from_account: str, to_account: str, amount: float) -> str: ...

    async def balance(self, account: str) -> float: ...

    async def close(self) -> None: ...


class LocalEscrow:
    """In-process token ledger used when no escrow service is configured."""

    def __init__(self, balances: Optional[Dict[str, float]] = None):
        self.balances: Dict[str, float] = dict(balances or {})
        self.transfers: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def transfer(self, from_account: str, to_account: str, amount: float) -> str:
        if amount <= 0:
            raise EscrowError(f"Transfer amount must be positive, got {amount}")
        async with self._lock:
            available = self.balances.get(from_account, 0.0)
            if available + 1e-9 < amount:
                raise EscrowError(f"Insufficient balance in {from_account}: {available} < {amount}")
            self.balances[from_account] = round(available - amount, 6)
            self.balances[to_account] = round(self.balances.get(to_account, 0.0) + amount, 6)
            tx_ref = f"local-{uuid.uuid4().hex[:12]}"
            self.transfers.append({"from": from_account, "to": to_account, "amount": amount, "tx_ref": tx_ref})
        return tx_ref

    async def balance(self, account: str) -> float:
        return self.balances.get(account, 0.0)

    async def close(self) -> None:
        return None


class HttpEscrow:
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def transfer(self, from_account: str, to_account: str, amount: float) -> str:
        payload = {"from": from_account, "to": to_account, "amount": amount}
        data = await self._request("POST", "/transfers", json=payload)
        tx_ref = data.get("txRef") or data.get("tx_ref") or data.get("txId")
        if not tx_ref:
            raise EscrowError(f"Escrow service returned no transaction reference: {data}")
        return str(tx_ref)

    async def balance(self, account: str) -> float:
        data = await self._request("GET", f"/accounts/{account}/balance")
        try:
            return float(data.get("balance") or 0.0)
        except (TypeError, ValueError):
            return 0.0

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = await self.client.request(method, self.base_url + path, headers=self._headers(), **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            raise EscrowError(f"Escrow HTTP {e.response.status_code}: {detail}") from e
        except httpx.RequestError as e:
            raise EscrowError(f"Escrow request failed: {e}") from e
        except ValueError as e:
            raise EscrowError(f"Escrow service returned non-JSON for {path}") from e
        if not isinstance(data, dict):
            raise EscrowError(f"Escrow service returned an unexpected body for {path}: {data!r}")
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def build_escrow(config: EscrowConfig, treasury_account: str) -> EscrowService:
    if config.base_url:
        return HttpEscrow(config.base_url, api_key=config.api_key, timeout=config.timeout_s)
    return LocalEscrow({treasury_account: config.treasury_balance})
