from typing import Any, Dict, Optional

import httpx


class ReputationError(Exception):
    """Raised by the registry client when a call fails; callers treat it as best-effort."""


class ReputationClient:
    """Client for an external agent reputation registry.

    Every method is a no-op returning None when no registry URL is configured.
    """

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def register_agent(self, name: str, account: str, role: str) -> Optional[str]:
        if not self.enabled:
            return None
        data = await self._post("/agents", {"name": name, "account": account, "role": role})
        agent_id = data.get("agentId") or data.get("agent_id")
        return str(agent_id) if agent_id is not None else None

    async def record(
        self,
        agent_id: str,
        score: float,
        feedback: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        if not self.enabled:
            return None
        payload = {"score": score, "feedback": feedback, "context": context or {}}
        data = await self._post(f"/agents/{agent_id}/feedback", payload)
        tx_ref = data.get("txRef") or data.get("tx_ref") or data.get("txHash")
        return str(tx_ref) if tx_ref else None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(self.base_url + path, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ReputationError(f"Registry HTTP {e.response.status_code} on {path}") from e
        except httpx.RequestError as e:
            raise ReputationError(f"Registry request failed on {path}: {e}") from e
        except ValueError as e:
            raise ReputationError(f"Registry returned non-JSON on {path}") from e
        if not isinstance(data, dict):
            raise ReputationError(f"Registry returned an unexpected body on {path}: {data!r}")
        return data

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
