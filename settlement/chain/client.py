"""
Async HTTP client for a toncenter-style chain API using HTTP/2.

Reads:
    GET  /getAddressBalance?address=...      -> {"ok": true, "result": "123"}
    GET  /getAddressInformation?address=...  -> {"ok": true, "result": {"balance": "...", "state": "active"}}
    POST /runGetMethod {address, method, stack}
                                            -> {"ok": true, "result": {"exit_code": 0, "stack": [[type, value], ...]}}
    GET  /getTransactions?address=...&limit=...

Writes:
    POST /sendMessage {message, signer, signature} -> {"ok": true, "result": {"hash": "..."}}

Message construction and signing live in custody; this client only moves
JSON. Errors come back as {"ok": false, "error": "...", "code": N}.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from settlement.core.errors import ChainError, ChainUnavailable, MessageRejected, is_rejection_message

# Exit code a get-method returns when the contract has no code yet.
EXIT_CODE_NOT_DEPLOYED = -13

UNINITIALIZED_STATES = {"uninit", "uninitialized", "nonexist", "nonexistent"}


@dataclass(frozen=True)
class AccountState:
    balance: int
    status: str

    @property
    def is_initialized(self) -> bool:
        return self.status.lower() not in UNINITIALIZED_STATES


@dataclass(frozen=True)
class GetMethodResult:
    exit_code: int
    stack: List[List[Any]] = field(default_factory=list)

    @property
    def not_deployed(self) -> bool:
        return self.exit_code == EXIT_CODE_NOT_DEPLOYED

    def read_int(self, index: int = 0) -> int:
        kind, value = self.stack[index][0], self.stack[index][1]
        if kind != "num":
            raise ChainError(f"stack[{index}] is {kind}, expected num")
        return int(str(value), 0)

    def read_address(self, index: int = 0) -> str:
        kind, value = self.stack[index][0], self.stack[index][1]
        if kind not in ("address", "slice"):
            raise ChainError(f"stack[{index}] is {kind}, expected address")
        return str(value)


@dataclass(frozen=True)
class ChainTransaction:
    hash: Optional[str]
    lt: int
    utime: int = 0
    memo: Optional[str] = None
    destination: Optional[str] = None
    amount: Optional[int] = None


class ChainClient(Protocol):
    """The narrow chain surface the settlement core depends on."""

    async def get_balance(self, address: str) -> int: ...

    async def get_account_state(self, address: str) -> AccountState: ...

    async def run_get_method(
        self, address: str, method: str, stack: Optional[Sequence[Sequence[Any]]] = None
    ) -> GetMethodResult: ...

    async def get_transactions(self, address: str, limit: int = 5) -> List[ChainTransaction]: ...

    async def send_message(self, signed: Dict[str, Any]) -> Optional[str]: ...


class HttpChainClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"X-API-Key": api_key} if api_key else None
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout, headers=headers)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_balance(self, address: str) -> int:
        result = await self._get("/getAddressBalance", {"address": address})
        return int(result)

    async def get_account_state(self, address: str) -> AccountState:
        result = await self._get("/getAddressInformation", {"address": address})
        return AccountState(balance=int(result.get("balance") or 0), status=str(result.get("state", "")))

    async def run_get_method(
        self, address: str, method: str, stack: Optional[Sequence[Sequence[Any]]] = None
    ) -> GetMethodResult:
        payload = {"address": address, "method": method, "stack": [list(item) for item in (stack or [])]}
        result = await self._post("/runGetMethod", payload)
        return GetMethodResult(
            exit_code=int(result.get("exit_code", 0)),
            stack=[list(item) for item in result.get("stack", [])],
        )

    async def get_transactions(self, address: str, limit: int = 5) -> List[ChainTransaction]:
        result = await self._get("/getTransactions", {"address": address, "limit": limit})
        return [_parse_transaction(raw) for raw in result or []]

    async def send_message(self, signed: Dict[str, Any]) -> Optional[str]:
        result = await self._post("/sendMessage", signed)
        if isinstance(result, dict):
            return result.get("hash")
        return None

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            resp = await self.client.get(path, params=params)
        except httpx.TransportError as exc:
            raise ChainUnavailable(f"{path}: {exc}") from exc
        return _unwrap(path, resp)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            resp = await self.client.post(path, json=payload)
        except httpx.TransportError as exc:
            raise ChainUnavailable(f"{path}: {exc}") from exc
        return _unwrap(path, resp)


def _unwrap(path: str, resp: httpx.Response) -> Any:
    try:
        data = resp.json()
    except ValueError:
        data = None

    if isinstance(data, dict) and "ok" in data:
        if data["ok"]:
            return data.get("result")
        error = str(data.get("error") or "unknown chain error")
        code = data.get("code")
        if is_rejection_message(error):
            raise MessageRejected(error, status=resp.status_code, exit_code=code)
        if resp.status_code in (429, 502, 503, 504):
            raise ChainUnavailable(f"{path}: {error}", status=resp.status_code)
        raise ChainError(f"{path}: {error}", status=resp.status_code, exit_code=code)

    if resp.status_code >= 500 or resp.status_code == 429:
        raise ChainUnavailable(f"{path}: HTTP {resp.status_code}", status=resp.status_code)
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise ChainError(f"{path}: HTTP {resp.status_code}", status=resp.status_code) from exc
    return data


def _parse_transaction(raw: Dict[str, Any]) -> ChainTransaction:
    tx_id = raw.get("transaction_id") or {}
    out_msgs = raw.get("out_msgs") or []
    first_out = out_msgs[0] if out_msgs else {}
    in_msg = raw.get("in_msg") or {}
    memo = first_out.get("message") or in_msg.get("message") or None
    value = first_out.get("value")
    return ChainTransaction(
        hash=tx_id.get("hash"),
        lt=int(tx_id.get("lt") or 0),
        utime=int(raw.get("utime") or 0),
        memo=memo,
        destination=first_out.get("destination"),
        amount=int(value) if value not in (None, "") else None,
    )
