from __future__ import annotations
import logging
import re
import httpx
from typing import Any
from ..domain.errors import RangeTooLargeError, RateLimitedError, RpcError
from ..domain.filters import TopicFilter
from ..domain.models import LogEvent, Receipt
from ..domain.value_types import Address
from ..ports.rpc import RPCClient

log = logging.getLogger(__name__)

def _to_hex_block(n: int) -> str: return hex(int(n))

_RATE_LIMIT_RE = re.compile(
    r"rate.?limit|too many requests|\b429\b|exceeded .*capacity|request rate|throttl|credits",
    re.IGNORECASE,
)
_RANGE_RE = re.compile(
    r"query returned more than|block range|range (is )?too (large|wide|big)|too many blocks"
    r"|response size|exceeds? (the )?max|range limit|limit exceeded|more than \d+ results",
    re.IGNORECASE,
)
# JSON-RPC codes that no retry can fix
_PERMANENT_CODES = {-32600, -32601, -32602, -32700}


def _error_text(err: Any) -> tuple[int | None, str]:
    if isinstance(err, dict):
        code = err.get("code")
        msg = err.get("message") or ""
        if err.get("data"):
            msg = f"{msg} {err['data']}"
        return (code if isinstance(code, int) else None), str(msg or err)
    return None, str(err)


def classify_rpc_error(err: Any, *, method: str) -> RpcError:
    """Map a JSON-RPC `error` member (dict, string, anything) onto the error taxonomy."""
    code, msg = _error_text(err)
    text = f"{method} RPC error code={code} message={msg}"
    if _RATE_LIMIT_RE.search(msg):
        return RateLimitedError(text, code=code)
    if _RANGE_RE.search(msg) or code == -32005:
        return RangeTooLargeError(text, code=code)
    if code in _PERMANENT_CODES:
        return RpcError(text, transient=False, code=code)
    return RpcError(text, transient=True, code=code)


def _retry_after(r: httpx.Response) -> float | None:
    ra = r.headers.get("Retry-After")
    return float(ra) if ra and ra.isdigit() else None


def _parse_log(rl: dict[str, Any]) -> LogEvent:
    topics = tuple((t if isinstance(t, str) else t.decode()).lower() for t in rl.get("topics", []))
    return LogEvent(
        address=Address(rl["address"].lower()),
        topics=topics,
        data_hex=str(rl.get("data") or "0x"),
        block_number=int(rl["blockNumber"], 16),
        tx_hash=(rl.get("transactionHash") or rl.get("transaction_hash") or "").lower(),
        log_index=int(rl.get("logIndex") or "0x0", 16),
    )


def _parse_logs(raw: Any, method: str) -> list[LogEvent]:
    """Parse every well-formed entry; a malformed one is logged and dropped."""
    out: list[LogEvent] = []
    for rl in raw or []:
        try:
            out.append(_parse_log(rl))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            log.warning("%s: dropping malformed log %s: %r", method, str(rl)[:200], e)
    return out


class HttpxRPC(RPCClient):
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 20,
        max_conn: int = 64,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
            transport=transport,
        )
        self._id = 0

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        try:
            r = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise RpcError(f"{method} timed out: {e}", transient=True) from e
        except httpx.TransportError as e:
            raise RpcError(f"{method} transport error: {e}", transient=True) from e

        if r.status_code == 429:
            raise RateLimitedError(f"{method} HTTP 429", retry_after=_retry_after(r))
        try:
            data = r.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error") is not None:
            raise classify_rpc_error(data["error"], method=method)
        if r.status_code >= 500:
            raise RpcError(f"{method} HTTP {r.status_code}", transient=True)
        if r.status_code >= 400:
            raise classify_rpc_error(r.text or f"HTTP {r.status_code}", method=method)
        if not isinstance(data, dict) or "result" not in data:
            raise RpcError(f"{method} malformed response: {str(data)[:200]}", transient=True)
        return data["result"]

    async def latest_block(self) -> int:
        return int(await self._call("eth_blockNumber", []), 16)

    async def get_logs(self, address: Address, topics: TopicFilter, from_block: int, to_block: int) -> list[LogEvent]:
        res = await self._call("eth_getLogs", [{
            "address": str(address).lower(),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": topics.to_param(),
        }])
        return _parse_logs(res, "eth_getLogs")

    async def get_code(self, address: Address, block: int) -> str:
        res = await self._call("eth_getCode", [str(address).lower(), _to_hex_block(block)])
        return str(res or "0x")

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
        res = await self._call("eth_getTransactionReceipt", [tx_hash])
        if not res:
            return None
        return Receipt(
            tx_hash=(res.get("transactionHash") or tx_hash).lower(),
            sender=Address(res["from"].lower()),
            logs=tuple(_parse_logs(res.get("logs"), "eth_getTransactionReceipt")),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
