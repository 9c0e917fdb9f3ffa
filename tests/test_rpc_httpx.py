import json

import httpx
import pytest

from taxscan.adapters.rpc_httpx import HttpxRPC, classify_rpc_error
from taxscan.application.range_fetcher import RangeFetcher
from taxscan.domain.errors import RangeTooLargeError, RateLimitedError, RpcError
from taxscan.domain.filters import transfer_filter
from taxscan.domain.models import BlockRange

from conftest import TAX_TOKEN, TAX_WALLET, tx

RAW_LOG = {
    "address": TAX_TOKEN.upper().replace("0X", "0x"),
    "topics": [
        "0xDDF252AD1BE2C89B69C2B068FC378DAA952BA7F163C4A11628F55A4DF523B3EF",
        "0x000000000000000000000000aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa",
        "0x00000000000000000000000032487287c65f11d53bbca89c2472171eb09bf337",
    ],
    "data": "0x" + f"{5 * 10**18:064x}",
    "blockNumber": "0x64",
    "transactionHash": tx(1),
    "logIndex": "0x3",
}


def rpc_with(handler) -> HttpxRPC:
    return HttpxRPC("https://rpc.test", transport=httpx.MockTransport(handler))


def result(value):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})
    return handler


async def test_get_logs_sends_filter_and_parses_logs():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [RAW_LOG]})

    rpc = rpc_with(handler)
    logs = await rpc.get_logs(TAX_TOKEN, transfer_filter(recipient=TAX_WALLET), 100, 199)
    await rpc.aclose()

    params = seen["params"][0]
    assert seen["method"] == "eth_getLogs"
    assert (params["fromBlock"], params["toBlock"]) == ("0x64", "0xc7")
    assert params["topics"][1] is None
    assert params["topics"][2].endswith(TAX_WALLET[2:])
    ev = logs[0]
    assert (ev.address, ev.block_number, ev.log_index) == (TAX_TOKEN, 100, 3)
    assert ev.topics[0] == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


async def test_malformed_log_is_dropped_and_the_rest_kept():
    broken = dict(RAW_LOG, blockNumber=None, logIndex="0x4")
    no_address = {k: v for k, v in RAW_LOG.items() if k != "address"}
    bad_index = dict(RAW_LOG, logIndex="zz")
    rpc = rpc_with(result([RAW_LOG, broken, no_address, bad_index]))
    logs = await rpc.get_logs(TAX_TOKEN, transfer_filter(), 0, 199)
    assert [(ev.block_number, ev.log_index) for ev in logs] == [(100, 3)]

    receipt = {"transactionHash": tx(1), "from": "0x" + "a" * 40, "logs": [broken, RAW_LOG]}
    r = await rpc_with(result(receipt)).get_transaction_receipt(tx(1))
    assert len(r.logs) == 1


async def test_fetcher_keeps_good_logs_next_to_a_malformed_one():
    rpc = rpc_with(result([RAW_LOG, dict(RAW_LOG, blockNumber=None)]))
    out = await RangeFetcher(rpc).fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 200))
    assert len(out.logs) == 1
    assert out.skipped == []


async def test_latest_block_and_code():
    rpc = rpc_with(result("0x1b4"))
    assert await rpc.latest_block() == 436
    rpc = rpc_with(result(None))
    assert await rpc.get_code(TAX_TOKEN, 1) == "0x"


async def test_receipt_is_parsed_and_missing_receipt_is_none():
    receipt = {"transactionHash": tx(1), "from": "0xAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA", "logs": [RAW_LOG]}
    r = await rpc_with(result(receipt)).get_transaction_receipt(tx(1))
    assert r.sender == "0x" + "a" * 40
    assert len(r.logs) == 1
    assert await rpc_with(result(None)).get_transaction_receipt(tx(2)) is None


async def test_http_429_is_rate_limited_with_retry_after():
    rpc = rpc_with(lambda req: httpx.Response(429, headers={"Retry-After": "7"}, text="slow down"))
    with pytest.raises(RateLimitedError) as exc:
        await rpc.latest_block()
    assert exc.value.retry_after == 7.0


async def test_json_rpc_error_member_is_classified():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {
            "code": -32005, "message": "query returned more than 10000 results"}})

    with pytest.raises(RangeTooLargeError):
        await rpc_with(handler).get_logs(TAX_TOKEN, transfer_filter(), 0, 100_000)


async def test_server_errors_and_timeouts_are_transient():
    with pytest.raises(RpcError) as exc:
        await rpc_with(lambda req: httpx.Response(503, text="unavailable")).latest_block()
    assert exc.value.transient

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RpcError) as exc:
        await rpc_with(timeout).latest_block()
    assert exc.value.transient


async def test_response_without_result_is_an_error():
    with pytest.raises(RpcError):
        await rpc_with(lambda req: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})).latest_block()


@pytest.mark.parametrize("err, kind, transient", [
    ({"code": 429, "message": "Too Many Requests"}, RateLimitedError, True),
    ({"code": -32000, "message": "exceeded project rate limit"}, RateLimitedError, True),
    ({"code": -32602, "message": "block range is too wide"}, RangeTooLargeError, True),
    ({"code": -32602, "message": "invalid argument 0"}, RpcError, False),
    ({"code": -32000, "message": "header not found"}, RpcError, True),
    ("Log response size exceeded", RangeTooLargeError, True),
])
def test_classify_rpc_error(err, kind, transient):
    e = classify_rpc_error(err, method="eth_getLogs")
    assert type(e) is kind
    assert e.transient is transient
