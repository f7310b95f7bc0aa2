"""
Tests for the RPC access layer and error classification.
"""

import asyncio

import httpx
import pytest

from mission_indexer.core.exceptions import ConfigurationError
from mission_indexer.services.rpc_client import RpcAccessLayer
from mission_indexer.services.rpc_errors import ErrorKind, classify_error


URL_1 = "https://rpc-1.test"
URL_2 = "https://rpc-2.test"


def make_layer(urls=(URL_1, URL_2), sink=None):
    # Clients are the URLs themselves so calls can record where they went
    return RpcAccessLayer(
        list(urls),
        rate_limit_cooldown=0,
        benign_delay=0,
        benign_sink=sink,
        client_factory=lambda url: url
    )


class ScriptedCall:
    """Raises the scripted errors in order, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.endpoints = []

    async def __call__(self, client):
        self.endpoints.append(client)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestClassification:

    def test_rate_limit_by_status_text(self):
        result = classify_error(Exception("429 Too Many Requests"))
        assert result.kind is ErrorKind.RATE_LIMITED
        assert result.code == 429

    def test_rate_limit_by_phrase(self):
        assert classify_error(Exception("rate limit exceeded")).kind is ErrorKind.RATE_LIMITED

    @pytest.mark.parametrize("code", [502, 503, 504, 408, 410])
    def test_benign_codes(self, code):
        result = classify_error(Exception(f"HTTP {code} from upstream"))
        assert result.kind is ErrorKind.BENIGN_TRANSIENT
        assert result.code == code

    def test_benign_code_found_in_cause_chain(self):
        outer = RuntimeError("call failed")
        outer.__cause__ = Exception("504 Gateway Timeout")

        result = classify_error(outer)

        assert result.kind is ErrorKind.BENIGN_TRANSIENT
        assert result.code == 504

    @pytest.mark.parametrize("message, code", [
        ("status code: 503", 503),
        ("502 Server Error: Bad Gateway for url: https://rpc.test", 502),
        ("Server error '504 Gateway Time-out' for url 'https://rpc.test'", 504),
    ])
    def test_status_read_from_http_context(self, message, code):
        result = classify_error(Exception(message))
        assert result.kind is ErrorKind.BENIGN_TRANSIENT
        assert result.code == code

    @pytest.mark.parametrize("message", [
        "header not found for block 504",
        "missing trie node at depth 429",
        "nonce 503 already used",
    ])
    def test_bare_numbers_are_not_status_codes(self, message):
        assert classify_error(ValueError(message)).kind is ErrorKind.PERMANENT

    def test_transport_errors_are_transient(self):
        assert classify_error(asyncio.TimeoutError()).kind is ErrorKind.OTHER_TRANSIENT
        assert classify_error(httpx.ConnectError("refused")).kind is ErrorKind.OTHER_TRANSIENT
        assert classify_error(ConnectionResetError()).kind is ErrorKind.OTHER_TRANSIENT

    def test_web3_connection_error_matched_by_name(self):
        class ProviderConnectionError(Exception):
            pass

        assert classify_error(ProviderConnectionError("down")).kind is ErrorKind.OTHER_TRANSIENT

    def test_contract_revert_is_permanent_even_with_code_in_text(self):
        class ContractLogicError(Exception):
            pass

        result = classify_error(ContractLogicError("execution reverted: 503"))

        assert result.kind is ErrorKind.PERMANENT
        assert not result.is_retryable

    def test_unknown_error_is_permanent(self):
        assert classify_error(ValueError("bad argument")).kind is ErrorKind.PERMANENT


@pytest.mark.asyncio
class TestRpcAccessLayer:

    async def test_requires_an_endpoint(self):
        with pytest.raises(ConfigurationError):
            RpcAccessLayer([], client_factory=lambda url: url)

    async def test_success_passes_result_through(self):
        layer = make_layer()
        call = ScriptedCall(result=42)

        assert await layer.call(call, "getMissionData") == 42
        assert call.endpoints == [URL_1]

    async def test_benign_error_retries_on_same_endpoint(self):
        recorded = []
        layer = make_layer(sink=recorded.append)
        call = ScriptedCall(Exception("503 Service Unavailable"))

        result = await layer.call(call, "getMissionData")

        assert result == "ok"
        assert call.endpoints == [URL_1, URL_1]
        assert layer.switch_count == 0
        assert recorded == ["getMissionData.503"]

    async def test_rate_limit_retries_on_same_endpoint(self):
        layer = make_layer()
        call = ScriptedCall(Exception("429 Too Many Requests"))

        assert await layer.call(call, "getRealtimeStatus") == "ok"
        assert call.endpoints == [URL_1, URL_1]
        assert layer.switch_count == 0

    async def test_timeout_switches_endpoint(self):
        layer = make_layer()
        call = ScriptedCall(asyncio.TimeoutError())

        result = await layer.call(call, "getMissionData")

        assert result == "ok"
        assert call.endpoints == [URL_1, URL_2]
        assert layer.switch_count == 1
        assert layer.current_url == URL_2

    async def test_single_endpoint_does_not_switch(self):
        layer = make_layer(urls=(URL_1,))
        call = ScriptedCall(httpx.ConnectError("refused"))

        assert await layer.call(call, "getMissionData") == "ok"
        assert call.endpoints == [URL_1, URL_1]
        assert layer.switch_count == 0

    async def test_permanent_error_raised_unchanged_without_retry(self):
        layer = make_layer()
        error = ValueError("execution reverted")
        call = ScriptedCall(error)

        with pytest.raises(ValueError) as exc_info:
            await layer.call(call, "estimateGas")

        assert exc_info.value is error
        assert call.endpoints == [URL_1]

    async def test_exhausted_retry_reraises_last_error(self):
        layer = make_layer()
        last = httpx.ReadTimeout("second timeout")
        call = ScriptedCall(asyncio.TimeoutError(), last)

        with pytest.raises(httpx.ReadTimeout) as exc_info:
            await layer.call(call, "getMissionData")

        assert exc_info.value is last
        assert call.endpoints == [URL_1, URL_2]

    async def test_concurrent_failures_switch_once(self):
        layer = make_layer()

        await asyncio.gather(
            layer._switch_endpoint(0),
            layer._switch_endpoint(0),
        )

        assert layer.switch_count == 1
        assert layer.current_index == 1

    async def test_counters_by_label_and_site(self):
        layer = make_layer()

        await layer.call(ScriptedCall(), "getMissionData")
        await layer.call(ScriptedCall(), "getMissionData", site="factory_sync")

        assert layer.calls_by_label["getMissionData"] == 2
        assert layer.calls_by_site["test_counters_by_label_and_site"] == 1
        assert layer.calls_by_site["factory_sync"] == 1

    async def test_flush_stats_resets_counters(self):
        layer = make_layer()
        await layer.call(ScriptedCall(Exception("502 Bad Gateway")), "getMissionData")

        layer.flush_stats()

        assert layer.get_stats()["calls_by_label"] == {}
        assert layer.get_stats()["errors_by_kind"] == {}
