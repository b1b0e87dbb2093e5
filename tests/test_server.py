"""
Tests for the stdin/stdout line processor, end to end against a mock proxy.
"""

import asyncio
import json
import sys

import httpx
import pytest

from mcp_shim.config import ShimConfig
from mcp_shim.forwarder import Forwarder
from mcp_shim.server import LineProcessor, read_lines

READ_FILE_LINE = (
    '{"jsonrpc":"2.0","id":1,"method":"tools/call",'
    '"params":{"name":"read_file","arguments":{"path":"/tmp/x"}}}'
)
PROXY_REPLY = {"jsonrpc": "2.0", "id": 1, "result": {"content": "hi"}}


def make_processor(handler, **config_overrides):
    values = {
        "proxy_url": "http://proxy.test",
        "server_name": "filesystem",
        "retry_initial_delay_ms": 1,
        "retry_max_delay_ms": 2,
    }
    values.update(config_overrides)
    config = ShimConfig(**values)

    seen = []

    async def transport_handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    client = httpx.AsyncClient(transport=httpx.MockTransport(transport_handler))
    output = []
    processor = LineProcessor(config, forwarder=Forwarder(config, client=client), write=output.append)
    return processor, seen, output


def fixed_reply(request):
    return httpx.Response(200, json=PROXY_REPLY)


def echo_reply(request):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"echo": body["params"]}})


def feed(*lines):
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line if isinstance(line, bytes) else line.encode("utf-8"))
    reader.feed_eof()
    return reader


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_allowed_path_returns_proxy_response_verbatim(self):
        processor, seen, output = make_processor(fixed_reply, allowed_paths=["/tmp"])

        await processor.run(feed(READ_FILE_LINE + "\n"))

        assert output == ['{"jsonrpc":"2.0","id":1,"result":{"content":"hi"}}']
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_disallowed_path_answered_locally(self):
        processor, seen, output = make_processor(fixed_reply, allowed_paths=["/other"])

        await processor.run(feed(READ_FILE_LINE + "\n"))

        assert output == [
            '{"jsonrpc":"2.0","id":1,"error":{"code":-32600,"message":"Access denied to path: /tmp/x"}}'
        ]
        assert seen == []

    @pytest.mark.asyncio
    async def test_sanitized_path_is_what_gets_forwarded(self):
        processor, seen, _ = make_processor(echo_reply, allowed_paths=["/tmp"])
        line = json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 3,
                "method": "tools/call",
                "params": {"name": "read_file", "arguments": {"path": "/tmp/a/../b"}},
            }
        )

        await processor.run(feed(line + "\n"))

        assert seen[0]["params"]["arguments"]["path"] == "/tmp/b"

    @pytest.mark.asyncio
    async def test_other_servers_skip_path_checks(self):
        processor, seen, output = make_processor(
            echo_reply, server_name="memory", allowed_paths=["/other"]
        )
        line = json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 4,
                "method": "tools/call",
                "params": {"name": "read_graph", "arguments": {"path": "relative"}},
            }
        )

        await processor.run(feed(line + "\n"))

        assert seen[0]["params"]["arguments"]["path"] == "relative"
        assert json.loads(output[0])["result"]["echo"]["arguments"]["path"] == "relative"

    @pytest.mark.asyncio
    async def test_write_file_not_served_from_cache(self):
        processor, seen, output = make_processor(echo_reply, allowed_paths=["/tmp"])
        read = {"name": "read_file", "arguments": {"path": "/tmp/x"}}
        write = {"name": "write_file", "arguments": {"path": "/tmp/x"}}
        lines = [
            json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": read}) + "\n",
            json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": write}) + "\n",
            json.dumps({"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": write}) + "\n",
        ]

        await processor.run(feed(*lines))

        assert [r["params"]["name"] for r in seen] == ["read_file", "write_file", "write_file"]
        assert [json.loads(o)["id"] for o in output] == [1, 2, 3]


class TestMalformedInput:
    @pytest.mark.asyncio
    async def test_parse_error_does_not_stop_processing(self):
        processor, _, output = make_processor(fixed_reply, allowed_paths=["/tmp"])

        await processor.run(feed("this is not json\n", READ_FILE_LINE + "\n"))

        first = json.loads(output[0])
        assert first["id"] is None
        assert first["error"]["code"] == -32700
        assert first["error"]["message"].startswith("Parse error: ")
        assert json.loads(output[1]) == PROXY_REPLY

    @pytest.mark.parametrize(
        "line",
        [
            "[1, 2, 3]",
            '"just a string"',
            '{"jsonrpc":"1.0","id":1,"method":"ping"}',
            '{"jsonrpc":"2.0","id":1}',
            '{"jsonrpc":"2.0","id":{"nested":true},"method":"ping"}',
        ],
    )
    @pytest.mark.asyncio
    async def test_non_request_json_is_parse_error(self, line):
        processor, seen, output = make_processor(fixed_reply)

        await processor.run(feed(line + "\n"))

        response = json.loads(output[0])
        assert response["id"] is None
        assert response["error"]["code"] == -32700
        assert seen == []

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_parse_error(self):
        processor, _, output = make_processor(fixed_reply)
        await processor.run(feed(b'{"method":"\xff\xfe"}\n'))
        assert json.loads(output[0])["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_oversize_line_rejected_without_parsing(self):
        processor, seen, output = make_processor(fixed_reply, max_request_size=64, allowed_paths=["/tmp"])
        huge = '{"jsonrpc":"2.0","id":7,"method":"ping","params":"' + "x" * 200 + '"}'

        await processor.run(feed(huge + "\n", '{"jsonrpc":"2.0","id":8,"method":"ping"}\n'))

        assert json.loads(output[0]) == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32600, "message": "Request too large"},
        }
        assert json.loads(output[1]) == PROXY_REPLY
        assert len(seen) == 1

    @pytest.mark.parametrize(
        "line",
        [
            "[" * 100000,
            pytest.param(
                '{"jsonrpc":"2.0","id":' + "1" * 5000 + ',"method":"ping"}',
                marks=pytest.mark.skipif(
                    not hasattr(sys, "get_int_max_str_digits"),
                    reason="interpreter has no integer string conversion limit",
                ),
            ),
        ],
        ids=["deep-nesting", "huge-integer"],
    )
    @pytest.mark.asyncio
    async def test_json_decoder_limits_are_parse_errors(self, line):
        processor, seen, output = make_processor(fixed_reply, allowed_paths=["/tmp"])

        await processor.run(feed(line + "\n", READ_FILE_LINE + "\n"))

        assert len(output) == 2
        first = json.loads(output[0])
        assert first["id"] is None
        assert first["error"]["code"] == -32700
        assert json.loads(output[1]) == PROXY_REPLY
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_failure_while_handling_a_line_answers_that_line_only(self):
        class ExplodingSanitizer:
            def process_request(self, request):
                if request.id == 1:
                    raise RuntimeError("sanitizer broke")
                return request

        def reply(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {}})

        config = ShimConfig(proxy_url="http://proxy.test")
        client = httpx.AsyncClient(transport=httpx.MockTransport(reply))
        output = []
        processor = LineProcessor(
            config,
            forwarder=Forwarder(config, client=client),
            sanitizer=ExplodingSanitizer(),
            write=output.append,
        )

        await processor.run(
            feed(
                '{"jsonrpc":"2.0","id":1,"method":"ping"}\n',
                '{"jsonrpc":"2.0","id":2,"method":"ping"}\n',
            )
        )

        assert json.loads(output[0]) == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32603, "message": "Internal shim error: sanitizer broke"},
        }
        assert json.loads(output[1])["id"] == 2

    @pytest.mark.asyncio
    async def test_blank_lines_ignored(self):
        processor, _, output = make_processor(fixed_reply, allowed_paths=["/tmp"])
        await processor.run(feed("\n", "   \r\n", READ_FILE_LINE + "\r\n"))
        assert len(output) == 1

    @pytest.mark.asyncio
    async def test_last_line_without_newline_processed(self):
        processor, _, output = make_processor(fixed_reply, allowed_paths=["/tmp"])
        await processor.run(feed(READ_FILE_LINE))
        assert len(output) == 1


class TestOrderingAndLifecycle:
    @pytest.mark.asyncio
    async def test_requests_overlap_but_responses_keep_input_order(self):
        second_seen = asyncio.Event()

        async def handler(request):
            body = json.loads(request.content)
            if body["id"] == 1:
                # Only completes if request 2 is dispatched while 1 is in flight
                await asyncio.wait_for(second_seen.wait(), timeout=2)
            else:
                second_seen.set()
            return echo_reply(request)

        processor, _, output = make_processor(handler, cache_enabled=False)
        lines = [
            '{"jsonrpc":"2.0","id":1,"method":"tools/list","params":{"cursor":"a"}}\n',
            '{"jsonrpc":"2.0","id":2,"method":"tools/list","params":{"cursor":"b"}}\n',
        ]

        await processor.run(feed(*lines))

        assert [json.loads(o)["id"] for o in output] == [1, 2]
        assert all("result" in json.loads(o) for o in output)

    @pytest.mark.asyncio
    async def test_eof_waits_for_in_flight_requests(self):
        async def slow(request):
            await asyncio.sleep(0.05)
            return fixed_reply(request)

        processor, _, output = make_processor(slow, allowed_paths=["/tmp"])
        await processor.run(feed(READ_FILE_LINE + "\n"))
        assert len(output) == 1

    @pytest.mark.asyncio
    async def test_stop_ends_run_without_waiting(self):
        async def hang(request):
            await asyncio.sleep(30)
            return fixed_reply(request)

        processor, seen, output = make_processor(hang, allowed_paths=["/tmp"])
        reader = asyncio.StreamReader()  # never reaches EOF
        reader.feed_data((READ_FILE_LINE + "\n").encode())

        run_task = asyncio.create_task(processor.run(reader))
        while not seen:
            await asyncio.sleep(0.01)
        processor.stop()

        await asyncio.wait_for(run_task, timeout=2)
        assert output == []
        await processor.aclose()


class TestReadLines:
    @pytest.mark.asyncio
    async def test_oversize_partial_line_discarded_across_chunks(self):
        reader = feed(b"a" * 50 + b"\n" + b"b" * 300 + b"\n" + b"ok\n")

        lines = [line async for line in read_lines(reader, max_line_bytes=100, chunk_size=16)]

        assert lines == [b"a" * 50, None, b"ok"]

    @pytest.mark.asyncio
    async def test_oversize_tail_without_newline(self):
        reader = feed(b"ok\n" + b"z" * 500)
        lines = [line async for line in read_lines(reader, max_line_bytes=100, chunk_size=64)]
        assert lines == [b"ok", None]

    @pytest.mark.asyncio
    async def test_strips_carriage_returns(self):
        reader = feed(b"one\r\ntwo\r\n")
        lines = [line async for line in read_lines(reader, max_line_bytes=100)]
        assert lines == [b"one", b"two"]
