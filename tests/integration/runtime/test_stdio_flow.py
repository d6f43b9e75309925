"""
Integration tests for the stdio JSON-RPC flow

Drives RuntimeServer.run() with a blocking line feeder, the way a parent
process writes to the runtime's stdin, and checks the notifications and
responses written to stdout.

Covers:
- Streaming a completion and shutting down afterwards
- Cancelling a running request from the client side
- Token lookups sharing the vocabulary cache with inference
"""

import asyncio
import queue

import orjson
import pytest

from fake_engine import EOS, FakeEngine, write_gguf

WAIT = 10.0


class LineFeeder:
    """stdin stand-in: readline() blocks until the test sends a line"""

    def __init__(self):
        self._lines = queue.Queue()

    def send(self, message):
        self._lines.put(orjson.dumps(message).decode("utf-8") + "\n")

    def close(self):
        self._lines.put("")

    def readline(self):
        return self._lines.get(timeout=WAIT)


def messages(server):
    return [orjson.loads(line) for line in server.out.getvalue().splitlines()]


def chunks(server, request_id):
    return [
        m["params"] for m in messages(server)
        if m.get("method") == "inference.chunk" and m["params"]["request_id"] == request_id
    ]


async def wait_for(predicate):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), WAIT)


@pytest.mark.asyncio
async def test_completion_then_shutdown(runtime_stack, tmp_path):
    """
    Test one full request lifecycle over stdio

    Verifies:
    - The inference call is acknowledged before any chunk
    - Chunks are cumulative and end with exactly one done=True
    - Defaults come from the YAML config
    - Shutdown answers and ends the loop
    """
    server, engine = runtime_stack
    engine.script = FakeEngine.tokens_for("Hello!") + [EOS]
    model = str(write_gguf(tmp_path / "chat.gguf"))

    feeder = LineFeeder()
    task = asyncio.create_task(server.run(feeder))

    feeder.send({"jsonrpc": "2.0", "id": 1, "method": "inference",
                 "params": {"request_id": 42, "model_path": model, "input": "Hi"}})
    await wait_for(lambda: any(c["done"] for c in chunks(server, 42)))

    feeder.send({"jsonrpc": "2.0", "id": 2, "method": "shutdown"})
    await asyncio.wait_for(task, WAIT)

    out = messages(server)
    ack = next(m for m in out if m.get("id") == 1)
    assert ack["result"]["request_id"] == 42
    assert out.index(ack) < out.index(next(m for m in out if m.get("method") == "inference.chunk"))

    stream = chunks(server, 42)
    assert stream[0]["text"] == ""
    assert stream[-1] == {"request_id": 42, "text": "Hello!", "done": True}
    texts = [c["text"] for c in stream[1:]]
    assert all(b.startswith(a) for a, b in zip(texts, texts[1:]))

    assert engine.contexts[0].size == 256
    assert any(m.get("id") == 2 and m["result"] == {"success": True} for m in out)


@pytest.mark.asyncio
async def test_cancel_running_request(runtime_stack, tmp_path):
    """
    Test client-side cancellation while tokens are streaming

    Verifies:
    - The final chunk carries the text generated so far
    - Nothing is streamed after the terminal chunk
    """
    server, engine = runtime_stack
    engine.script = FakeEngine.tokens_for("x" * 30)
    model = str(write_gguf(tmp_path / "chat.gguf"))

    feeder = LineFeeder()
    task = asyncio.create_task(server.run(feeder))
    proceed = asyncio.Event()
    loop = asyncio.get_running_loop()
    gate = queue.Queue()

    def slow_decode(ctx, tokens):
        # Hold the worker on the third generated token until the cancel is in
        if len(ctx.decoded) == 4:
            loop.call_soon_threadsafe(proceed.set)
            gate.get(timeout=WAIT)

    engine.on_decode = slow_decode

    feeder.send({"jsonrpc": "2.0", "id": 1, "method": "inference",
                 "params": {"request_id": 7, "model_path": model, "input": "go", "max_tokens": 30}})
    await asyncio.wait_for(proceed.wait(), WAIT)

    feeder.send({"jsonrpc": "2.0", "id": 2, "method": "cancel", "params": {"request_id": 7}})
    await wait_for(lambda: any(m.get("id") == 2 for m in messages(server)))
    gate.put(None)

    await wait_for(lambda: any(c["done"] for c in chunks(server, 7)))
    feeder.close()
    await asyncio.wait_for(task, WAIT)

    stream = chunks(server, 7)
    assert stream[-1] == {"request_id": 7, "text": "xxx", "done": True}
    assert [c["done"] for c in stream].count(True) == 1


@pytest.mark.asyncio
async def test_token_lookups_share_vocab_cache(runtime_stack, tmp_path):
    """
    Test that metadata calls and inference reuse one vocabulary handle

    Verifies:
    - tokenize, get_eos_token and the inference probe load the vocabulary once
    - runtime/state reports the cached model
    """
    server, engine = runtime_stack
    engine.script = [EOS]
    model = str(write_gguf(tmp_path / "chat.gguf"))

    feeder = LineFeeder()
    task = asyncio.create_task(server.run(feeder))

    feeder.send({"jsonrpc": "2.0", "id": 1, "method": "tokenize",
                 "params": {"model_path": model, "text": "abc"}})
    feeder.send({"jsonrpc": "2.0", "id": 2, "method": "get_eos_token",
                 "params": {"model_path": model}})
    feeder.send({"jsonrpc": "2.0", "id": 3, "method": "inference",
                 "params": {"request_id": 1, "model_path": model, "input": "q"}})
    await wait_for(lambda: any(c["done"] for c in chunks(server, 1)))
    feeder.send({"jsonrpc": "2.0", "id": 4, "method": "runtime/state"})
    feeder.close()
    await asyncio.wait_for(task, WAIT)

    by_id = {m["id"]: m for m in messages(server) if "id" in m}
    assert by_id[1]["result"]["count"] == 4
    assert by_id[2]["result"]["value"] == "</s>"

    state = by_id[4]["result"]
    assert [info["model_path"] for info in state["cached_models"]] == [model]
    assert state["cache"]["cache_hits"] == 2

    assert [load["vocab_only"] for load in engine.loads] == [True, False]
