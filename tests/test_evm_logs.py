#!/usr/bin/env python3
"""
EVM log source tests (JSON-RPC mocked with httpx.MockTransport).

Usage:
    python -m unittest tests.test_evm_logs
"""

import sys
import os
import json
import unittest

import httpx

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xchain.chains.evm import SECRET_REVEALED_TOPIC, EVMLogSource
from xchain.core import EscrowSide, generate_secret
from xchain.errors import LedgerCallError
from xchain.swap.monitor import CounterChainMonitor, WatchBudget

RPC_URL = "https://rpc.test"
ESCROW = "0x" + "ee" * 20


class RPCStub:
    """Records JSON-RPC requests and answers from a fixed result."""

    def __init__(self, result=None, error=None, status=200):
        self.result = result
        self.error = error
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.status != 200:
            return httpx.Response(self.status, text="upstream error")
        reply = {"jsonrpc": "2.0", "id": body["id"]}
        if self.error is not None:
            reply["error"] = self.error
        else:
            reply["result"] = self.result
        return httpx.Response(200, json=reply)


def make_source(stub: RPCStub) -> EVMLogSource:
    client = httpx.Client(transport=httpx.MockTransport(stub))
    return EVMLogSource(RPC_URL, ESCROW, client=client)


class TestEVMLogSource(unittest.TestCase):

    def setUp(self):
        self.secret, self.hashlock = generate_secret()
        self.hashlock_topic = "0x" + self.hashlock.hex()

    def log_entry(self, secret, block):
        return {
            "address": ESCROW,
            "topics": [SECRET_REVEALED_TOPIC, self.hashlock_topic, "0x" + secret.hex()],
            "data": "0x",
            "blockNumber": hex(block),
            "transactionHash": "0x" + "ab" * 32,
        }

    def test_topic_is_event_signature_hash(self):
        self.assertTrue(SECRET_REVEALED_TOPIC.startswith("0x"))
        self.assertEqual(len(SECRET_REVEALED_TOPIC), 66)

    def test_query_and_parse(self):
        stub = RPCStub(result=[self.log_entry(self.secret, 16)])
        source = make_source(stub)

        found = source.get_logs_for_hashlock(self.hashlock, from_checkpoint=5)

        self.assertEqual(found, [(self.secret, 16)])
        request = stub.requests[0]
        self.assertEqual(request["method"], "eth_getLogs")
        query = request["params"][0]
        self.assertEqual(query["fromBlock"], "0x5")
        self.assertEqual(query["address"], ESCROW)
        self.assertEqual(query["topics"], [SECRET_REVEALED_TOPIC, self.hashlock_topic])

    def test_skips_malformed_entries(self):
        bad = self.log_entry(self.secret, 3)
        bad["topics"] = bad["topics"][:2]
        stub = RPCStub(result=[bad, self.log_entry(self.secret, 4)])
        self.assertEqual(make_source(stub).get_logs_for_hashlock(self.hashlock), [(self.secret, 4)])

    def test_empty_result(self):
        self.assertEqual(make_source(RPCStub(result=[])).get_logs_for_hashlock(self.hashlock), [])

    def test_rpc_error(self):
        stub = RPCStub(error={"code": -32000, "message": "query returned more than 10000 results"})
        with self.assertRaises(LedgerCallError):
            make_source(stub).get_logs_for_hashlock(self.hashlock)

    def test_http_error(self):
        with self.assertRaises(LedgerCallError):
            make_source(RPCStub(status=502)).get_logs_for_hashlock(self.hashlock)

    def test_block_number(self):
        self.assertEqual(make_source(RPCStub(result="0x1f")).get_block_number(), 31)

    def test_monitor_over_rpc(self):
        stub = RPCStub(result=[self.log_entry(self.secret, 16)])
        monitor = CounterChainMonitor({EscrowSide.DESTINATION: make_source(stub)})
        result = next(monitor.watch("0x" + "55" * 32, self.hashlock, EscrowSide.DESTINATION,
                                    WatchBudget(max_attempts=1, poll_interval=0)))
        self.assertTrue(result.found)
        self.assertEqual(result.position, 16)
        self.assertEqual(result.checkpoint, 17)


if __name__ == "__main__":
    unittest.main()
