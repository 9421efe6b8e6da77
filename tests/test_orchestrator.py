#!/usr/bin/env python3
"""
Order orchestrator E2E tests (in-memory ledgers).

Scenarios:
1. Happy path: deploy both, maker withdraws destination, orchestrator
   observes the secret and withdraws source
2. Timeout: no secret, both sides cancel after their gates
3. Wrong secret is rejected, state unchanged
4. Double withdraw is a no-op
5. Cancel vs withdraw race: a disclosed secret wins
6. Partial deployment failure: funded side stays locked, retry recovers

Usage:
    python -m unittest tests.test_orchestrator
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xchain.chains.memory import InMemoryLedgerClient
from xchain.config import OrchestratorConfig
from xchain.core import EscrowSide, EscrowStatus, OrderStatus, generate_secret
from xchain.errors import (
    AlreadyExists, AlreadyFinalized, ChainMismatch, DeploymentFailed,
    InvalidSecret, MonitorTimeout, OrderNotFound, TimelockNotMet, ValidationError,
)
from xchain.htlc.escrow import EscrowLedger
from xchain.htlc.timelocks import TimelockSchedule
from xchain.swap.monitor import WatchBudget, WatchOutcome
from xchain.swap.orchestrator import OrderOrchestrator, OrderParams

T0 = 1_700_000_000
SRC_CHAIN = 84532
DST_CHAIN = 1000
MAKER = "maker"
TAKER = "taker"
RELAYER = "relayer"


class OrchestratorTestCase(unittest.TestCase):
    config = None

    def setUp(self):
        self.src_client = InMemoryLedgerClient(SRC_CHAIN, "base_sepolia", start_time=T0)
        self.dst_client = InMemoryLedgerClient(DST_CHAIN, "icp", start_time=T0)
        self.src_client.credit(MAKER, 10_000)
        self.dst_client.credit(TAKER, 10_000)

        self.src = EscrowLedger(EscrowSide.SOURCE, self.src_client)
        self.dst = EscrowLedger(EscrowSide.DESTINATION, self.dst_client)
        self.orchestrator = OrderOrchestrator(self.src, self.dst, config=self.config)

        self.secret, self.hashlock = generate_secret()

    def params(self, **overrides):
        values = dict(
            maker=MAKER,
            taker=TAKER,
            making_amount=1000,
            taking_amount=2000,
            source_chain_id=SRC_CHAIN,
            destination_chain_id=DST_CHAIN,
            hashlock=self.hashlock,
        )
        values.update(overrides)
        return OrderParams(**values)

    def funded_order(self, **overrides):
        order = self.orchestrator.create_order(self.params(**overrides))
        self.orchestrator.deploy_source(order.order_id)
        self.orchestrator.deploy_destination(order.order_id)
        return order

    def advance(self, seconds):
        self.src_client.advance(seconds)
        self.dst_client.advance(seconds)

    def maker_reveals(self, order):
        """Maker withdraws the destination escrow, disclosing the secret there."""
        self.dst.withdraw(order.order_id, self.secret, MAKER)


class TestCreateOrder(OrchestratorTestCase):

    def test_pending_order(self):
        order = self.orchestrator.create_order(self.params())
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.hashlock, self.hashlock)
        self.assertEqual(order.timelocks, TimelockSchedule.default())
        self.assertIsNone(order.source_escrow_ref)
        self.assertIs(self.orchestrator.require_order(order.order_id), order)

    def test_salt_makes_id_deterministic(self):
        a = self.orchestrator.create_order(self.params(salt=42))
        with self.assertRaises(AlreadyExists):
            self.orchestrator.create_order(self.params(salt=42))
        b = self.orchestrator.create_order(self.params(salt=43))
        self.assertNotEqual(a.order_id, b.order_id)

    def test_timelocks_from_mapping(self):
        offsets = {"src_withdrawal": 1, "src_public_withdrawal": 2, "src_cancellation": 3,
                   "src_public_cancellation": 4, "dst_withdrawal": 1,
                   "dst_public_withdrawal": 2, "dst_cancellation": 3}
        order = self.orchestrator.create_order(self.params(timelocks=offsets))
        self.assertEqual(order.timelocks.src_public_cancellation, 4)

    def test_validation(self):
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(destination_chain_id=SRC_CHAIN))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(making_amount=0))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(hashlock=b"\x00" * 32))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(maker=""))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(timelocks=[1, 2, 3]))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(source_asset=""))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(destination_asset=None))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(source_chain_id=-1))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(destination_chain_id=True))
        with self.assertRaises(ValidationError):
            self.orchestrator.create_order(self.params(making_amount=2 ** 256))
        self.assertEqual(self.orchestrator.list_orders(), [])

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            self.orchestrator.deploy_source("0x" + "44" * 32)


class TestDeployment(OrchestratorTestCase):

    def test_status_follows_deployments(self):
        order = self.orchestrator.create_order(self.params())
        self.orchestrator.deploy_destination(order.order_id)
        self.assertEqual(order.status, OrderStatus.DESTINATION_DEPLOYED)
        self.orchestrator.deploy_source(order.order_id)
        self.assertEqual(order.status, OrderStatus.FUNDED)
        self.assertEqual(order.source_escrow_ref.chain_id, SRC_CHAIN)
        self.assertEqual(self.src_client.balance_of(MAKER), 9000)
        self.assertEqual(self.dst_client.balance_of(TAKER), 8000)

    def test_mirrored_parameters(self):
        order = self.funded_order(src_safety_deposit=5, dst_safety_deposit=7)
        src = self.src.require(order.order_id)
        dst = self.dst.require(order.order_id)
        self.assertEqual(src.hashlock, dst.hashlock)
        self.assertEqual((src.amount, src.safety_deposit), (1000, 5))
        self.assertEqual((dst.amount, dst.safety_deposit), (2000, 7))

    def test_double_deploy(self):
        order = self.orchestrator.create_order(self.params())
        self.orchestrator.deploy_source(order.order_id)
        with self.assertRaises(AlreadyExists):
            self.orchestrator.deploy_source(order.order_id)

    def test_adopts_existing_escrow(self):
        order = self.orchestrator.create_order(self.params())
        self.src.create(order.order_id, self.hashlock, MAKER, TAKER, "native",
                        1000, 0, order.timelocks)
        self.orchestrator.deploy_source(order.order_id)
        self.assertEqual(order.status, OrderStatus.SOURCE_DEPLOYED)
        self.assertEqual(self.src_client.balance_of(MAKER), 9000)

    def test_chain_mismatch(self):
        order = self.orchestrator.create_order(self.params(source_chain_id=1))
        with self.assertRaises(ChainMismatch):
            self.orchestrator.deploy_source(order.order_id)
        self.assertIsNone(self.src.get(order.order_id))

    def test_partial_deployment_failure(self):
        order = self.orchestrator.create_order(self.params(taking_amount=50_000))
        self.orchestrator.deploy_source(order.order_id)

        with self.assertRaises(DeploymentFailed):
            self.orchestrator.deploy_destination(order.order_id)
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertIn("deployment_failed", order.error)
        # No automatic rollback: source stays locked until its own gate
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CREATED)
        self.assertEqual(self.src_client.custody_of("native"), 1000)

        self.dst_client.credit(TAKER, 50_000)
        self.orchestrator.deploy_destination(order.order_id)
        self.assertEqual(order.status, OrderStatus.FUNDED)
        self.assertIsNone(order.error)


class TestHappyPath(OrchestratorTestCase):

    def test_secret_on_destination_completes_source(self):
        order = self.funded_order()
        self.advance(10)
        self.maker_reveals(order)

        self.orchestrator.poll_order(order.order_id, EscrowSide.DESTINATION,
                                     WatchBudget(max_attempts=1, poll_interval=0))

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(order.secret, self.secret)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.WITHDRAWN)
        self.assertEqual(self.src_client.balance_of(TAKER), 1000)
        self.assertEqual(self.dst_client.balance_of(MAKER), 2000)

    def test_withdrawal_waits_for_gate(self):
        order = self.funded_order(timelocks=[30, 120, 121, 240, 10, 100, 101])
        self.advance(10)
        self.maker_reveals(order)

        self.orchestrator.on_secret_observed(order.order_id, self.secret)
        self.assertEqual(order.status, OrderStatus.FUNDED)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CREATED)

        self.advance(20)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)
        self.assertEqual(order.status, OrderStatus.EXECUTED)

    def test_background_watch(self):
        order = self.funded_order()
        self.advance(10)
        handle = self.orchestrator.watch_order(
            order.order_id, EscrowSide.DESTINATION,
            WatchBudget(max_attempts=1000, poll_interval=0.01),
        )
        self.maker_reveals(order)
        result = handle.result(timeout=10)

        self.assertTrue(result.found)
        self.assertEqual(order.status, OrderStatus.EXECUTED)

    def test_relayer_collects_deposits_after_public_stage(self):
        self.orchestrator.config = OrchestratorConfig(relayer_address=RELAYER)
        order = self.funded_order(src_safety_deposit=3, dst_safety_deposit=4)
        self.advance(120)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(self.src_client.balance_of(RELAYER), 3)
        self.assertEqual(self.dst_client.balance_of(RELAYER), 4)
        self.assertEqual(self.dst_client.balance_of(MAKER), 2000)


    def test_counterparty_caller_completes_both_sides(self):
        order = self.funded_order()
        self.advance(11)
        self.orchestrator.on_secret_observed(order.order_id, self.secret, TAKER)

        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.WITHDRAWN)
        self.assertEqual(self.dst.require(order.order_id).status, EscrowStatus.WITHDRAWN)
        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(self.src_client.balance_of(TAKER), 1000)
        self.assertEqual(self.dst_client.balance_of(MAKER), 2000)

    def test_unrelated_caller_falls_back_to_recipients(self):
        order = self.funded_order()
        self.advance(11)
        self.orchestrator.on_secret_observed(order.order_id, self.secret, "stranger")

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(self.src_client.balance_of("stranger"), 0)
        self.assertEqual(self.dst_client.balance_of("stranger"), 0)


class TestWrongSecret(OrchestratorTestCase):

    def test_rejected_without_state_change(self):
        order = self.funded_order()
        self.advance(10)
        wrong, _ = generate_secret()
        with self.assertRaises(InvalidSecret):
            self.orchestrator.on_secret_observed(order.order_id, wrong)
        self.assertEqual(order.status, OrderStatus.FUNDED)
        self.assertIsNone(order.secret)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CREATED)
        self.assertEqual(self.dst.require(order.order_id).status, EscrowStatus.CREATED)


class TestDoubleWithdraw(OrchestratorTestCase):

    def test_second_call_is_noop(self):
        order = self.funded_order()
        self.advance(10)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(self.src_client.balance_of(TAKER), 1000)
        with self.assertRaises(AlreadyFinalized):
            self.src.withdraw(order.order_id, self.secret, TAKER)


class TestCancellation(OrchestratorTestCase):

    def test_too_early(self):
        order = self.funded_order()
        with self.assertRaises(TimelockNotMet):
            self.orchestrator.cancel_order(order.order_id)
        self.assertEqual(order.status, OrderStatus.FUNDED)

    def test_cancel_both_sides(self):
        order = self.funded_order()

        self.advance(101)       # destination cancellation open, source not yet
        self.orchestrator.cancel_order(order.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(self.dst.require(order.order_id).status, EscrowStatus.CANCELLED)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CREATED)

        self.advance(20)        # source cancellation open
        self.orchestrator.cancel_order(order.order_id)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CANCELLED)
        self.assertEqual(self.src_client.balance_of(MAKER), 10_000)
        self.assertEqual(self.dst_client.balance_of(TAKER), 10_000)

    def test_cancel_before_deployment(self):
        order = self.orchestrator.create_order(self.params())
        self.orchestrator.cancel_order(order.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        with self.assertRaises(AlreadyFinalized):
            self.orchestrator.deploy_source(order.order_id)

    def test_disclosed_secret_wins_over_cancel(self):
        order = self.funded_order()
        self.advance(300)       # every gate open
        self.maker_reveals(order)

        self.orchestrator.cancel_order(order.order_id)

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.WITHDRAWN)
        self.assertEqual(self.src_client.balance_of(TAKER), 1000)

    def test_depositor_caller_cancels_both_sides(self):
        order = self.funded_order()
        self.advance(121)
        self.orchestrator.cancel_order(order.order_id, TAKER)

        self.assertEqual(self.src.require(order.order_id).status, EscrowStatus.CANCELLED)
        self.assertEqual(self.dst.require(order.order_id).status, EscrowStatus.CANCELLED)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(self.src_client.balance_of(MAKER), 10_000)

    def test_cannot_cancel_executed(self):
        order = self.funded_order()
        self.advance(10)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)
        with self.assertRaises(AlreadyFinalized):
            self.orchestrator.cancel_order(order.order_id)


class TestMonitorTimeout(OrchestratorTestCase):

    def test_poll_timeout_marks_failed(self):
        order = self.funded_order()
        with self.assertRaises(MonitorTimeout):
            self.orchestrator.poll_order(order.order_id, EscrowSide.DESTINATION,
                                         WatchBudget(max_attempts=2, poll_interval=0))
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertIn("monitor_timeout", order.error)
        self.assertIs(self.orchestrator.get_order(order.order_id), order)

        # Monitoring can be extended; a later disclosure still completes the order
        self.advance(10)
        self.maker_reveals(order)
        self.orchestrator.poll_order(order.order_id, EscrowSide.DESTINATION,
                                     WatchBudget(max_attempts=1, poll_interval=0))
        self.assertEqual(order.status, OrderStatus.EXECUTED)

    def test_watch_timeout_marks_failed(self):
        order = self.funded_order()
        handle = self.orchestrator.watch_order(order.order_id, EscrowSide.DESTINATION,
                                               WatchBudget(max_attempts=2, poll_interval=0))
        self.assertEqual(handle.result(timeout=10).outcome, WatchOutcome.TIMEOUT)
        self.assertEqual(order.status, OrderStatus.FAILED)

    def test_terminal_order_stops_watch(self):
        order = self.funded_order()
        handle = self.orchestrator.watch_order(order.order_id, EscrowSide.SOURCE,
                                               WatchBudget(max_attempts=1000, poll_interval=30.0))
        self.advance(10)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)
        self.assertTrue(handle.cancelled)
        handle.join(10)
        self.assertTrue(handle.done())


    def test_poll_terminal_order(self):
        order = self.funded_order()
        self.advance(121)
        self.orchestrator.cancel_order(order.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)

        with self.assertRaises(AlreadyFinalized):
            self.orchestrator.poll_order(order.order_id, EscrowSide.DESTINATION,
                                         WatchBudget(max_attempts=1, poll_interval=0))
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertIsNone(order.error)

    def test_late_timeout_keeps_executed(self):
        order = self.funded_order()
        self.advance(10)
        self.orchestrator.on_secret_observed(order.order_id, self.secret)

        self.orchestrator._mark_failed(order, MonitorTimeout("no secret on source ledger"))

        self.assertEqual(order.status, OrderStatus.EXECUTED)
        self.assertIsNone(order.error)


class TestQueries(OrchestratorTestCase):

    def test_pending_and_clear(self):
        done = self.funded_order(salt=1)
        open_order = self.orchestrator.create_order(self.params(salt=2))
        self.advance(10)
        self.orchestrator.on_secret_observed(done.order_id, self.secret)

        self.assertEqual(self.orchestrator.pending_orders(), [open_order])
        self.assertEqual(self.orchestrator.clear_completed_orders(), 1)
        self.assertIsNone(self.orchestrator.get_order(done.order_id))
        self.assertEqual(self.orchestrator.list_orders(), [open_order])

    def test_escrow_payload(self):
        order = self.orchestrator.create_order(self.params())
        payload = self.orchestrator.escrow_payload(order.order_id, EscrowSide.DESTINATION)
        self.assertEqual(payload.side, "destination")
        self.assertEqual(payload.amount, 2000)
        self.assertEqual(payload.chain_id, DST_CHAIN)

    def test_to_dict(self):
        order = self.funded_order()
        data = order.to_dict()
        self.assertEqual(data["status"], "funded")
        self.assertEqual(data["source_escrow"]["chain_id"], SRC_CHAIN)
        self.assertIsNone(data["secret"])


if __name__ == "__main__":
    unittest.main()
