"""
Property-based checks over random operation sequences.

Money only enters through account openings and deposits and only leaves
through withdrawals, so the sum of all balances (platform included) must
always equal openings + deposits - withdrawals, whatever else happens.
"""

import asyncio
from decimal import Decimal

from hypothesis import HealthCheck, given
from hypothesis import settings as h_settings
from hypothesis.strategies import composite, decimals, integers, lists, sampled_from

from timeledger.client import TimeBank
from timeledger.core.config import Config
from timeledger.core.exceptions import TimeLedgerError
from timeledger.storage.memory import InMemoryStorage

ACCOUNTS = ["alice", "bob", "carol"]
OPENING = Decimal("20.00")


@composite
def operation(draw):
    kind = draw(sampled_from(["transfer", "service", "deposit", "withdraw", "reverse"]))
    return (
        kind,
        draw(sampled_from(ACCOUNTS)),
        draw(sampled_from(ACCOUNTS)),
        draw(decimals(min_value=Decimal("0.01"), max_value=Decimal("30"), places=2)),
        draw(integers(min_value=0, max_value=50)),
    )


async def run_scenario(ops):
    bank = TimeBank(config=Config(lock_retry_delay=0.001), storage=InMemoryStorage(), log_level="WARNING")
    for name in ACCOUNTS:
        await bank.open_account(name, initial_balance=OPENING)

    expected_total = OPENING * len(ACCOUNTS)
    settled = []

    for kind, sender, recipient, amount, pick in ops:
        try:
            if kind == "transfer":
                settled.append((await bank.settle_transfer(sender, recipient, amount)).entry_id)
            elif kind == "service":
                settled.append((await bank.pay_for_service(sender, recipient, amount)).entry_id)
            elif kind == "deposit":
                result = await bank.deposit_credits(recipient, amount, reason="property test")
                settled.append(result.entry_id)
                expected_total += result.entry.amount
            elif kind == "withdraw":
                result = await bank.withdraw_credits(sender, amount, reason="property test")
                settled.append(result.entry_id)
                expected_total -= result.entry.amount
            elif settled:
                entry_id = settled[pick % len(settled)]
                entry = await bank.get_entry(entry_id)
                reversal = await bank.reverse_entry(entry_id, reason="property test")
                if reversal.refunded:
                    expected_total -= sum(p.delta for p in entry.postings)
        except TimeLedgerError:
            pass

    balances = [await bank.get_balance(name) for name in ACCOUNTS]
    platform = await bank.balances.ensure_platform_account()
    reports = [await bank.reconcile_account(name) for name in [*ACCOUNTS, platform.id]]
    return sum(balances, platform.balance), expected_total, reports


@h_settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(lists(operation(), min_size=1, max_size=25))
def test_total_balance_conserved(ops):
    total, expected_total, reports = asyncio.run(run_scenario(ops))

    assert total == expected_total
    assert all(r.consistent for r in reports)
