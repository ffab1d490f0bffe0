import asyncio

import pytest

from engine.cleaner import clean_csv, clean_rows
from engine.credits import CreditGate
from engine.errors import InsufficientCredit, NoEmailColumn, NoValidRows, SessionCancelled
from engine.models import CreditPolicy, Identity, VerificationVerdict
from store.ledger import MemoryLedger


def _oracle(valid: set[str], calls: list[str]):
    async def fake_verify(email: str):
        calls.append(email)
        ok = email in valid
        return VerificationVerdict(email=email, syntax=True, mx_record=ok, smtp=ok, verified=ok)

    return fake_verify


def test_alice_and_carl_survive_for_two_credits() -> None:
    gate = CreditGate(MemoryLedger(), account_starting_credits=3)
    alice = Identity.account("alice")
    calls: list[str] = []
    progress: list[float] = []

    result = asyncio.run(
        clean_rows(
            ["Name", "Email"],
            [["Alice", "a@x.com"], ["Bob", "not-an-email"], ["Carl", "c@x.com"]],
            identity=alice,
            gate=gate,
            verify_fn=_oracle({"a@x.com", "c@x.com"}, calls),
            progress_callback=progress.append,
            batch_delay_seconds=0,
        )
    )

    assert result.rows == [["Name", "Email"], ["Alice", "a@x.com"], ["Carl", "c@x.com"]]
    assert result.credits_consumed == 2
    assert result.remaining_credits == 1
    assert result.total_emails == 2
    assert result.verified_emails == 2
    assert sorted(calls) == ["a@x.com", "c@x.com"]
    assert progress[-1] == 100.0


def test_balance_of_one_halts_after_one_call() -> None:
    ledger = MemoryLedger()
    gate = CreditGate(ledger, ip_starting_credits=1)
    ip = Identity.ip("10.0.0.7")
    calls: list[str] = []

    with pytest.raises(InsufficientCredit) as excinfo:
        asyncio.run(
            clean_rows(
                ["Email"],
                [["a@x.com"], ["b@x.com"], ["c@x.com"]],
                identity=ip,
                gate=gate,
                verify_fn=_oracle({"a@x.com", "b@x.com", "c@x.com"}, calls),
                batch_delay_seconds=0,
            )
        )

    assert len(calls) == 1
    assert excinfo.value.credits_consumed == 1
    assert excinfo.value.required == 2
    assert list(excinfo.value.verdicts) == calls
    assert ledger.get(ip.ledger_key).credits == 0


def test_preflight_rejects_without_any_calls() -> None:
    ledger = MemoryLedger()
    gate = CreditGate(ledger, ip_starting_credits=1)
    ip = Identity.ip("10.0.0.8")
    calls: list[str] = []

    with pytest.raises(InsufficientCredit) as excinfo:
        asyncio.run(
            clean_rows(
                ["Email"],
                [["a@x.com"], ["b@x.com"]],
                identity=ip,
                gate=gate,
                verify_fn=_oracle(set(), calls),
                policy=CreditPolicy.preflight,
                batch_delay_seconds=0,
            )
        )

    assert calls == []
    assert excinfo.value.available == 1
    assert ledger.get(ip.ledger_key).credits == 1


def test_preflight_still_consumes_per_address() -> None:
    gate = CreditGate(MemoryLedger(), account_starting_credits=5)
    alice = Identity.account("alice")

    result = asyncio.run(
        clean_rows(
            ["Email"],
            [["a@x.com"], ["b@x.com"]],
            identity=alice,
            gate=gate,
            verify_fn=_oracle({"a@x.com"}, []),
            policy=CreditPolicy.preflight,
            batch_delay_seconds=0,
        )
    )

    assert result.credits_consumed == 2
    assert result.remaining_credits == 3
    assert result.rows == [["Email"], ["a@x.com"]]


def test_no_verified_rows_still_charges() -> None:
    gate = CreditGate(MemoryLedger(), account_starting_credits=3)
    alice = Identity.account("alice")

    with pytest.raises(NoValidRows):
        asyncio.run(
            clean_rows(
                ["Email"],
                [["a@x.com"]],
                identity=alice,
                gate=gate,
                verify_fn=_oracle(set(), []),
                batch_delay_seconds=0,
            )
        )

    assert gate.check_balance(alice) == 2


def test_missing_email_column_charges_nothing() -> None:
    gate = CreditGate(MemoryLedger(), account_starting_credits=3)
    alice = Identity.account("alice")

    with pytest.raises(NoEmailColumn):
        asyncio.run(clean_csv(b"Name,Phone\nAlice,555\n", identity=alice, gate=gate, verify_fn=_oracle(set(), [])))

    assert gate.check_balance(alice) == 3


def test_cancelled_session_raises() -> None:
    gate = CreditGate(MemoryLedger(), account_starting_credits=10)

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        return await clean_csv(
            b"Email\na@x.com\n",
            identity=Identity.account("alice"),
            gate=gate,
            verify_fn=_oracle({"a@x.com"}, []),
            cancel_event=cancel,
        )

    with pytest.raises(SessionCancelled):
        asyncio.run(scenario())


def test_cancel_mid_session_reports_credits_already_spent() -> None:
    ledger = MemoryLedger()
    gate = CreditGate(ledger, account_starting_credits=10)
    alice = Identity.account("alice")

    async def scenario():
        cancel = asyncio.Event()

        async def verify_then_cancel(email: str):
            cancel.set()
            return VerificationVerdict(email=email, syntax=True, mx_record=True, smtp=True, verified=True)

        return await clean_csv(
            b"Email\na@x.com\nb@x.com\nc@x.com\n",
            identity=alice,
            gate=gate,
            verify_fn=verify_then_cancel,
            batch_size=1,
            batch_delay_seconds=0,
            cancel_event=cancel,
        )

    with pytest.raises(SessionCancelled) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.credits_consumed == 1
    assert excinfo.value.to_dict()["credits_consumed"] == 1
    assert ledger.get(alice.ledger_key).credits == 9
