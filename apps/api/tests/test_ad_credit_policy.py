import pytest

from services.ad_rewards import AdCreditOutcome, AdCreditRetryPolicy


class _RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _credit_returning(*results):
    calls = []
    queue = list(results)

    async def _credit(device_id, amount):
        calls.append((device_id, amount))
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _credit, calls


@pytest.mark.asyncio
async def test_first_attempt_success_does_not_wait():
    credit, calls = _credit_returning(60)
    sleep = _RecordingSleep()

    result = await AdCreditRetryPolicy(credit, retry_delay_seconds=1.0, sleep=sleep).run("device-ad", 30)

    assert result.outcome == AdCreditOutcome.CREDITED
    assert result.balance == 60
    assert result.attempts == 1
    assert result.confirmed is True
    assert calls == [("device-ad", 30)]
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retries_once_after_delay():
    credit, calls = _credit_returning(ConnectionError("flaky"), 30)
    sleep = _RecordingSleep()

    result = await AdCreditRetryPolicy(credit, retry_delay_seconds=1.0, sleep=sleep).run("device-ad", 30)

    assert result.outcome == AdCreditOutcome.CREDITED_AFTER_RETRY
    assert result.balance == 30
    assert result.attempts == 2
    assert len(calls) == 2
    assert sleep.calls == [1.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failures",
    [
        (None, None),
        (-1, RuntimeError("still down")),
        (TimeoutError(), -1),
    ],
)
async def test_second_failure_escalates_to_optimistic_proceed(failures):
    credit, calls = _credit_returning(*failures)
    sleep = _RecordingSleep()

    result = await AdCreditRetryPolicy(credit, retry_delay_seconds=0.5, sleep=sleep).run("device-ad", 30)

    assert result.outcome == AdCreditOutcome.PROCEED_OPTIMISTIC
    assert result.confirmed is False
    assert result.balance is None
    assert result.attempts == 2
    assert len(calls) == 2
    assert sleep.calls == [0.5]
