import asyncio

import pytest

from conftest import FlakyKV, MemoryKV
from stoicaf.access_codes import generate_code, redeem_code
from stoicaf.entitlements import get_purchases
from stoicaf.errors import CodeExhausted, WriteConflict
from stoicaf.model.keys import k_code
from stoicaf.model.records import AccessCode


def run(coro):
    return asyncio.run(coro)


def stored(kv, code):
    return AccessCode.model_validate(run(kv.get(k_code(code))))


def test_failed_grant_can_be_redeemed_again():
    kv = FlakyKV("purchases:", failures=100)
    code = run(generate_code(kv, ["Ego", "Money"], usage_limit=1)).code

    with pytest.raises(WriteConflict):
        run(redeem_code(kv, "u1", code))
    assert run(get_purchases(kv, "u1")) == []
    assert stored(kv, code).usage_count == 1

    kv.failures = 0
    record, added = run(redeem_code(kv, "u1", code))
    assert added == ["Ego", "Money"]
    assert record.usage_count == 1
    assert record.redeemed_by == ["u1"]
    assert run(get_purchases(kv, "u1")) == ["Ego", "Money"]

    with pytest.raises(CodeExhausted):
        run(redeem_code(kv, "u2", code))


def test_repeat_redeem_does_not_spend_a_use():
    kv = MemoryKV()
    code = run(generate_code(kv, ["Ego"], usage_limit=2)).code
    run(redeem_code(kv, "u1", code))
    record, added = run(redeem_code(kv, "u1", code))
    assert added == []
    assert record.usage_count == 1
    run(redeem_code(kv, "u2", code))
    assert stored(kv, code).usage_count == 2
    assert stored(kv, code).redeemed_by == ["u1", "u2"]
