"""
Tests de créditos por período: plan, siembra del contador, idempotencia y fail-open.
"""

from datetime import datetime, timezone

import pytest

from lexia.ai.usage import CreditGate, next_period_start, period_start
from lexia.core.errors import CreditsExhausted


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_gate(counters, store, **kwargs) -> CreditGate:
    kwargs.setdefault("fail_open", True)
    return CreditGate(counters, store, clock=lambda: NOW, **kwargs)


def test_period_bounds():
    assert period_start(NOW).isoformat() == "2026-03-01"
    assert next_period_start(NOW) == datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert next_period_start(datetime(2026, 12, 31, tzinfo=timezone.utc)) == datetime(2027, 1, 1, tzinfo=timezone.utc)


async def test_user_without_plan_gets_individual(counters, store):
    status = await make_gate(counters, store).check_remaining("user-1")

    assert status.allowed
    assert status.limit == 300
    assert status.remaining == 300


async def test_plan_limit_and_persisted_usage(counters, store):
    """Test: el contador se siembra con lo ya consumido en el período."""
    store.tables["profiles"] = [{"id": "user-1", "lexia_plan_id": "plan-pro"}]
    store.tables["lexia_plans"] = [{"id": "plan-pro", "slug": "professional", "credits_per_month": 600}]
    store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 590, "tokens_used": 1000},
    ]
    gate = make_gate(counters, store)

    first = await gate.check_remaining("user-1")
    second = await gate.check_remaining("user-1")

    assert first.limit == 600
    assert first.remaining == 10
    # La siembra ocurre una sola vez: leer de nuevo no duplica lo consumido.
    assert second.remaining == 10


async def test_record_is_idempotent_by_trace_id(counters, store):
    gate = make_gate(counters, store)

    assert await gate.record("user-1", "trace-1", "document_drafting", 2, 500) is True
    assert await gate.record("user-1", "trace-1", "document_drafting", 2, 500) is False

    assert len(store.rows("lexia_usage_log")) == 1
    periods = store.rows("lexia_usage_periods")
    assert len(periods) == 1
    assert periods[0]["credits_used"] == 2
    assert periods[0]["period_end"] == "2026-03-31"
    assert (await gate.check_remaining("user-1")).remaining == 298


async def test_record_after_persisted_usage_counts_once(counters, store):
    store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 10, "tokens_used": 0},
    ]
    gate = make_gate(counters, store)

    await gate.record("user-1", "trace-1", "legal_analysis", 3, 100)

    assert store.rows("lexia_usage_periods")[0]["credits_used"] == 13
    assert (await gate.check_remaining("user-1")).remaining == 287


async def test_exhausted_credits_return_402(counters, store):
    store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 300, "tokens_used": 0},
    ]

    with pytest.raises(CreditsExhausted) as excinfo:
        await make_gate(counters, store).ensure_allowed("user-1")

    assert excinfo.value.status_code == 402


async def test_default_gate_blocks_exhausted_user(counters, store):
    """Test: con la configuración por defecto, sin créditos no se llega al proveedor."""
    gate = CreditGate(counters, store, clock=lambda: NOW)
    await gate.record("user-1", "trace-1", "legal_analysis", 400, 0)

    status = await gate.check_remaining("user-1")

    assert not status.allowed
    assert status.remaining == 0.0
    with pytest.raises(CreditsExhausted):
        await gate.ensure_allowed("user-1")


async def test_first_check_seeds_counter_once(counters, store):
    """Test: la consulta siembra el contador una sola vez y no consume créditos."""
    store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 50, "tokens_used": 0},
    ]
    gate = make_gate(counters, store)

    await gate.check_remaining("user-1")
    await gate.check_remaining("user-1")

    assert (await counters.peek("credits:user-1:2026-03")).value == 50
    assert store.rows("lexia_usage_log") == []


async def test_storage_failure_fails_open(counters, store):
    store.fail_tables.add("profiles")

    status = await make_gate(counters, store, fail_open=True).check_remaining("user-1")

    assert status.allowed


async def test_storage_failure_fails_closed(counters, store):
    store.fail_tables.add("profiles")
    gate = make_gate(counters, store, fail_open=False)

    assert not (await gate.check_remaining("user-1")).allowed
    with pytest.raises(CreditsExhausted):
        await gate.ensure_allowed("user-1")


async def test_failed_seed_is_retried(counters, store):
    """Test: si la lectura del período falla, el próximo request vuelve a sembrar."""
    store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 100, "tokens_used": 0},
    ]
    store.fail_tables.add("lexia_usage_periods")
    gate = make_gate(counters, store)

    await gate.check_remaining("user-1")
    store.fail_tables.clear()

    assert (await gate.check_remaining("user-1")).remaining == 200
