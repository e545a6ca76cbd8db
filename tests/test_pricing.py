from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.pricing import (
    DEFAULT_CREDITS_PER_1K,
    calculate_credits,
    credits_per_1k,
)

pytestmark = [
    allure.epic("Credits"),
    allure.feature("Token Pricing"),
]


@pytest.fixture(autouse=True)
def _no_pricing_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKPILOT_MODEL_CREDITS", raising=False)


def test_calculate_credits_rounds_up_per_model_rate() -> None:
    assert calculate_credits("gpt-4o", 2_500) == 13
    assert calculate_credits("claude-sonnet-4-5-20250929", 1_000) == 3


def test_any_usage_costs_at_least_one_credit() -> None:
    assert calculate_credits("gpt-4o-mini", 100) == 1


def test_no_tokens_cost_nothing() -> None:
    assert calculate_credits("gpt-4o", 0) == 0
    assert calculate_credits(None, -5) == 0


def test_unknown_model_uses_default_rate() -> None:
    assert credits_per_1k("some-new-model") == DEFAULT_CREDITS_PER_1K
    assert credits_per_1k(None) == DEFAULT_CREDITS_PER_1K


def test_env_mapping_overrides_table_and_wildcard(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_MODEL_CREDITS", "gpt-4o:1.0, *:2, broken, :4, bad:rate")

    assert credits_per_1k("gpt-4o") == 1.0
    assert credits_per_1k("unknown-model") == 2.0
    assert credits_per_1k("gpt-4-turbo") == 10.0
    assert calculate_credits("unknown-model", 1_500) == 3


def test_model_names_may_contain_colons(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_MODEL_CREDITS", "local:llama3:0.5")

    assert credits_per_1k("local:llama3") == 0.5
