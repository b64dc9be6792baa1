import pytest

from route_orchestrator.domain.conditions import (
    ConditionList,
    ConditionLogic,
    PredicateCondition,
    TextCondition,
    as_condition,
    extract_ai_context_strings,
    has_programmatic_conditions,
)
from route_orchestrator.execution.conditions import ConditionEvaluator
from route_orchestrator.execution.templating import TemplateContext


def has_hotel(ctx):
    return bool(ctx.data.get("hotelName"))


# --- Normalization ---

def test_as_condition_normalizes_configuration_values():
    assert as_condition(None) is None
    assert as_condition([]) is None
    assert as_condition("The user is angry") == TextCondition("The user is angry")
    assert isinstance(as_condition(has_hotel), PredicateCondition)

    mixed = as_condition(["text", has_hotel, [None, "nested"]])
    assert isinstance(mixed, ConditionList)
    assert len(mixed.items) == 3


def test_as_condition_rejects_unknown_values():
    with pytest.raises(TypeError):
        as_condition(42)


def test_text_leaves_are_collected_depth_first():
    condition = as_condition(["first", has_hotel, ["second", ["third"]]])

    assert extract_ai_context_strings(condition) == ["first", "second", "third"]
    assert has_programmatic_conditions(condition) is True
    assert has_programmatic_conditions(as_condition("text only")) is False


# --- Evaluation ---

@pytest.mark.asyncio
async def test_text_only_condition_uses_neutral_default():
    """Text never affects the programmatic result."""
    evaluator = ConditionEvaluator()
    ctx = TemplateContext()

    and_eval = await evaluator.evaluate(as_condition("wants a room"), ctx, ConditionLogic.AND)
    or_eval = await evaluator.evaluate(as_condition("wants a room"), ctx, ConditionLogic.OR)

    assert and_eval.programmatic_result is True
    assert or_eval.programmatic_result is False
    assert and_eval.ai_context_strings == ["wants a room"]
    assert and_eval.has_programmatic_conditions is False


@pytest.mark.asyncio
async def test_missing_condition_evaluates_to_neutral():
    evaluation = await ConditionEvaluator().evaluate(None, TemplateContext(), ConditionLogic.OR)

    assert evaluation.programmatic_result is False
    assert evaluation.ai_context_strings == []


@pytest.mark.asyncio
async def test_and_or_aggregate_predicates():
    evaluator = ConditionEvaluator()
    ctx = TemplateContext(data={"hotelName": "Ritz"})
    condition = as_condition([has_hotel, lambda ctx: False, "some text"])

    assert (await evaluator.evaluate(condition, ctx, ConditionLogic.AND)).programmatic_result is False
    assert (await evaluator.evaluate(condition, ctx, ConditionLogic.OR)).programmatic_result is True


@pytest.mark.asyncio
async def test_async_predicates_are_awaited():
    async def is_vip(ctx):
        return ctx.context.get("tier") == "gold"

    evaluation = await ConditionEvaluator().evaluate(
        as_condition(is_vip), TemplateContext(context={"tier": "gold"})
    )

    assert evaluation.programmatic_result is True
    assert evaluation.details[0].label == "is_vip"


@pytest.mark.asyncio
async def test_raising_predicate_counts_as_false():
    """A broken predicate is logged and does not abort evaluation."""
    def broken(ctx):
        raise KeyError("missing")

    evaluation = await ConditionEvaluator().evaluate(
        as_condition([broken, has_hotel]), TemplateContext(data={"hotelName": "Ritz"}), ConditionLogic.OR
    )

    assert evaluation.programmatic_result is True
    assert evaluation.details[0].result is False
    assert "missing" in evaluation.details[0].error
