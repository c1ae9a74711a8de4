import json

from common.models import FactStatus, Stage
from common.parsers import CONDITION_LIKE_NEW, CONDITION_TAXONOMY, DEFAULT_CONDITION
from common.steps import (
    FACT_BROWSE_INDEX, FACT_CANDIDATES, FACT_CONDITION, FACT_FLOOR_PRICE, FACT_IDENTITY, FACT_PRICE_TYPE,
    FACT_VARIANT_OPTIONS,
    AskLabelPhotoPrompt, BrowseAlternativesPrompt, Candidate, ChooseConditionPrompt, ChooseVariantPrompt,
    ConfirmIdentityPrompt, FactRecord, FinalConfirmPrompt, PricingPrompt,
    derive_step, dump_pending, load_pending, render_prompt, render_summary, settle, stage_rank,
)


def _facts(*records):
    return {r.key: r for r in records}


def _confirmed(key, value):
    return FactRecord(key=key, value=value, status=FactStatus.confirmed)


def _proposed(key, value, confidence=1.0):
    return FactRecord(key=key, value=value, confidence=confidence, status=FactStatus.proposed)


ALTERNATIVES = [
    {"title": "Nike Air Force 1 '07", "images": ["https://img.example/a.jpg"]},
    {"title": "Nike Air Force 1 Shadow", "images": ["https://img.example/b.jpg"]},
]


def test_identity_step_follows_confidence_threshold():
    high = _facts(_proposed(FACT_IDENTITY, "Nike Air Force 1", 0.9))
    low = _facts(_proposed(FACT_IDENTITY, "Nike Air Force 1", 0.59))
    assert isinstance(derive_step(Stage.confirm_identity, high), ConfirmIdentityPrompt)
    assert isinstance(derive_step(Stage.confirm_identity, low), AskLabelPhotoPrompt)
    assert isinstance(derive_step(Stage.confirm_identity, {}), AskLabelPhotoPrompt)


def test_rejected_identity_browses_until_index_runs_out():
    facts = _facts(
        FactRecord(key=FACT_IDENTITY, value="Nike Air Force 1", status=FactStatus.rejected),
        _proposed(FACT_CANDIDATES, ALTERNATIVES),
        _proposed(FACT_BROWSE_INDEX, 1),
    )
    step = derive_step(Stage.confirm_identity, facts)
    assert isinstance(step, BrowseAlternativesPrompt)
    assert step.index == 1
    assert step.candidates[1].title == "Nike Air Force 1 Shadow"

    exhausted = dict(facts)
    exhausted[FACT_BROWSE_INDEX] = _proposed(FACT_BROWSE_INDEX, 2)
    assert isinstance(derive_step(Stage.confirm_identity, exhausted), AskLabelPhotoPrompt)


def test_candidates_without_images_are_not_browsable():
    facts = _facts(
        FactRecord(key=FACT_IDENTITY, value="Nike Air Force 1", status=FactStatus.rejected),
        _proposed(FACT_CANDIDATES, [{"title": "No picture", "images": []}]),
        _proposed(FACT_BROWSE_INDEX, 0),
    )
    assert isinstance(derive_step(Stage.confirm_identity, facts), AskLabelPhotoPrompt)


def test_variant_questions_follow_priority_and_skip_single_values():
    facts = _facts(
        _confirmed(FACT_IDENTITY, "Nike Air Force 1"),
        _proposed(FACT_VARIANT_OPTIONS, {"size": ["9", "10"], "color": ["White"], "department": ["Men", "Women"]}),
    )
    step = derive_step(Stage.confirm_variants, facts)
    assert isinstance(step, ChooseVariantPrompt)
    assert step.key == "size"

    facts["size"] = _confirmed("size", "10")
    step = derive_step(Stage.confirm_variants, facts)
    assert step.key == "department"
    assert step.choices == ["Men", "Women"]


def test_rejected_variant_options_ask_nothing():
    facts = _facts(
        _confirmed(FACT_IDENTITY, "Something else"),
        FactRecord(key=FACT_VARIANT_OPTIONS, value={"size": ["9", "10"]}, status=FactStatus.rejected),
    )
    assert derive_step(Stage.confirm_variants, facts) is None


def test_condition_suggestion_uses_proposed_fact_or_default():
    assert derive_step(Stage.confirm_condition, {}).suggested == DEFAULT_CONDITION
    facts = _facts(_proposed(FACT_CONDITION, CONDITION_LIKE_NEW, 0.5))
    assert derive_step(Stage.confirm_condition, facts).suggested == CONDITION_LIKE_NEW


def test_settle_walks_forward_to_first_open_question():
    facts = _facts(
        _confirmed(FACT_IDENTITY, "Nike Air Force 1"),
        _proposed(FACT_VARIANT_OPTIONS, {"size": ["10"]}),
        _confirmed("size", "10"),
    )
    stage, step = settle(Stage.confirm_identity, facts)
    assert stage == Stage.confirm_condition
    assert isinstance(step, ChooseConditionPrompt)


def test_settle_never_moves_backwards():
    facts = _facts(_confirmed(FACT_PRICE_TYPE, "quick_sale"))
    stage, step = settle(Stage.pricing, facts)
    assert stage == Stage.pricing
    assert isinstance(step, PricingPrompt) and step.step == "floor_price"

    facts[FACT_FLOOR_PRICE] = _confirmed(FACT_FLOOR_PRICE, "25")
    stage, step = settle(Stage.pricing, facts)
    assert stage == Stage.final_confirm
    assert stage_rank(stage) > stage_rank(Stage.pricing)
    assert isinstance(step, FinalConfirmPrompt)


def test_awaiting_photos_has_no_pending_prompt():
    assert derive_step(Stage.awaiting_photos, {}) is None
    assert settle(Stage.awaiting_photos, {}) == (Stage.awaiting_photos, None)


def test_pending_prompts_survive_json_storage():
    prompts = [
        ConfirmIdentityPrompt(suggested="Nike Air Force 1", alternatives=[Candidate(title="AF1 '07", images=["u"])]),
        BrowseAlternativesPrompt(candidates=[Candidate(title="AF1 '07", images=["u"])], index=0),
        AskLabelPhotoPrompt(),
        ChooseVariantPrompt(key="size", choices=["9", "10"]),
        ChooseConditionPrompt(suggested=DEFAULT_CONDITION),
        PricingPrompt(step="floor_price"),
        FinalConfirmPrompt(summary="Summary: X"),
    ]
    for prompt in prompts:
        stored = json.loads(json.dumps(dump_pending(prompt)))
        assert load_pending(stored) == prompt


def test_unreadable_pending_counts_as_missing():
    assert load_pending(None) is None
    assert load_pending({"kind": "mystery"}) is None
    assert load_pending({"kind": "choose_variant", "key": "size", "choices": []}) is None


def test_summary_lists_confirmed_facts_only():
    facts = _facts(
        _confirmed(FACT_IDENTITY, "Nike Air Force 1"),
        _confirmed("size", "10"),
        _confirmed(FACT_CONDITION, "Used – Good"),
        _confirmed(FACT_FLOOR_PRICE, "25"),
        _proposed("description", "not yet confirmed"),
    )
    assert render_summary(facts) == (
        "Summary: Nike Air Force 1 | Size: 10 | Condition: Used – Good | Floor: $25. List it?"
    )


def test_identity_prompt_offers_show_similar_only_with_alternatives():
    plain = render_prompt(ConfirmIdentityPrompt(suggested="Nike Air Force 1"))
    assert plain.text.startswith("Is this a Nike Air Force 1?")
    assert [c.value for c in plain.choices] == ["yes", "no"]

    similar = render_prompt(
        ConfirmIdentityPrompt(suggested="Nike Air Force 1", alternatives=[Candidate(title="AF1", images=["u"])])
    )
    assert [c.value for c in similar.choices] == ["yes", "show_similar"]


def test_condition_retry_offers_whole_taxonomy():
    reply = render_prompt(ChooseConditionPrompt(suggested=DEFAULT_CONDITION), retry=True)
    assert [c.value for c in reply.choices] == list(CONDITION_TAXONOMY)
