"""Stages, pending prompts and step derivation for the listing dialogue.

``derive_step`` is the only place that decides what the engine asks next.
The ``pending`` column on a draft caches its output; when the cache is
missing the engine calls ``derive_step`` again and gets the same prompt.
"""
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from common.models import FactStatus, Stage
from common.parsers import (
    BROWSE_NEXT, BROWSE_NONE, BROWSE_THIS_IS_MINE, CONDITION_TAXONOMY, DEFAULT_CONDITION,
    PRICE_TYPE_BEST_PRICE, PRICE_TYPE_QUICK_SALE, SHOW_SIMILAR,
)

logger = logging.getLogger(__name__)

IDENTITY_CONFIDENCE_THRESHOLD = 0.6

FACT_IDENTITY = "identity"
FACT_CANDIDATES = "candidates"
FACT_VARIANT_OPTIONS = "variant_options"
FACT_BROWSE_INDEX = "browse_index"
FACT_CONDITION = "condition"
FACT_PRICE_TYPE = "price_type"
FACT_FLOOR_PRICE = "floor_price"
FACT_DESCRIPTION = "description"
VARIANT_KEYS = ("size", "color", "department")

STAGE_ORDER = (
    Stage.awaiting_photos,
    Stage.researching_identity,
    Stage.confirm_identity,
    Stage.confirm_variants,
    Stage.confirm_condition,
    Stage.pricing,
    Stage.final_confirm,
    Stage.complete,
)

# Stages that end on their own once derive_step has nothing left to ask.
SETTLING_STAGES = frozenset({
    Stage.confirm_identity,
    Stage.confirm_variants,
    Stage.confirm_condition,
    Stage.pricing,
})


def stage_rank(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage) -> Stage:
    rank = stage_rank(stage)
    if rank + 1 >= len(STAGE_ORDER):
        return stage
    return STAGE_ORDER[rank + 1]


# --- Outbound reply ---

class Choice(BaseModel):
    label: str
    value: str
    images: Optional[List[str]] = None


class Reply(BaseModel):
    text: str
    choices: Optional[List[Choice]] = None


YES_NO_CHOICES = [Choice(label="Yes", value="yes"), Choice(label="No", value="no")]
PRICE_TYPE_CHOICES = [
    Choice(label="Quick sale", value=PRICE_TYPE_QUICK_SALE),
    Choice(label="Best price", value=PRICE_TYPE_BEST_PRICE),
]
FINAL_CONFIRM_CHOICES = [Choice(label="List it", value="yes"), Choice(label="Not yet", value="no")]


# --- Pending prompts ---

class Candidate(BaseModel):
    title: str
    images: List[str] = Field(default_factory=list)


class ConfirmIdentityPrompt(BaseModel):
    kind: Literal["confirm_identity"] = "confirm_identity"
    suggested: str
    alternatives: List[Candidate] = Field(default_factory=list)


class BrowseAlternativesPrompt(BaseModel):
    kind: Literal["browse_alternatives"] = "browse_alternatives"
    candidates: List[Candidate]
    index: int = Field(0, ge=0)


class AskLabelPhotoPrompt(BaseModel):
    kind: Literal["ask_label_photo"] = "ask_label_photo"


class ChooseVariantPrompt(BaseModel):
    kind: Literal["choose_variant"] = "choose_variant"
    key: Literal["size", "color", "department"]
    choices: List[str] = Field(..., min_length=1)


class ChooseConditionPrompt(BaseModel):
    kind: Literal["choose_condition"] = "choose_condition"
    suggested: str
    choices: List[str] = Field(default_factory=lambda: list(CONDITION_TAXONOMY))


class PricingPrompt(BaseModel):
    kind: Literal["pricing"] = "pricing"
    step: Literal["price_type", "floor_price"]


class FinalConfirmPrompt(BaseModel):
    kind: Literal["final_confirm"] = "final_confirm"
    summary: str


PendingPrompt = Annotated[
    Union[
        ConfirmIdentityPrompt,
        BrowseAlternativesPrompt,
        AskLabelPhotoPrompt,
        ChooseVariantPrompt,
        ChooseConditionPrompt,
        PricingPrompt,
        FinalConfirmPrompt,
    ],
    Field(discriminator="kind"),
]

_pending_adapter: TypeAdapter = TypeAdapter(PendingPrompt)


def dump_pending(prompt: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    if prompt is None:
        return None
    return prompt.model_dump(mode="json")


def load_pending(raw: Any) -> Optional[BaseModel]:
    """Parse a stored pending prompt; unreadable payloads count as missing."""
    if not raw:
        return None
    try:
        return _pending_adapter.validate_python(raw)
    except ValidationError as exc:
        logger.warning("Discarding unreadable pending prompt: %s", exc.error_count())
        return None


# --- Fact snapshots ---

@dataclass(frozen=True)
class FactRecord:
    key: str
    value: Any
    confidence: float = 1.0
    source: str = "user"
    status: FactStatus = FactStatus.proposed
    evidence: List[Any] = field(default_factory=list)


FactMap = Mapping[str, FactRecord]


def confirmed_value(facts: FactMap, key: str) -> Any:
    record = facts.get(key)
    if record is None or record.status != FactStatus.confirmed:
        return None
    return record.value


def proposed_value(facts: FactMap, key: str) -> Any:
    record = facts.get(key)
    if record is None or record.status != FactStatus.proposed:
        return None
    return record.value


def is_confirmed(facts: FactMap, key: str) -> bool:
    record = facts.get(key)
    return record is not None and record.status == FactStatus.confirmed


def browse_alternatives(facts: FactMap) -> List[Candidate]:
    record = facts.get(FACT_CANDIDATES)
    if record is None or record.status == FactStatus.rejected or not isinstance(record.value, list):
        return []
    out: List[Candidate] = []
    for item in record.value:
        if isinstance(item, dict) and item.get("title") and item.get("images"):
            out.append(Candidate(title=item["title"], images=list(item["images"])))
    return out


def variant_domains(facts: FactMap) -> Dict[str, List[str]]:
    record = facts.get(FACT_VARIANT_OPTIONS)
    if record is None or record.status == FactStatus.rejected or not isinstance(record.value, dict):
        return {}
    domains: Dict[str, List[str]] = {}
    for key in VARIANT_KEYS:
        values = record.value.get(key)
        if isinstance(values, list):
            domains[key] = [str(v) for v in values if str(v).strip()]
    return domains


def next_variant_question(facts: FactMap) -> Optional[Tuple[str, List[str]]]:
    domains = variant_domains(facts)
    for key in VARIANT_KEYS:
        choices = domains.get(key) or []
        if len(choices) < 2 or is_confirmed(facts, key):
            continue
        return key, choices
    return None


def suggested_condition(facts: FactMap) -> str:
    value = proposed_value(facts, FACT_CONDITION)
    if isinstance(value, str) and value in CONDITION_TAXONOMY:
        return value
    return DEFAULT_CONDITION


def render_summary(facts: FactMap) -> str:
    identity = confirmed_value(facts, FACT_IDENTITY) or "Item"
    size = confirmed_value(facts, "size") or "—"
    condition = confirmed_value(facts, FACT_CONDITION) or "—"
    floor = confirmed_value(facts, FACT_FLOOR_PRICE)
    parts = [
        f"Summary: {identity}",
        f"Size: {size}",
        f"Condition: {condition}",
        f"Floor: ${floor}" if floor else "Floor: —",
    ]
    description = confirmed_value(facts, FACT_DESCRIPTION)
    if description:
        parts.append(f"Description: {description}")
    return " | ".join(parts) + ". List it?"


# --- Derivation ---

def _derive_identity_step(facts: FactMap) -> Optional[BaseModel]:
    identity = facts.get(FACT_IDENTITY)
    if identity is None:
        return AskLabelPhotoPrompt()
    if identity.status == FactStatus.confirmed:
        return None
    alternatives = browse_alternatives(facts)
    if identity.status == FactStatus.proposed:
        if identity.value and identity.confidence >= IDENTITY_CONFIDENCE_THRESHOLD:
            return ConfirmIdentityPrompt(suggested=str(identity.value), alternatives=alternatives)
        return AskLabelPhotoPrompt()
    index = proposed_value(facts, FACT_BROWSE_INDEX)
    if isinstance(index, int) and 0 <= index < len(alternatives):
        return BrowseAlternativesPrompt(candidates=alternatives, index=index)
    return AskLabelPhotoPrompt()


def derive_step(stage: Stage, facts: FactMap) -> Optional[BaseModel]:
    """Return the prompt the draft is waiting on, or None when the stage asks nothing."""
    if stage == Stage.confirm_identity:
        return _derive_identity_step(facts)
    if stage == Stage.confirm_variants:
        question = next_variant_question(facts)
        if question is None:
            return None
        key, choices = question
        return ChooseVariantPrompt(key=key, choices=choices)
    if stage == Stage.confirm_condition:
        if is_confirmed(facts, FACT_CONDITION):
            return None
        return ChooseConditionPrompt(suggested=suggested_condition(facts))
    if stage == Stage.pricing:
        if not is_confirmed(facts, FACT_PRICE_TYPE):
            return PricingPrompt(step="price_type")
        if not is_confirmed(facts, FACT_FLOOR_PRICE):
            return PricingPrompt(step="floor_price")
        return None
    if stage == Stage.final_confirm:
        return FinalConfirmPrompt(summary=render_summary(facts))
    return None


def settle(stage: Stage, facts: FactMap) -> Tuple[Stage, Optional[BaseModel]]:
    """Walk forward past finished stages; never moves backwards."""
    step = derive_step(stage, facts)
    while step is None and stage in SETTLING_STAGES:
        stage = next_stage(stage)
        step = derive_step(stage, facts)
    return stage, step


# --- Rendering ---

def render_prompt(step: BaseModel, retry: bool = False) -> Reply:
    if isinstance(step, ConfirmIdentityPrompt):
        if retry:
            return Reply(text="What would you call this item? (e.g. Air Jordan 1 Lows, vintage jacket)")
        second = (
            Choice(label="Show similar", value=SHOW_SIMILAR)
            if step.alternatives
            else Choice(label="No", value="no")
        )
        return Reply(
            text=f"Is this a {step.suggested}? (Or tell me what you'd call it.)",
            choices=[Choice(label="Yes", value="yes"), second],
        )
    if isinstance(step, BrowseAlternativesPrompt):
        candidate = step.candidates[step.index]
        return Reply(
            text=f"Is it this one? {candidate.title} ({step.index + 1}/{len(step.candidates)})",
            choices=[
                Choice(label="This is mine", value=BROWSE_THIS_IS_MINE, images=list(candidate.images)),
                Choice(label="Next", value=BROWSE_NEXT),
                Choice(label="None of these", value=BROWSE_NONE),
            ],
        )
    if isinstance(step, AskLabelPhotoPrompt):
        if retry:
            return Reply(text="Can you send a photo of the label or tag? Or tell me what you'd call this item.")
        return Reply(
            text="I couldn't identify this with much confidence. Can you send a photo of the label or tag? Or tell me what you'd call it."
        )
    if isinstance(step, ChooseVariantPrompt):
        return Reply(
            text=f"Which {step.key} ({'/'.join(step.choices)})?",
            choices=[Choice(label=c, value=c) for c in step.choices],
        )
    if isinstance(step, ChooseConditionPrompt):
        if retry:
            return Reply(
                text="What condition should I use? (" + " / ".join(step.choices) + ")",
                choices=[Choice(label=c, value=c) for c in step.choices],
            )
        return Reply(
            text=f"I'd list the condition as '{step.suggested}'. Does that sound right?",
            choices=list(YES_NO_CHOICES),
        )
    if isinstance(step, PricingPrompt):
        if step.step == "price_type":
            return Reply(text="Quick sale or best price?", choices=list(PRICE_TYPE_CHOICES))
        return Reply(text="What's your absolute floor price? (e.g. 25 or $25)")
    if isinstance(step, FinalConfirmPrompt):
        return Reply(text=step.summary, choices=list(FINAL_CONFIRM_CHOICES))
    raise ValueError(f"Unsupported prompt: {type(step).__name__}")
