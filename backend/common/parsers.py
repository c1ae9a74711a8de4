"""Deterministic reply parsers.

Each parser owns one ordered ``(pattern, canonical)`` table and returns the
first match, or ``None`` when nothing matches. Nothing here calls a provider.
"""
import re
from typing import Iterable, Optional, Pattern, Sequence, Tuple

CONDITION_NEW_WITH_TAGS = "New with tags"
CONDITION_LIKE_NEW = "Used – Like New"
CONDITION_GOOD = "Used – Good"
CONDITION_ACCEPTABLE = "Used – Acceptable"
CONDITION_TAXONOMY = (
    CONDITION_NEW_WITH_TAGS,
    CONDITION_LIKE_NEW,
    CONDITION_GOOD,
    CONDITION_ACCEPTABLE,
)
DEFAULT_CONDITION = CONDITION_GOOD

PRICE_TYPE_QUICK_SALE = "quick_sale"
PRICE_TYPE_BEST_PRICE = "best_price"

BROWSE_THIS_IS_MINE = "this_is_mine"
BROWSE_NEXT = "next"
BROWSE_NONE = "none"

SHOW_SIMILAR = "show_similar"

# Order matters: "like new" must win over the bare "new" of "new with tags",
# and "acceptable" over "good" in "good enough, acceptable".
CONDITION_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\bnwt\b|\bnew\b.*\btags?\b"), CONDITION_NEW_WITH_TAGS),
    (re.compile(r"\blike[\s-]*new\b"), CONDITION_LIKE_NEW),
    (re.compile(r"\bacceptable\b|\bfair\b"), CONDITION_ACCEPTABLE),
    (re.compile(r"\bgood\b"), CONDITION_GOOD),
)

YES_NO_PATTERNS: Tuple[Tuple[Pattern[str], bool], ...] = (
    (re.compile(r"^(yes|y|yeah|yep|yup|sure|ok|okay|correct|sounds good|that's right|that is right|list|list it|do it)$"), True),
    (re.compile(r"^(no|n|nope|nah|not really|not yet|wait)$"), False),
)

PRICE_TYPE_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"^quick_sale$|\bquick\b|\bfast\b"), PRICE_TYPE_QUICK_SALE),
    (re.compile(r"^best_price$|\bbest\b|\bmax(imum)?\b"), PRICE_TYPE_BEST_PRICE),
)

BROWSE_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"^(this_is_mine|this is mine|mine|this one|that's it|that is it|yes|yep|yeah)$"), BROWSE_THIS_IS_MINE),
    (re.compile(r"^(next|more|show more|another|no)$"), BROWSE_NEXT),
    (re.compile(r"^(none|none of these|none of them|stop)$"), BROWSE_NONE),
)

SHOW_SIMILAR_PATTERN = re.compile(r"^(show_similar|show similar|similar|show me similar|other options)$")

FLOOR_PRICE_PATTERN = re.compile(r"\$?(\d+(?:\.\d+)?)")
DESCRIPTION_PATTERN = re.compile(r"^(?:description|desc)\s*[:\-]\s*(.+)$", re.IGNORECASE | re.DOTALL)

TRIGGER_PHRASE = "i want to sell something"


def normalize_body(body: Optional[str]) -> str:
    return (body or "").strip()


def _folded(body: Optional[str]) -> str:
    return re.sub(r"\s+", " ", normalize_body(body).lower()).strip(" .!")


def _first_match(table: Iterable[Tuple[Pattern[str], object]], text: str):
    for pattern, canonical in table:
        if pattern.search(text):
            return canonical
    return None


def is_trigger(body: Optional[str]) -> bool:
    folded = _folded(body)
    if not folded:
        return False
    return folded == TRIGGER_PHRASE or ("want" in folded and "sell" in folded)


def parse_yes_no(body: Optional[str]) -> Optional[bool]:
    folded = _folded(body)
    if not folded:
        return None
    return _first_match(YES_NO_PATTERNS, folded)


def parse_condition(body: Optional[str]) -> Optional[str]:
    folded = _folded(body)
    if not folded:
        return None
    return _first_match(CONDITION_PATTERNS, folded)


def parse_price_type(body: Optional[str]) -> Optional[str]:
    folded = _folded(body)
    if not folded:
        return None
    return _first_match(PRICE_TYPE_PATTERNS, folded)


def parse_floor_price(body: Optional[str]) -> Optional[str]:
    match = FLOOR_PRICE_PATTERN.search(normalize_body(body))
    return match.group(1) if match else None


def parse_browse_command(body: Optional[str]) -> Optional[str]:
    folded = _folded(body)
    if not folded:
        return None
    return _first_match(BROWSE_PATTERNS, folded)


def is_show_similar(body: Optional[str]) -> bool:
    return bool(SHOW_SIMILAR_PATTERN.match(_folded(body)))


def parse_description(body: Optional[str]) -> Optional[str]:
    match = DESCRIPTION_PATTERN.match(normalize_body(body))
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def parse_choice(body: Optional[str], choices: Sequence[str]) -> Optional[str]:
    """Match a reply against an offered list by exact value (case-insensitive) or 1-based index."""
    folded = _folded(body)
    if not folded or not choices:
        return None
    for choice in choices:
        if folded == _folded(choice):
            return choice
    if folded.isdigit():
        index = int(folded)
        if 1 <= index <= len(choices):
            return choices[index - 1]
    return None
