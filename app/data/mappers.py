import re
from typing import Optional

NOT_STARTED_STATES = frozenset({"NS", "TBA", "DELAYED", "PENDING"})
LIVE_STATES = frozenset(
    {
        "INPLAY_1ST_HALF",
        "HT",
        "BREAK",
        "INPLAY_2ND_HALF",
        "INPLAY_ET",
        "EXTRA_TIME_BREAK",
        "PEN_BREAK",
        "INPLAY_PENALTIES",
        "AWAITING_UPDATES",
    }
)
FINISHED_STATES = frozenset({"FT", "AET", "FT_PEN"})
CANCELED_STATES = frozenset({"CANCELLED", "POSTPONED", "ABANDONED", "WO", "AWARDED", "DELETED", "SUSPENDED"})
INTERRUPTED_STATES = frozenset({"INTERRUPTED"})
# Groups end once every fixture reaches one of these.
TERMINAL_STATES = FINISHED_STATES | CANCELED_STATES | INTERRUPTED_STATES

_STATE_ALIASES = {
    "1ST": "INPLAY_1ST_HALF",
    "1H": "INPLAY_1ST_HALF",
    "2ND": "INPLAY_2ND_HALF",
    "2H": "INPLAY_2ND_HALF",
    "ET": "INPLAY_ET",
    "PEN_LIVE": "INPLAY_PENALTIES",
    "PEN": "FT_PEN",
    "FT_PENALTIES": "FT_PEN",
    "CANC": "CANCELLED",
    "CANCELED": "CANCELLED",
    "POSTP": "POSTPONED",
    "ABAN": "ABANDONED",
    "SUSP": "SUSPENDED",
    "INT": "INTERRUPTED",
    "AWARD": "AWARDED",
    "DELA": "DELAYED",
    "NOT_STARTED": "NS",
}

_SCORE_RE = re.compile(r"^(\d+)\s*[-:]\s*(\d+)$")


def normalize_state(code: Optional[str]) -> str:
    """Canonical fixture state from a provider state code; unknown codes read as not started."""
    raw = (code or "").strip().upper().replace(" ", "_")
    if not raw:
        return "NS"
    raw = _STATE_ALIASES.get(raw, raw)
    if raw in NOT_STARTED_STATES or raw in LIVE_STATES or raw in TERMINAL_STATES:
        return raw
    return "NS"


def state_category(state: Optional[str]) -> str:
    s = normalize_state(state)
    if s in FINISHED_STATES:
        return "finished"
    if s in LIVE_STATES:
        return "live"
    if s in CANCELED_STATES:
        return "canceled"
    if s in INTERRUPTED_STATES:
        return "interrupted"
    return "not_started"


def is_finished(state: Optional[str]) -> bool:
    return (state or "").upper() in FINISHED_STATES


_ALLOWED_TRANSITIONS = {
    "not_started": {"not_started", "live", "finished", "canceled", "interrupted"},
    "live": {"live", "finished", "canceled", "interrupted"},
    "interrupted": {"interrupted"},
    "finished": {"finished"},
    "canceled": {"canceled"},
}


def is_valid_transition(current: Optional[str], new: Optional[str]) -> bool:
    if current is None:
        return True
    return state_category(new) in _ALLOWED_TRANSITIONS[state_category(current)]


def normalize_result(result: Optional[str]) -> Optional[str]:
    """Canonical "home-away" score text, e.g. "2:1" -> "2-1"; non-scores read as None."""
    parsed = parse_scores(result)
    if parsed is None:
        return None
    return f"{parsed[0]}-{parsed[1]}"


def parse_scores(result: Optional[str]) -> Optional[tuple[int, int]]:
    if not result:
        return None
    m = _SCORE_RE.match(result.strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))
