from . import (  # noqa: F401
    reference_data,
    upcoming_fixtures,
    live_fixtures,
    finished_fixtures,
    recovery_overdue_fixtures,
    prematch_odds,
    settle_predictions,
)

__all__ = [
    "reference_data",
    "upcoming_fixtures",
    "live_fixtures",
    "finished_fixtures",
    "recovery_overdue_fixtures",
    "prematch_odds",
    "settle_predictions",
]
