from dataclasses import dataclass
from enum import Enum

MIN_DELAY = 10.0
MAX_DELAY = 1800.0


class Regime(Enum):
    PORTAL_DETECTED = "portal_detected"
    LOGGED_IN = "logged_in"
    NO_PORTAL = "no_portal"


class Outcome(Enum):
    PORTAL_DETECTED = "portal_detected"
    LOGIN_SUCCEEDED = "login_succeeded"
    NO_PORTAL_OBSERVED = "no_portal_observed"


@dataclass(frozen=True)
class BackoffState:
    regime: Regime = Regime.NO_PORTAL
    interval: float = MIN_DELAY


def clamp(value: float, min_delay: float = MIN_DELAY, max_delay: float = MAX_DELAY) -> float:
    return max(min_delay, min(max_delay, value))


def next_state(
    state: BackoffState,
    outcome: Outcome,
    min_delay: float = MIN_DELAY,
    max_delay: float = MAX_DELAY,
) -> BackoffState:
    if outcome is Outcome.PORTAL_DETECTED:
        return BackoffState(Regime.PORTAL_DETECTED, clamp(min_delay, min_delay, max_delay))
    if outcome is Outcome.LOGIN_SUCCEEDED:
        return BackoffState(Regime.LOGGED_IN, clamp(max_delay, min_delay, max_delay))
    if outcome is Outcome.NO_PORTAL_OBSERVED:
        return BackoffState(
            Regime.NO_PORTAL, clamp(state.interval / 2, min_delay, max_delay)
        )
    raise ValueError(f"unknown outcome: {outcome!r}")
