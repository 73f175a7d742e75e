"""Error taxonomy for the decision engine.

Four categories, each with a different propagation rule:

* :class:`InvalidInput` - the caller passed out-of-domain numbers.  Fatal to
  that single call and never retried.  Subclasses ``ValueError`` so callers
  that already guard odds conversion with ``except ValueError`` keep working.
* :class:`InsufficientData` - not enough graded history.  This is a steady
  state for new players and props, so it is **returned**, not raised.
* :class:`CollaboratorFailure` - a fetch or store error.  Raised by the
  collaborator adapters; batch paths (refresh cycle, bulk recalculation)
  catch it per unit of work, log it and count it.
* :class:`ConfigurationError` - bad thresholds at startup.  Raised before the
  scheduler registers any job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class PropEdgeError(Exception):
    """Base class for every error raised by the engine."""


class InvalidInput(PropEdgeError, ValueError):
    """A caller-supplied value is outside its declared domain."""


class ConfigurationError(PropEdgeError, ValueError):
    """An engine configuration value is unusable."""


class CollaboratorFailure(PropEdgeError, RuntimeError):
    """A market source or prop store call failed.

    Attributes:
        source: Short collaborator name (``"odds_api"``, ``"prop_store"``).
        context: Free-form identifier of the unit of work (sport, event id,
            outcome key) for log correlation.
    """

    def __init__(self, message: str, *, source: str = "", context: str = ""):
        super().__init__(message)
        self.source = source
        self.context = context

    def __str__(self) -> str:
        base = super().__str__()
        if self.source and self.context:
            return f"[{self.source}:{self.context}] {base}"
        if self.source:
            return f"[{self.source}] {base}"
        return base


@dataclass(frozen=True)
class InsufficientData:
    """Typed result returned when a hit rate cannot be estimated.

    Attributes:
        player_name: Player the estimate was requested for.
        prop_type: Market key (``"player_points"``, ...).
        sport_key: Sport key the query was scoped to.
        sample_count: Number of graded outcomes that matched.
        required: Minimum number of graded outcomes needed.
        line_range_min: Lower bound of the line window queried, if any.
        line_range_max: Upper bound of the line window queried, if any.
    """

    player_name: str
    prop_type: str
    sport_key: str
    sample_count: int
    required: int
    line_range_min: Optional[float] = None
    line_range_max: Optional[float] = None

    @property
    def reason(self) -> str:
        return (
            f"Only {self.sample_count} graded outcome(s) for {self.player_name} "
            f"{self.prop_type} ({self.sport_key}); at least {self.required} required."
        )
