"""
The Odds API player-prop source.
https://the-odds-api.com/

Two calls per sport:

  GET /sports/{sport}/events              -> event ids on the board
  GET /sports/{sport}/events/{id}/odds    -> player-prop markets per bookmaker

Each Over/Under pair is captured once, from its Over side, as a RawOutcome.
DFS bookmakers (regions=us_dfs) are keyed "us_dfs.<book>" so they line up
with the payout table in odds_math.

Every HTTP or decoding failure is raised as CollaboratorFailure; the refresh
scheduler isolates it per sport.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import requests

from propedge.core.engine_config import DEFAULT_FETCH_TIMEOUT_SECONDS
from propedge.core.errors import CollaboratorFailure
from propedge.core.store_interface import MarketDataSource, RawOutcome

logger = logging.getLogger(__name__)

API_KEY = os.getenv("THE_ODDS_API_KEY")
BASE_URL = "https://api.the-odds-api.com/v4"

DFS_BOOKMAKERS: frozenset = frozenset({"prizepicks", "underdog", "pick6"})

# Core player-prop markets requested per sport
SPORT_MARKETS: Dict[str, List[str]] = {
    "basketball_nba": [
        "player_points",
        "player_rebounds",
        "player_assists",
        "player_threes",
        "player_blocks",
        "player_steals",
        "player_turnovers",
        "player_points_rebounds_assists",
        "player_points_rebounds",
        "player_points_assists",
        "player_rebounds_assists",
    ],
    "americanfootball_nfl": [
        "player_pass_yds",
        "player_pass_tds",
        "player_pass_completions",
        "player_pass_attempts",
        "player_pass_interceptions",
        "player_rush_yds",
        "player_rush_attempts",
        "player_receptions",
        "player_reception_yds",
        "player_rush_reception_yds",
    ],
    "baseball_mlb": [
        "batter_hits",
        "batter_total_bases",
        "batter_home_runs",
        "player_runs",
        "player_rbis",
        "player_strikeouts",
    ],
    "icehockey_nhl": [
        "player_goals",
        "player_assists",
        "player_shots_on_goal",
        "player_saves",
    ],
}
SPORT_MARKETS["basketball_wnba"] = SPORT_MARKETS["basketball_nba"]
SPORT_MARKETS["basketball_ncaab"] = SPORT_MARKETS["basketball_nba"]
SPORT_MARKETS["americanfootball_ncaaf"] = SPORT_MARKETS["americanfootball_nfl"]


def markets_for(sport_key: str) -> List[str]:
    """Player-prop markets for a sport; basketball markets when unknown."""
    return list(SPORT_MARKETS.get(sport_key, SPORT_MARKETS["basketball_nba"]))


def platform_key(bookmaker_key: str) -> str:
    if bookmaker_key in DFS_BOOKMAKERS:
        return f"us_dfs.{bookmaker_key}"
    return bookmaker_key


def parse_commence_time(raw: Optional[str]) -> Optional[datetime]:
    """ISO-8601 'Z' timestamp -> naive UTC datetime."""
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable commence_time %r", raw)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_event_props(event_data: Dict) -> List[RawOutcome]:
    """
    Flatten one /events/{id}/odds payload into RawOutcome records.

    Payload shape:
        {"id": "...", "commence_time": "2025-01-05T00:10:00Z",
         "bookmakers": [{"key": "prizepicks", "markets": [
             {"key": "player_points", "outcomes": [
                 {"name": "Over", "description": "Jalen Brunson",
                  "price": -137, "point": 26.5}, ...]}]}]}

    Under sides and outcomes missing a player or a line are dropped.
    """
    event_id = event_data.get("id") or ""
    commence = parse_commence_time(event_data.get("commence_time"))
    props: List[RawOutcome] = []

    for book in event_data.get("bookmakers") or []:
        book_key = book.get("key")
        if not book_key:
            continue
        for market in book.get("markets") or []:
            market_key = market.get("key")
            if not market_key:
                continue
            for outcome in market.get("outcomes") or []:
                if str(outcome.get("name", "")).lower() == "under":
                    continue
                player = outcome.get("description")
                point = outcome.get("point")
                if not player or point is None:
                    continue
                try:
                    line = float(point)
                except (TypeError, ValueError):
                    continue
                price = outcome.get("price")
                props.append(RawOutcome(
                    event_id=event_id,
                    player_name=player.strip(),
                    prop_type=market_key,
                    line=line,
                    platform_key=platform_key(book_key),
                    odds=float(price) if price is not None else None,
                    commence_time=commence,
                ))

    return props


class OddsAPIPropSource(MarketDataSource):
    """MarketDataSource backed by The Odds API event-odds endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        regions: str = os.getenv("ODDS_API_REGIONS", "us_dfs"),
        markets: Optional[Dict[str, Sequence[str]]] = None,
    ):
        self.api_key = api_key or API_KEY
        if not self.api_key:
            raise ValueError("THE_ODDS_API_KEY not set in environment")
        self.timeout = timeout
        self.regions = regions
        self.markets = markets
        self.requests_remaining: Optional[str] = None

    def _get(self, path: str, params: Dict, context: str):
        url = f"{BASE_URL}{path}"
        params = {"apiKey": self.api_key, **params}
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise CollaboratorFailure(str(e), source="odds_api", context=context) from e
        except ValueError as e:
            raise CollaboratorFailure(
                f"invalid JSON: {e}", source="odds_api", context=context
            ) from e

        remaining = response.headers.get("x-requests-remaining")
        if remaining is not None:
            self.requests_remaining = remaining
        logger.debug("Odds API %s ok. Remaining: %s", path, remaining)
        return data

    def list_events(self, sport_key: str) -> List[str]:
        data = self._get(f"/sports/{sport_key}/events", {}, context=sport_key)
        if not isinstance(data, list):
            raise CollaboratorFailure(
                "unexpected events payload", source="odds_api", context=sport_key
            )
        event_ids = [event["id"] for event in data if event.get("id")]
        logger.info("Odds API: %d %s events listed", len(event_ids), sport_key)
        return event_ids

    def fetch_market_props(self, sport_key: str, match_id: str) -> List[RawOutcome]:
        if self.markets is not None and sport_key in self.markets:
            markets = list(self.markets[sport_key])
        else:
            markets = markets_for(sport_key)
        data = self._get(
            f"/sports/{sport_key}/events/{match_id}/odds",
            {
                "regions": self.regions,
                "markets": ",".join(markets),
                "oddsFormat": "american",
            },
            context=f"{sport_key}/{match_id}",
        )
        if not isinstance(data, dict):
            raise CollaboratorFailure(
                "unexpected event odds payload", source="odds_api",
                context=f"{sport_key}/{match_id}",
            )
        props = parse_event_props(data)
        logger.info(
            "Odds API: %d props for %s event %s. Remaining: %s",
            len(props), sport_key, match_id, self.requests_remaining,
        )
        return props
