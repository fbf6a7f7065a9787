import os
from typing import List, Optional

import requests

from itch_config import ClaimConfig
from itch_games import refresh_claimable
from itch_models import Game, now_ts
from itch_scrape import log_line
from record_store import RecordStore, write_json_atomic


def sort_key(game: Game):
    last_sale_id = game.sales[-1].id if game.sales else -1
    return (game.sales == [], -last_sale_id, game.name or "")


def refresh_active_claimability(
    session: requests.Session, store: RecordStore, config: ClaimConfig, games: List[Game], now: Optional[int] = None
) -> int:
    refreshed = 0
    for game in games:
        if game.active_sale(now) is None:
            continue
        if game.claimable is not None and not game.claimable_stale:
            continue
        refresh_claimable(session, config, game)
        store.save(game)
        refreshed += 1
    return refreshed


def generate_web(
    session: requests.Session, config: ClaimConfig, now: Optional[int] = None
) -> None:
    """Publish the active, upcoming and full game feeds under ``<web_dir>/api``."""
    now = now_ts() if now is None else now
    store = RecordStore(config.games_dir)
    games = store.load_all()
    log_line(f"Loaded {len(games)} games from {config.games_dir}", config)

    refreshed = refresh_active_claimability(session, store, config, games, now)
    if refreshed:
        log_line(f"Refreshed claimability of {refreshed} active games", config)

    games.sort(key=sort_key)
    active = [game for game in games if game.active_sale(now) is not None]
    upcoming = [game for game in games if game.last_upcoming_sale(now) is not None]

    api_dir = os.path.join(config.web_dir, "api")
    write_json_atomic(os.path.join(api_dir, "active.json"), [game.serialize_min() for game in active])
    write_json_atomic(os.path.join(api_dir, "upcoming.json"), [game.serialize_min() for game in upcoming])
    write_json_atomic(os.path.join(api_dir, "all.json"), [game.serialize() for game in games])
    log_line(
        f"Generated web feeds: {len(active)} active, {len(upcoming)} upcoming, {len(games)} total",
        config,
    )
