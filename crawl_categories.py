import time
from typing import Callable, Dict, List, Optional

import requests
from bs4.element import Tag

from itch_config import ClaimConfig
from itch_errors import ItchClaimError, ParseError, RateLimited, TransientNetworkError
from itch_games import Resolver, fetch_game_api, parse_game_cell
from itch_scrape import BASE_URL, fetch_response, find_game_cells, log_line
from record_store import RecordStore
from sale_resolver import resolve_sale


def category_page_url(category: str) -> str:
    return f"{BASE_URL}/{category}/newest/on-sale"


def fetch_category_page(
    session: requests.Session, config: ClaimConfig, category: str, page: int
) -> Optional[Dict[str, object]]:
    response = fetch_response(
        session,
        category_page_url(category),
        config.timeout,
        params={"page": page, "format": "json"},
    )
    if response.status_code == 404:
        return None
    if response.status_code != 200:
        raise ParseError(f"{category} sale page {page} returned {response.status_code}")
    try:
        data = response.json()
    except ValueError as exc:
        raise ParseError(f"{category} sale page {page} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ParseError(f"{category} sale page {page} has an unexpected payload")
    return data


def fetch_category_page_with_retries(
    session: requests.Session,
    config: ClaimConfig,
    category: str,
    page: int,
    sleep: Callable[[float], None],
) -> Optional[Dict[str, object]]:
    attempt = 0
    while True:
        sleep(config.request_delay)
        try:
            return fetch_category_page(session, config, category, page)
        except (TransientNetworkError, RateLimited) as exc:
            if attempt >= config.max_retries:
                raise TransientNetworkError(
                    f"{category} sale page {page}: {exc}", getattr(exc, "cause", None) or exc
                ) from exc
            attempt += 1
            log_line(
                f"{category} sale page {page}: {exc}. Retrying ({attempt}/{config.max_retries})",
                config,
                error=True,
            )
            sleep(config.request_delay * (2 ** attempt))


def process_category_page(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    category: str,
    cells: List[Tag],
    resolve: Resolver = resolve_sale,
) -> int:
    games_added = 0
    for div in cells:
        try:
            game = parse_game_cell(div)
        except (ValueError, KeyError) as exc:
            log_line(f"Could not parse {category} game cell: {exc}", config, error=True)
            continue

        if game.price not in (None, 0):
            continue

        try:
            stored = store.load(game.id)
            if stored is None:
                api_game = fetch_game_api(session, config, game.url, resolve=resolve)
                if api_game is not None:
                    store.save(api_game)
                    log_line(f"Saved new {category} {game.name} ({game.url})", config)
                    games_added += 1
                continue

            if stored.active_sale() is not None:
                log_line(
                    f"Skipping {category} {game.name} ({game.url}): already active sale found on disk",
                    config,
                )
                continue

            api_game = fetch_game_api(session, config, game.url, resolve=resolve)
            active_sale = api_game.active_sale() if api_game is not None else None
            if active_sale is not None:
                stored.merge_sale(active_sale)
                stored.sort_sales()
                store.save(stored)
                log_line(f"Updated values for {category} {game.name} ({game.url})", config)
                games_added += 1
        except (ItchClaimError, ValueError, KeyError, TypeError) as exc:
            if isinstance(exc, TransientNetworkError) and not config.no_fail:
                raise
            log_line(f"Failed to update {category} {game.name} ({game.url}): {exc}", config, error=True)
    return games_added


def crawl_category(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    category: str,
    resolve: Resolver = resolve_sale,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Walk one category's on-sale listing from page 1 until it reports no items.

    A page whose games are all filtered out (not free) does not end the walk;
    only ``num_items == 0`` or a 404 does.
    """
    page = 0
    games_num = 0
    while True:
        page += 1
        log_line(f"Processing {category} sale page #{page}", config)
        try:
            data = fetch_category_page_with_retries(session, config, category, page, sleep)
        except TransientNetworkError as exc:
            log_line(
                f"A connection error has occurred while parsing {category} sale page {page}. "
                f"Reason: {exc}",
                config,
                error=True,
            )
            if not config.no_fail:
                log_line("Aborting current sale refresh.", config, error=True)
                raise
            break
        except ParseError as exc:
            log_line(f"Abandoning {category} list: {exc}", config, error=True)
            break

        if data is None:
            log_line("Page returned 404.", config)
            break

        cells = find_game_cells(str(data.get("content") or ""))
        games_num += process_category_page(session, store, config, category, cells, resolve=resolve)

        if not cells and int(data.get("num_items") or 0) == 0:
            break

    log_line(
        f"Collecting sales from category {category} finished. Added a total of {games_num} {category}",
        config,
    )
    return games_num


def crawl_all_categories(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    resolve: Resolver = resolve_sale,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for category in config.categories:
        log_line(f"Collecting sales from {category} list", config)
        counts[category] = crawl_category(session, store, config, category, resolve=resolve, sleep=sleep)
    return counts
