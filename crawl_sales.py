import enum
import time
from dataclasses import dataclass
from typing import Callable, Iterable

import requests

from itch_config import ClaimConfig
from itch_errors import ItchClaimError, TransientNetworkError
from itch_games import Resolver, game_from_cell
from itch_scrape import find_game_cells, log_line
from record_store import RecordStore
from sale_resolver import SaleResult, SaleStatus, resolve_sale


class StopReason(enum.Enum):
    END_OF_LIST = "end_of_list"
    TOO_MANY_MISSES = "too_many_misses"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass
class CrawlResult:
    stop_reason: StopReason
    start: int
    last_sale_id: int
    cursor: int
    games_added: int = 0
    sales_found: int = 0
    not_found: int = 0
    parse_errors: int = 0
    transient_errors: int = 0


def resolve_with_retries(
    session: requests.Session,
    sale_id: int,
    config: ClaimConfig,
    resolve: Resolver,
    sleep: Callable[[float], None],
) -> SaleResult:
    attempt = 0
    while True:
        sleep(config.request_delay)
        result = resolve(session, sale_id, config)
        if result.status is not SaleStatus.TRANSIENT_ERROR or attempt >= config.max_retries:
            return result
        attempt += 1
        log_line(
            f"Sale page #{sale_id}: {result.error}. Retrying ({attempt}/{config.max_retries})",
            config,
            error=True,
        )
        sleep(config.request_delay * (2 ** attempt))


def store_sale_games(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    result: SaleResult,
    force: bool = False,
    resolve: Resolver = resolve_sale,
) -> int:
    """Merge every free game listed on a resolved sale page into the store.

    Returns the number of game records written. Listing stops at the first game
    that is not discounted to zero. With ``force`` the sale list of each game is
    re-sorted by id after the merge.
    """
    sale = result.sale
    sale_id = result.sale_id
    cells = find_game_cells(result.html or "")
    if not cells:
        log_line(f"Sale page #{sale_id}: empty page", config)
        return 0

    games_num = 0
    for div in cells:
        try:
            game = game_from_cell(session, config, div, price_needed=True, resolve=resolve)
        except (ValueError, KeyError) as exc:
            log_line(f"Sale page #{sale_id}: could not parse game cell: {exc}", config, error=True)
            continue
        except ItchClaimError as exc:
            if isinstance(exc, TransientNetworkError) and not config.no_fail:
                raise
            log_line(f"Sale page #{sale_id}: could not load game details: {exc}", config, error=True)
            continue

        if game.price not in (None, 0):
            log_line(f"Sale page #{sale_id}: games are not discounted by 100%", config)
            break

        stored = store.load(game.id, refresh_claimable=True)
        if stored is not None:
            game.sales = stored.sales
            if game.cover_image is None:
                game.cover_image = stored.cover_image
        game.reset_claimable()

        replaced = game.merge_sale(sale)
        if replaced:
            log_line(f"Sale page #{sale_id}: updated values for game {game.name} ({game.id})", config)
        elif force:
            game.sort_sales()

        store.save(game)
        games_num += 1

    if games_num:
        inactive = "" if sale.is_active() else " (inactive)"
        log_line(f"Sale page #{sale_id}: added {games_num} games{inactive}", config)
    return games_num


def crawl_sales(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    resolve: Resolver = resolve_sale,
    sleep: Callable[[float], None] = time.sleep,
) -> CrawlResult:
    start = store.load_cursor()
    log_line(f"Resuming sale downloads from {start}", config)

    sale_id = start - 1
    misses = 0
    steps = 0
    result = CrawlResult(StopReason.BUDGET_EXHAUSTED, start=start, last_sale_id=sale_id, cursor=start)

    def persist(last_done: int) -> None:
        result.cursor = last_done - misses
        store.save_cursor(result.cursor)

    while True:
        if config.max_pages is not None and steps >= config.max_pages:
            result.stop_reason = StopReason.BUDGET_EXHAUSTED
            log_line(
                f"Execution stopped because the maximum number of {config.max_pages} pages was reached",
                config,
            )
            break

        sale_id += 1
        steps += 1
        result.last_sale_id = sale_id
        outcome = resolve_with_retries(session, sale_id, config, resolve, sleep)

        if outcome.status is SaleStatus.END_OF_LIST:
            persist(sale_id - 1)
            result.stop_reason = StopReason.END_OF_LIST
            log_line(
                f"Sale page #{sale_id} returned 404 without URL redirection. "
                "Reached the end of the sales list.",
                config,
            )
            break

        if outcome.status is SaleStatus.NOT_FOUND_MORE_MAY_EXIST:
            misses += 1
            result.not_found += 1
            if misses > config.max_not_found_pages:
                persist(sale_id)
                result.stop_reason = StopReason.TOO_MANY_MISSES
                log_line("No more sales available at the moment.", config)
                break
            log_line(
                f"Sale page #{sale_id}: 404 Not Found ({misses}/{config.max_not_found_pages})",
                config,
            )
            persist(sale_id)
            continue

        if outcome.status is SaleStatus.TRANSIENT_ERROR:
            result.transient_errors += 1
            log_line(
                f"A connection error has occurred while parsing sale page {sale_id}. "
                f"Reason: {outcome.error}",
                config,
                error=True,
            )
            persist(sale_id - 1)
            if not config.no_fail:
                log_line("Aborting current sale refresh.", config, error=True)
                raise TransientNetworkError(f"Sale page {sale_id}: {outcome.error}", outcome.cause)
            continue

        if outcome.status is SaleStatus.PARSE_ERROR:
            misses = 0
            result.parse_errors += 1
            log_line(f"Sale page #{sale_id}: {outcome.error}", config, error=True)
            persist(sale_id)
            continue

        try:
            games_added = store_sale_games(session, store, config, outcome, resolve=resolve)
        except TransientNetworkError:
            persist(sale_id - 1)
            log_line("Aborting current sale refresh.", config, error=True)
            raise
        misses = 0
        result.sales_found += 1
        result.games_added += games_added
        persist(sale_id)

    if result.games_added == 0:
        log_line("No new free games found", config)
    else:
        log_line(f"Execution finished. Added a total of {result.games_added} games", config)
    return result


def refresh_sales(
    session: requests.Session,
    store: RecordStore,
    config: ClaimConfig,
    sale_ids: Iterable[int],
    resolve: Resolver = resolve_sale,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    games_num = 0
    for sale_id in sale_ids:
        outcome = resolve_with_retries(session, sale_id, config, resolve, sleep)
        if outcome.status is not SaleStatus.FOUND:
            log_line(f"Sale page #{sale_id}: {outcome.status.value} {outcome.error or ''}".rstrip(), config)
            if outcome.status is SaleStatus.TRANSIENT_ERROR and not config.no_fail:
                raise TransientNetworkError(f"Sale page {sale_id}: {outcome.error}", outcome.cause)
            continue
        games_num += store_sale_games(session, store, config, outcome, force=True, resolve=resolve)
    return games_num
