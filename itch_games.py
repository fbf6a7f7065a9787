from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from itch_config import ClaimConfig
from itch_errors import ItchClaimError, ParseError, RateLimited, TransientNetworkError
from itch_models import Game
from itch_scrape import fetch_response, log_line, normalize_text, parse_api_price, parse_price
from sale_resolver import SaleResult, SaleStatus, resolve_sale

MOVED_ERRORS = ("invalid game", "invalid user")

Resolver = Callable[[requests.Session, int, ClaimConfig], SaleResult]


def parse_game_cell(div: Tag) -> Game:
    game_id = int(div["data-game_id"])
    anchor = div.select_one("a.title.game_link")
    if anchor is None or not anchor.get("href"):
        raise ValueError(f"Could not find title link for game {game_id}")

    game = Game(id=game_id, name=normalize_text(anchor.get_text()), url=anchor["href"])

    img = div.select_one("div.game_thumb img")
    if img is not None:
        game.cover_image = img.get("data-lazy_src") or img.get("src")

    price_el = div.select_one("div.price_value")
    if price_el is not None:
        game.price = parse_price(price_el.get_text())
    return game


def game_from_cell(
    session: requests.Session,
    config: ClaimConfig,
    div: Tag,
    price_needed: bool = False,
    resolve: Resolver = resolve_sale,
) -> Game:
    game = parse_game_cell(div)
    if game.price is None and price_needed and game.url:
        # always-free games list no price but can still carry a claimable 100% sale
        api_game = fetch_game_api(session, config, game.url, resolve=resolve)
        if api_game is not None and api_game.sales:
            game.price = api_game.price
    return game


def check_redirect_url(session: requests.Session, config: ClaimConfig, url: str) -> Optional[str]:
    try:
        response = fetch_response(session, url, config.timeout, method="HEAD", allow_redirects=True)
    except ItchClaimError:
        return None
    final_url = (response.url or "").rstrip("/")
    if not final_url or final_url == url.rstrip("/"):
        return None
    return final_url


def fetch_game_api(
    session: requests.Session,
    config: ClaimConfig,
    url: str,
    resolve: Resolver = resolve_sale,
) -> Optional[Game]:
    """Load a game through its public ``data.json`` endpoint.

    A moved game answers with ``invalid game``/``invalid user``; the new URL is
    discovered once through redirects and the lookup retried. A 100% sale
    reported by the endpoint is resolved to get its window; a sale that fails
    to resolve is left out rather than stored without timestamps.
    """
    url = url.rstrip("/")
    data = None
    final_url = url
    for attempt in range(2):
        response = fetch_response(session, f"{url}/data.json", config.timeout)
        try:
            data = response.json()
        except ValueError:
            log_line(f"Failed to get game {url} from API: invalid JSON", config, error=True)
            return None

        errors = data.get("errors") if isinstance(data, dict) else None
        if not errors:
            if response.history:
                final_url = response.url.replace("/data.json", "")
            else:
                final_url = url
            break

        if attempt == 0 and errors[0] in MOVED_ERRORS:
            moved_url = check_redirect_url(session, config, url)
            if moved_url:
                log_line(f"WARN: URL of game {url} has changed to {moved_url}", config)
                url = moved_url
                continue
        log_line(f"Failed to get game {url} from API: {errors[0]}", config, error=True)
        return None

    if not isinstance(data, dict) or "id" not in data:
        raise ParseError(f"Game {url} API answer has no id")
    try:
        game_id = int(data["id"])
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Game {url} API answered with id {data['id']!r}") from exc

    game = Game(
        id=game_id,
        name=data.get("title"),
        url=final_url,
        price=parse_api_price(data.get("price")),
        cover_image=data.get("cover_image"),
    )

    sale_data = data.get("sale")
    if isinstance(sale_data, dict) and sale_data.get("rate") == 100 and sale_data.get("id"):
        result = resolve(session, int(sale_data["id"]), config)
        if result.status is SaleStatus.FOUND and result.sale is not None:
            game.merge_sale(result.sale)
        else:
            log_line(
                f"Sale {sale_data['id']} of game {game.name} could not be resolved: "
                f"{result.status.value} {result.error or ''}".rstrip(),
                config,
                error=True,
            )
    return game


def refresh_claimable(session: requests.Session, config: ClaimConfig, game: Game) -> Optional[bool]:
    game.claimable_stale = False
    if game.active_sale() is None or not game.url:
        game.claimable = None
        return None

    try:
        response = fetch_response(session, game.url, config.timeout)
    except (TransientNetworkError, RateLimited) as exc:
        log_line(f"Error checking if game {game.name} is claimable: {exc}", config, error=True)
        game.claimable = None
        return None

    soup = BeautifulSoup(response.text, "html.parser")
    buy_row = soup.select_one("div.buy_row")
    if buy_row is None:
        # WebGL / HTML5 only pages have nothing to download
        game.claimable = False
        return False

    buy_button = buy_row.select_one("a.buy_btn")
    if buy_button is None:
        game.claimable = False
        return False

    text = buy_button.get_text()
    if "Buy Now" in text:
        game.claimable = None
        return None

    game.claimable = "Download or claim" in text
    return game.claimable
