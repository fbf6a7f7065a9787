import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

import requests
from bs4 import BeautifulSoup

from itch_config import ClaimConfig
from itch_errors import AuthenticationError, ParseError, RateLimited, TransientNetworkError
from itch_games import MOVED_ERRORS, check_redirect_url
from itch_models import ClaimOutcome, ClaimResult, Game
from itch_scrape import HOME_URL, fetch_response, log_line
from itch_session import OWNERSHIP_MARKER, ItchUser

CLAIM_MARKER = "claim_to_download_box"

T = TypeVar("T")


def with_rate_limit(
    call: Callable[[], T],
    config: ClaimConfig,
    sleep: Callable[[float], None],
) -> T:
    retries = 0
    while True:
        try:
            return call()
        except RateLimited:
            if retries >= config.max_retries:
                raise
            retries += 1
            wait = 2 ** retries
            log_line(f"Rate limited. Waiting {wait} seconds before retry #{retries}...", config)
            sleep(wait)


def find_claim_form_action(html: str) -> Optional[str]:
    soup = BeautifulSoup(html, "html.parser")
    box = soup.select_one("div.claim_to_download_box")
    if box is None:
        return None
    form = box.find("form")
    if form is None or not form.get("action"):
        return None
    return form["action"]


def claim_game(
    user: ItchUser,
    game: Game,
    config: ClaimConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> ClaimResult:
    """Claim one game and settle the outcome.

    The landing page after submitting the claim form is not a reliable signal:
    itch.io sometimes redirects successful claims to the home page. Both branches
    therefore confirm through the game page's ownership marker, and a claim that
    cannot be confirmed is reported as INDETERMINATE rather than CLAIMED.
    """
    if not game.url:
        return ClaimResult(ClaimOutcome.INDETERMINATE, "Game has no URL")

    csrf_token = user.csrf_token()
    if not csrf_token:
        raise AuthenticationError("No CSRF token found in cookies")

    url = game.url.rstrip("/")
    try:
        data = {}
        for attempt in range(2):
            response = with_rate_limit(
                lambda: user.request(f"{url}/download_url", method="POST", json={"csrf_token": csrf_token}),
                config,
                sleep,
            )
            try:
                data = response.json()
            except ValueError:
                return ClaimResult(ClaimOutcome.INDETERMINATE, "download_url answered with invalid JSON")

            errors = data.get("errors") if isinstance(data, dict) else None
            if not errors:
                break
            if attempt == 0 and errors[0] in MOVED_ERRORS:
                moved_url = check_redirect_url(user.session, config, url)
                if moved_url:
                    log_line(f"WARN: URL of game {game.name} has changed to {moved_url}", config)
                    url = moved_url
                    game.url = moved_url
                    continue
            return ClaimResult(ClaimOutcome.NOT_CLAIMABLE, f"Error: {errors[0]}")

        download_url = data.get("url") if isinstance(data, dict) else None
        if not download_url:
            return ClaimResult(ClaimOutcome.NOT_CLAIMABLE, "No download URL found")

        response = with_rate_limit(lambda: user.request(download_url), config, sleep)
        html = response.text
        if CLAIM_MARKER not in html:
            if OWNERSHIP_MARKER in html:
                user.owned_games.add(game.id)
                return ClaimResult(ClaimOutcome.ALREADY_OWNED, "Game already owned")
            return ClaimResult(ClaimOutcome.NOT_CLAIMABLE, "Game is not claimable")

        claim_url = find_claim_form_action(html)
        if not claim_url:
            return ClaimResult(ClaimOutcome.NOT_CLAIMABLE, "Could not find claim form in claim box")

        log_line(f"Claiming game via {claim_url}", config)
        response = with_rate_limit(
            lambda: user.request(claim_url, method="POST", data={"csrf_token": csrf_token}),
            config,
            sleep,
        )
        landed_home = response.url.rstrip("/") == HOME_URL.rstrip("/")
        owned = with_rate_limit(lambda: user.owns_game_online(game), config, sleep)
    except RateLimited:
        return ClaimResult(ClaimOutcome.INDETERMINATE, "Too many rate limits, skipping for now")
    except TransientNetworkError as exc:
        return ClaimResult(ClaimOutcome.INDETERMINATE, f"Network error: {exc}")

    if landed_home and not owned:
        return ClaimResult(ClaimOutcome.NOT_CLAIMABLE, "Claim failed - redirected to homepage")
    if not owned:
        log_line(
            f"WARN: Game {game.name} claimed but ownership verification failed - please check manually",
            config,
            error=True,
        )
        return ClaimResult(ClaimOutcome.INDETERMINATE, "Ownership verification failed")

    user.owned_games.add(game.id)
    user.save_session()
    if landed_home:
        return ClaimResult(ClaimOutcome.CLAIMED, "Game claimed (verified online after redirect to homepage)")
    return ClaimResult(ClaimOutcome.CLAIMED, "Game claimed successfully (ownership verified)")


def download_from_remote_cache(
    session: requests.Session, config: ClaimConfig, url: str
) -> List[Game]:
    response = fetch_response(session, url, config.timeout)
    if response.status_code != 200:
        raise TransientNetworkError(f"Free games list {url} returned {response.status_code}")
    try:
        raw_games = response.json()
    except ValueError as exc:
        raise ParseError(f"Free games list {url} is not valid JSON") from exc
    if not isinstance(raw_games, list):
        raise ParseError(f"Free games list {url} is not a list")

    games = []
    for raw in raw_games:
        try:
            game_id = int(raw["id"])
        except (KeyError, TypeError, ValueError):
            log_line(f"Skipping free games list entry without a valid id: {raw!r}", config, error=True)
            continue
        if not raw.get("url"):
            log_line(f"Skipping free games list entry {game_id} without a URL", config, error=True)
            continue
        game = Game(
            id=game_id,
            name=raw.get("name"),
            url=raw.get("url"),
            claimable=raw.get("claimable"),
        )
        game.claimable_stale = False
        games.append(game)
    return games


@dataclass
class ClaimSummary:
    total_games: int = 0
    claimed: int = 0
    already_owned: int = 0
    not_claimable: int = 0
    indeterminate: int = 0
    claimed_games: List[Game] = field(default_factory=list)

    def record(self, game: Game, result: ClaimResult) -> None:
        if result.outcome is ClaimOutcome.CLAIMED:
            self.claimed += 1
            self.claimed_games.append(game)
        elif result.outcome is ClaimOutcome.ALREADY_OWNED:
            self.already_owned += 1
        elif result.outcome is ClaimOutcome.NOT_CLAIMABLE:
            self.not_claimable += 1
        else:
            self.indeterminate += 1


def run_claim(
    user: ItchUser,
    config: ClaimConfig,
    url: str,
    sleep: Callable[[float], None] = time.sleep,
) -> ClaimSummary:
    if not user.owned_games:
        log_line("User's library not found in cache. Downloading it now", config)
        user.reload_owned_games()
        user.save_session()

    log_line(f"Downloading free games list from {url}", config)
    games = download_from_remote_cache(user.session, config, url)
    log_line(f"Found {len(games)} games in list", config)

    summary = ClaimSummary(total_games=len(games))
    for index, game in enumerate(games):
        if index > 0:
            sleep(config.claim_delay)
        log_line(f"Processing game: {game.name} ({game.url})", config)

        if user.owns_game(game.id):
            result = ClaimResult(ClaimOutcome.ALREADY_OWNED, "Game already owned")
        elif game.claimable is False:
            result = ClaimResult(ClaimOutcome.NOT_CLAIMABLE, "Game is not claimable")
        elif game.claimable is None:
            result = ClaimResult(ClaimOutcome.INDETERMINATE, "Claimability unknown, skipping")
        else:
            result = claim_game(user, game, config, sleep=sleep)

        log_line(result.reason, config, error=result.outcome is ClaimOutcome.INDETERMINATE)
        summary.record(game, result)

    log_line("Summary:", config)
    log_line(f"- Games found: {summary.total_games}", config)
    log_line(f"- Games claimed: {summary.claimed}", config)
    log_line(f"- Games already owned: {summary.already_owned}", config)
    log_line(f"- Games not claimable: {summary.not_claimable}", config)
    log_line(f"- Games skipped or unresolved: {summary.indeterminate}", config)
    if summary.claimed == 0:
        log_line("No new games can be claimed.", config)
    return summary
