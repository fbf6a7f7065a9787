import os

import pytest

from claim_games import claim_game, download_from_remote_cache, run_claim
from conftest import FakeResponse, FakeSession
from itch_errors import AuthenticationError
from itch_models import ClaimOutcome, Game
from itch_scrape import HOME_URL
from itch_session import ItchUser

GAME_URL = "https://dev.itch.io/free-game"
DOWNLOAD_PAGE = "https://dev.itch.io/free-game/download/abc"
CLAIM_ACTION = "https://dev.itch.io/free-game/download_url/claim"

CLAIM_PAGE = (
    '<div class="claim_to_download_box">'
    f'<form method="post" action="{CLAIM_ACTION}"><button>Claim</button></form>'
    "</div>"
)
OWNED_PAGE = '<div class="ownership_reason">You own this</div>'


def _user(config, routes):
    session = FakeSession(routes)
    session.cookies.set("itchio_token", "tok%3D", domain=".itch.io", path="/")
    return ItchUser("tester", config, session=session)


def _game(url=GAME_URL):
    return Game(11, "Free Game", url, claimable=True)


def _claim_routes(landing, game_page):
    return {
        ("POST", f"{GAME_URL}/download_url"): FakeResponse(json_data={"url": DOWNLOAD_PAGE}),
        ("GET", DOWNLOAD_PAGE): FakeResponse(200, CLAIM_PAGE),
        ("POST", CLAIM_ACTION): FakeResponse(200, "<html></html>", url=landing),
        ("GET", GAME_URL): FakeResponse(200, game_page),
    }


def test_claim_verified_by_ownership_marker(config, fake_sleep):
    user = _user(config, _claim_routes(f"{GAME_URL}/purchase", OWNED_PAGE))

    result = claim_game(user, _game(), config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.CLAIMED
    assert user.owns_game(11)
    assert os.path.exists(user.session_path)
    _, _, kwargs = user.session.called("POST", CLAIM_ACTION)[0]
    assert kwargs["data"] == {"csrf_token": "tok="}


def test_home_redirect_without_marker_is_not_claimed(config, fake_sleep):
    user = _user(config, _claim_routes(HOME_URL, "<html>Buy Now</html>"))

    result = claim_game(user, _game(), config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.NOT_CLAIMABLE
    assert not user.owns_game(11)


def test_home_redirect_with_marker_is_claimed(config, fake_sleep):
    user = _user(config, _claim_routes(HOME_URL, OWNED_PAGE))

    assert claim_game(user, _game(), config, sleep=fake_sleep).outcome is ClaimOutcome.CLAIMED


def test_unverified_claim_is_indeterminate(config, fake_sleep):
    user = _user(config, _claim_routes(f"{GAME_URL}/purchase", "<html></html>"))

    result = claim_game(user, _game(), config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.INDETERMINATE
    assert not user.owns_game(11)


def test_failed_ownership_check_after_home_redirect_is_indeterminate(config, fake_sleep):
    routes = _claim_routes(HOME_URL, OWNED_PAGE)
    routes[("GET", GAME_URL)] = FakeResponse(502)
    user = _user(config, routes)

    assert claim_game(user, _game(), config, sleep=fake_sleep).outcome is ClaimOutcome.INDETERMINATE


def test_download_page_without_claim_box(config, fake_sleep):
    routes = _claim_routes(HOME_URL, OWNED_PAGE)
    routes[("GET", DOWNLOAD_PAGE)] = FakeResponse(200, OWNED_PAGE)
    user = _user(config, routes)
    assert claim_game(user, _game(), config, sleep=fake_sleep).outcome is ClaimOutcome.ALREADY_OWNED

    routes[("GET", DOWNLOAD_PAGE)] = FakeResponse(200, "<html>nothing here</html>")
    user = _user(config, routes)
    assert claim_game(user, _game(), config, sleep=fake_sleep).outcome is ClaimOutcome.NOT_CLAIMABLE


def test_rate_limit_exhaustion_is_indeterminate(config, fake_sleep, sleeps):
    config.max_retries = 3
    user = _user(config, {("POST", f"{GAME_URL}/download_url"): FakeResponse(429)})

    result = claim_game(user, _game(), config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.INDETERMINATE
    assert sleeps == [2, 4, 8]
    assert len(user.session.calls) == 4


def test_rate_limit_recovers(config, fake_sleep, sleeps):
    routes = _claim_routes(f"{GAME_URL}/purchase", OWNED_PAGE)
    routes[("POST", f"{GAME_URL}/download_url")] = [
        FakeResponse(429),
        FakeResponse(json_data={"url": DOWNLOAD_PAGE}),
    ]
    user = _user(config, routes)

    assert claim_game(user, _game(), config, sleep=fake_sleep).outcome is ClaimOutcome.CLAIMED
    assert sleeps == [2]


def test_moved_game_is_retried_exactly_once(config, fake_sleep):
    old_url = "https://old.itch.io/free-game"
    user = _user(
        config,
        {
            ("POST", f"{old_url}/download_url"): FakeResponse(json_data={"errors": ["invalid game"]}),
            ("HEAD", old_url): FakeResponse(200, url=GAME_URL),
            ("POST", f"{GAME_URL}/download_url"): FakeResponse(json_data={"errors": ["invalid game"]}),
            ("HEAD", GAME_URL): FakeResponse(200, url="https://elsewhere.itch.io/free-game"),
        },
    )
    game = _game(old_url)

    result = claim_game(user, game, config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.NOT_CLAIMABLE
    assert game.url == GAME_URL
    assert len(user.session.called("HEAD", old_url)) == 1
    assert user.session.called("HEAD", GAME_URL) == []
    assert len(user.session.called("POST", f"{GAME_URL}/download_url")) == 1


def test_other_download_errors_are_not_claimable(config, fake_sleep):
    user = _user(
        config,
        {("POST", f"{GAME_URL}/download_url"): FakeResponse(json_data={"errors": ["not for sale"]})},
    )

    result = claim_game(user, _game(), config, sleep=fake_sleep)

    assert result.outcome is ClaimOutcome.NOT_CLAIMABLE
    assert "not for sale" in result.reason


def test_missing_csrf_cookie_raises(config, fake_sleep):
    user = ItchUser("tester", config, session=FakeSession())
    with pytest.raises(AuthenticationError):
        claim_game(user, _game(), config, sleep=fake_sleep)


def test_run_claim_skips_owned_and_unknown(config, fake_sleep, capsys):
    feed = "https://feed.example/api/active.json"
    feed_data = [
        {"id": 1, "name": "Owned", "url": "https://dev.itch.io/owned", "claimable": True},
        {"id": 2, "name": "Web only", "url": "https://dev.itch.io/web", "claimable": False},
        {"id": 3, "name": "Unknown", "url": "https://dev.itch.io/unknown", "claimable": None},
    ]
    user = _user(config, {("GET", feed): FakeResponse(json_data=feed_data)})
    user.owned_games = {1}

    summary = run_claim(user, config, feed, sleep=fake_sleep)

    assert (summary.total_games, summary.already_owned, summary.not_claimable, summary.indeterminate) == (3, 1, 1, 1)
    assert summary.claimed == 0
    assert [call[0] for call in user.session.calls] == ["GET"]
    assert "Games found: 3" in capsys.readouterr().out


def test_run_claim_loads_library_when_cache_is_empty(config, fake_sleep):
    feed = "https://feed.example/api/active.json"
    feed_data = [{"id": 11, "name": "Free Game", "url": GAME_URL, "claimable": True}]
    library = {
        1: FakeResponse(json_data={"content": '<div data-game_id="11"></div>'}),
        2: FakeResponse(json_data={"content": ""}),
    }
    user = _user(
        config,
        {
            ("GET", feed): FakeResponse(json_data=feed_data),
            ("GET", "https://itch.io/my-purchases"): lambda m, u, kw: library[kw["params"]["page"]],
        },
    )

    summary = run_claim(user, config, feed, sleep=fake_sleep)

    assert summary.already_owned == 1
    assert user.session.called("POST", f"{GAME_URL}/download_url") == []


def test_malformed_feed_entries_are_skipped(config, capsys):
    feed = "https://feed.example/api/active.json"
    feed_data = [
        {"name": "No id", "url": "https://dev.itch.io/no-id", "claimable": True},
        {"id": 4, "name": "No url", "url": None, "claimable": True},
        "not an entry",
        {"id": 5, "name": "Fine", "url": "https://dev.itch.io/fine", "claimable": True},
    ]
    session = FakeSession({("GET", feed): FakeResponse(json_data=feed_data)})

    games = download_from_remote_cache(session, config, feed)

    assert [game.id for game in games] == [5]
    assert "Skipping" in capsys.readouterr().err


def test_game_without_url_is_indeterminate(config, fake_sleep):
    user = _user(config, {})
    result = claim_game(user, Game(12, "Lost", None, claimable=True), config, sleep=fake_sleep)
    assert result.outcome is ClaimOutcome.INDETERMINATE
    assert user.session.calls == []
