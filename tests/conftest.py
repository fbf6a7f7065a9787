import datetime as dt
import json

import pytest
from requests.cookies import RequestsCookieJar

from itch_config import ClaimConfig
from record_store import RecordStore


class FakeResponse:
    def __init__(self, status_code=200, text="", url="", json_data=None, history=None):
        self.status_code = status_code
        self.url = url
        self.history = history or []
        if json_data is not None:
            text = json.dumps(json_data)
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """Stands in for ``requests.Session``; answers from a route table.

    A route value is a FakeResponse, an exception to raise, a list of those
    consumed in order (the last one repeats), or a callable
    ``(method, url, kwargs) -> FakeResponse``.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.cookies = RequestsCookieJar()
        self.headers = {}
        self.verify = True

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        handler = self.routes.get((method, url))
        if handler is None:
            return FakeResponse(404, "not found", url=url)
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            handler = handler(method, url, kwargs)
        if not handler.url:
            handler.url = url
        return handler

    def called(self, method, url):
        return [call for call in self.calls if call[0] == method and call[1] == url]


def iso(ts):
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sale_page(sale_id, start, end, cells=""):
    payload = json.dumps(
        {"id": sale_id, "start_date": iso(start), "end_date": iso(end)}, separators=(",", ":")
    )
    return (
        "<html><body>"
        f'<div class="game_grid">{cells}</div>'
        f'<script>I.init_Sale("#sale_page", {payload});init_Footer();</script>'
        "</body></html>"
    )


def game_cell(game_id, price="$0.00", name=None, url=None):
    name = name or f"Game {game_id}"
    url = url or f"https://dev.itch.io/game-{game_id}"
    price_html = f'<div class="price_value">{price}</div>' if price is not None else ""
    return (
        f'<div class="game_cell" data-game_id="{game_id}">'
        f'<div class="game_thumb"><img data-lazy_src="https://img.itch.zone/{game_id}.png"></div>'
        f'<a class="title game_link" href="{url}">{name}</a>'
        f"{price_html}</div>"
    )


@pytest.fixture
def config(tmp_path):
    return ClaimConfig(
        games_dir=str(tmp_path / "data"),
        web_dir=str(tmp_path / "web"),
        users_dir=str(tmp_path / "users"),
        request_delay=0,
        claim_delay=0,
        max_retries=1,
    )


@pytest.fixture
def store(config):
    return RecordStore(config.games_dir)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append
