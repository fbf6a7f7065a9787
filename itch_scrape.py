import datetime as dt
import os
import re
import sys
from typing import List, Optional

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from itch_config import VERSION, ClaimConfig
from itch_errors import RateLimited, TransientNetworkError

USER_AGENT = f"ItchClaim {VERSION}"
BASE_URL = "https://itch.io"
HOME_URL = "https://itch.io/"

PRICE_RE = re.compile(r"[-+]?(?:\d*\.\d+|\d+)")
WHITESPACE_RE = re.compile(r"\s+")


def build_session(config: ClaimConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    if config.dev:
        session.verify = False
    return session


def append_log(path: str, message: str) -> None:
    timestamp = dt.datetime.now(dt.timezone.utc).isoformat()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"[{timestamp}] {message}\n")


def log_line(message: str, config: Optional[ClaimConfig] = None, error: bool = False) -> None:
    print(message, file=sys.stderr if error else sys.stdout)
    if config is not None and config.log_file:
        append_log(config.log_file, message)


def fetch_response(
    session: requests.Session, url: str, timeout: float, method: str = "GET", **kwargs
) -> requests.Response:
    """Perform one request, classifying transport failures.

    Timeouts, connection errors and 5xx answers raise ``TransientNetworkError``;
    429 raises ``RateLimited``. Every other status is returned to the caller.
    """
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise TransientNetworkError(f"{method} {url} failed: {exc}", exc) from exc
    if response.status_code == 429:
        raise RateLimited(f"{method} {url} returned 429")
    if response.status_code >= 500:
        raise TransientNetworkError(f"{method} {url} returned {response.status_code}")
    return response


def was_redirected(response: requests.Response, requested_url: str) -> bool:
    if response.history:
        return True
    return response.url.rstrip("/") != requested_url.rstrip("/")


def parse_price(value: str) -> Optional[float]:
    match = PRICE_RE.search(value or "")
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def parse_api_price(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value[1:].replace(",", ""))
    except ValueError:
        return None


def find_game_cells(html: str) -> List[Tag]:
    soup = BeautifulSoup(html, "html.parser")
    return soup.select("div.game_cell")


def normalize_text(value: str) -> str:
    return WHITESPACE_RE.sub(" ", value).strip()


def cookie_value(session: requests.Session, name: str) -> Optional[str]:
    for cookie in session.cookies:
        if cookie.name == name:
            return cookie.value
    return None
