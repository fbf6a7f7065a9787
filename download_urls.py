import datetime as dt
from typing import Dict, List, Optional
from urllib.parse import unquote

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from itch_config import ClaimConfig
from itch_errors import AuthenticationError, ParseError
from itch_scrape import HOME_URL, cookie_value, fetch_response, log_line, normalize_text
from itch_session import CSRF_COOKIE

PLATFORMS = ("windows8", "android", "tux", "apple")
UPLOAD_DATE_FORMAT = "%d %B %Y @ %H:%M"


def parse_upload_date(value: str) -> int:
    parsed = dt.datetime.strptime(value, UPLOAD_DATE_FORMAT).replace(tzinfo=dt.timezone.utc)
    return int(parsed.timestamp())


def parse_upload_div(div: Tag) -> Dict[str, object]:
    button = div.select_one("a.download_btn")
    if button is None or not button.get("data-upload_id"):
        raise ParseError("Download button element not found")

    date_el = div.select_one("div.upload_date abbr")
    if date_el is None or not date_el.get("title"):
        raise ParseError("Upload date element not found")
    try:
        upload_date = parse_upload_date(date_el["title"])
    except ValueError as exc:
        raise ParseError(f"Unexpected upload date {date_el['title']!r}") from exc

    platforms = []
    platforms_el = div.select_one("span.download_platforms")
    if platforms_el is not None:
        for platform in PLATFORMS:
            if platforms_el.select_one(f"span.icon-{platform}") is not None:
                platforms.append(platform)

    name_el = div.select_one("strong.name")
    size_el = div.select_one("span.file_size")
    file_size = next(size_el.stripped_strings, None) if size_el is not None else None

    return {
        "id": int(button["data-upload_id"]),
        "name": normalize_text(name_el.get_text()) if name_el is not None else None,
        "file_size": file_size,
        "upload_date": upload_date,
        "platforms": platforms,
    }


def file_download_url(
    session: requests.Session, config: ClaimConfig, game_url: str, upload_id: int, csrf_token: str
) -> Optional[str]:
    response = fetch_response(
        session,
        f"{game_url}/file/{upload_id}",
        config.timeout,
        method="POST",
        params={"source": "game_download"},
        json={"csrf_token": csrf_token},
    )
    try:
        data = response.json()
    except ValueError as exc:
        raise ParseError(f"File {upload_id} answered with invalid JSON") from exc
    return data.get("url") if isinstance(data, dict) else None


def downloadable_files(
    session: requests.Session,
    config: ClaimConfig,
    game_url: str,
    authenticated: bool = False,
) -> List[Dict[str, object]]:
    """List every upload of a game with a direct download URL.

    Anonymous sessions first visit the home page so itch.io hands out the
    ``itchio_token`` cookie the download endpoints expect.
    """
    game_url = game_url.rstrip("/")
    if not authenticated:
        fetch_response(session, HOME_URL, config.timeout)

    token = cookie_value(session, CSRF_COOKIE)
    if not token:
        raise AuthenticationError("CSRF token not found")
    csrf_token = unquote(token)

    response = fetch_response(
        session, f"{game_url}/download_url", config.timeout, method="POST", json={"csrf_token": csrf_token}
    )
    try:
        data = response.json()
    except ValueError as exc:
        raise ParseError(f"{game_url}/download_url answered with invalid JSON") from exc

    errors = data.get("errors") if isinstance(data, dict) else None
    if errors or not isinstance(data, dict) or not data.get("url"):
        reason = errors[0] if errors else "no download page"
        log_line(f"ERROR: Failed to get download links for game {game_url}: {reason}", config, error=True)
        return []

    response = fetch_response(session, data["url"], config.timeout)
    soup = BeautifulSoup(response.text, "html.parser")

    uploads = []
    for div in soup.select("div.upload"):
        upload = parse_upload_div(div)
        upload["url"] = file_download_url(session, config, game_url, upload["id"], csrf_token)
        uploads.append(upload)
    return uploads
