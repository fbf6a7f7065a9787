import getpass
import json
import os
import re
import sys
from http.cookiejar import MozillaCookieJar
from itertools import count
from typing import List, Optional, Set
from urllib.parse import unquote

import pyotp
import requests
from bs4 import BeautifulSoup

from itch_config import ClaimConfig
from itch_errors import AuthenticationError, ParseError, TransientNetworkError
from itch_models import Game
from itch_scrape import BASE_URL, build_session, cookie_value, fetch_response, log_line, normalize_text
from record_store import write_json_atomic

LOGIN_URL = f"{BASE_URL}/login"
MY_FEED_URL = f"{BASE_URL}/my-feed"
MY_PURCHASES_URL = f"{BASE_URL}/my-purchases"
CSRF_COOKIE = "itchio_token"
OWNERSHIP_MARKER = "ownership_reason"
GAME_ID_RE = re.compile(r'data-game_id="(\d+)"')


def safe_name(username: str) -> str:
    return re.sub(r"\W", "_", username)


def extract_input_value(html: str, name: str) -> Optional[str]:
    soup = BeautifulSoup(html, "html.parser")
    field = soup.find("input", attrs={"name": name})
    if field is None or not field.get("value"):
        return None
    return field["value"]


def extract_form_error(html: str) -> Optional[str]:
    soup = BeautifulSoup(html, "html.parser")
    errors = soup.select_one("div.form_errors")
    if errors is None:
        return None
    item = errors.find("li")
    return normalize_text((item or errors).get_text())


def totp_code(totp: Optional[str]) -> str:
    if not totp:
        if not sys.stdin.isatty():
            raise AuthenticationError("2FA code required but no TOTP code or secret was provided")
        totp = input("Enter 2FA code: ").strip()
    if len(totp) != 6:
        return pyotp.TOTP(totp.replace(" ", "")).now()
    return totp


class ItchUser:
    def __init__(
        self, username: str, config: ClaimConfig, session: Optional[requests.Session] = None
    ):
        self.username = username
        self.config = config
        self.session = session if session is not None else build_session(config)
        self.owned_games: Set[int] = set()
        self.user_id: Optional[str] = None

    @property
    def session_path(self) -> str:
        return os.path.join(self.config.users_dir, f"session-{safe_name(self.username)}.json")

    @property
    def cookie_path(self) -> str:
        return os.path.join(self.config.users_dir, f"cookies-{safe_name(self.username)}.txt")

    def request(self, url: str, method: str = "GET", **kwargs) -> requests.Response:
        return fetch_response(self.session, url, self.config.auth_timeout, method=method, **kwargs)

    def login(self, password: Optional[str] = None, totp: Optional[str] = None) -> None:
        response = self.request(LOGIN_URL)
        csrf_token = extract_input_value(response.text, "csrf_token")
        if not csrf_token:
            raise AuthenticationError("Failed to extract CSRF token from login page")

        if password is None:
            if not sys.stdin.isatty():
                raise AuthenticationError(f"No password provided for user {self.username}")
            password = getpass.getpass(f"Enter password for user {self.username}: ")

        response = self.request(
            LOGIN_URL,
            method="POST",
            data={
                "csrf_token": csrf_token,
                "username": self.username,
                "password": password,
                "tz": -120,
            },
        )
        error = extract_form_error(response.text)
        if error:
            raise AuthenticationError(f"Error while logging in: {error}")

        if "totp/" in response.url:
            self.user_id = extract_input_value(response.text, "user_id")
            if not self.user_id:
                raise AuthenticationError("Could not find user ID in 2FA page")
            response = self.request(
                response.url,
                method="POST",
                data={"csrf_token": csrf_token, "userid": self.user_id, "code": totp_code(totp)},
            )
            error = extract_form_error(response.text)
            if error:
                raise AuthenticationError(f"Error with 2FA: {error}")

        self.save_session()

    def csrf_token(self) -> Optional[str]:
        value = cookie_value(self.session, CSRF_COOKIE)
        return unquote(value) if value else None

    def save_session(self) -> None:
        os.makedirs(self.config.users_dir, exist_ok=True)
        write_json_atomic(
            self.session_path,
            {"csrf_token": self.csrf_token(), "owned_games": sorted(self.owned_games)},
        )

        tmp_path = self.cookie_path + ".tmp"
        jar = MozillaCookieJar(tmp_path)
        for cookie in self.session.cookies:
            jar.set_cookie(cookie)
        jar.save(ignore_discard=True, ignore_expires=True)
        os.replace(tmp_path, self.cookie_path)

    def load_session(self, verify: bool = True) -> None:
        if not os.path.exists(self.session_path):
            raise AuthenticationError("Session file not found")
        with open(self.session_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if os.path.exists(self.cookie_path):
            jar = MozillaCookieJar()
            jar.load(self.cookie_path, ignore_discard=True, ignore_expires=True)
            self.session.cookies.update(jar)

        if verify:
            response = self.request(MY_FEED_URL)
            if response.status_code != 200 or "login" in response.url:
                raise AuthenticationError("Session expired")

        self.owned_games = {int(game_id) for game_id in data.get("owned_games") or []}

    def owns_game(self, game_id: int) -> bool:
        return game_id in self.owned_games

    def owns_game_online(self, game: Game) -> bool:
        response = self.request(game.url)
        owned = OWNERSHIP_MARKER in response.text
        if owned:
            log_line(f"Ownership verified for {game.name}", self.config)
        else:
            log_line(f"No ownership found for {game.name}", self.config)
        return owned

    def get_one_library_page(self, page: int) -> List[int]:
        response = self.request(MY_PURCHASES_URL, params={"page": page, "format": "json"})
        if response.status_code != 200:
            raise TransientNetworkError(f"Library page {page} returned {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ParseError(f"Library page {page} is not valid JSON") from exc
        content = data.get("content") if isinstance(data, dict) else None
        if not content:
            return []
        return [int(game_id) for game_id in GAME_ID_RE.findall(content)]

    def reload_owned_games(self) -> int:
        """Page through the library and merge every owned game id into the cache.

        Pages are merged as they arrive, so a failing page raises without
        discarding the ids collected before it.
        """
        for page in count(1):
            ids = self.get_one_library_page(page)
            if not ids:
                break
            self.owned_games.update(ids)
            log_line(
                f"Library page #{page}: added {len(ids)} games (total: {len(self.owned_games)})",
                self.config,
            )
        return len(self.owned_games)


def login_user(
    username: str,
    config: ClaimConfig,
    password: Optional[str] = None,
    totp: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> ItchUser:
    user = ItchUser(username, config, session=session)
    try:
        user.load_session()
        log_line(f"Session {username} loaded successfully", config)
    except AuthenticationError:
        user.login(password, totp)
        log_line(f"Logged in as {username}", config)
    return user
