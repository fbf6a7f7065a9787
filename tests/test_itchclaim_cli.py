import pytest

import itchclaim
from itch_config import VERSION
from itch_errors import AuthenticationError, TransientNetworkError


@pytest.fixture(autouse=True)
def _no_env_credentials(monkeypatch, tmp_path):
    for key in ("ITCH_USERNAME", "ITCH_PASSWORD", "ITCH_TOTP"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def test_version_command(capsys):
    assert itchclaim.main(["version"]) == 0
    assert capsys.readouterr().out.strip() == VERSION
    assert itchclaim.main(["--version"]) == 0


def test_claim_without_username_fails(capsys):
    assert itchclaim.main(["claim"]) == 1
    assert "username" in capsys.readouterr().err


def test_authentication_failure_exits_with_error(monkeypatch, capsys):
    def fail_login(*args, **kwargs):
        raise AuthenticationError("bad password")

    monkeypatch.setattr(itchclaim, "login_user", fail_login)

    assert itchclaim.main(["claim", "--login", "tester"]) == 1
    assert "bad password" in capsys.readouterr().err


def test_credentials_come_from_env_file(monkeypatch, tmp_path):
    creds = tmp_path / ".env"
    creds.write_text('ITCH_USERNAME=tester\nITCH_PASSWORD="pw"\n', encoding="utf-8")
    seen = {}

    def fake_login(username, config, password=None, totp=None, session=None):
        seen.update(username=username, password=password)
        raise AuthenticationError("stop here")

    monkeypatch.setattr(itchclaim, "login_user", fake_login)

    assert itchclaim.main(["refresh_library", "--creds-file", str(creds)]) == 1
    assert seen == {"username": "tester", "password": "pw"}


def test_fail_fast_network_error_exits_with_error(monkeypatch):
    def broken_crawl(session, store, config):
        raise TransientNetworkError("sale page 12 timed out")

    monkeypatch.setattr(itchclaim, "crawl_sales", broken_crawl)

    assert itchclaim.main(["refresh_sale_cache"]) == 1


def test_refresh_sale_cache_runs_both_crawlers(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(itchclaim, "crawl_sales", lambda session, store, config: calls.append(("sales", config)))
    monkeypatch.setattr(
        itchclaim, "crawl_all_categories", lambda session, store, config: calls.append(("categories", config))
    )

    assert itchclaim.main(["refresh_sale_cache", "--games-dir", str(tmp_path / "g"), "--max-pages", "5"]) == 0
    assert [name for name, _ in calls] == ["sales", "categories"]
    config = calls[0][1]
    assert config.games_dir == str(tmp_path / "g")
    assert config.max_pages == 5
    assert config.no_fail is False


def test_games_dir_defaults_under_web_dir():
    config = itchclaim.build_config(itchclaim.parse_args(["generate_web", "--web-dir", "site"]))
    assert config.games_dir.replace("\\", "/") == "site/data"


def test_download_urls_requires_a_url(capsys):
    assert itchclaim.main(["download_urls"]) == 1
    assert "URL is required" in capsys.readouterr().err


def test_negative_max_pages_means_no_limit():
    config = itchclaim.build_config(itchclaim.parse_args(["refresh_sale_cache", "--max-pages", "-1"]))
    assert config.max_pages is None
    config = itchclaim.build_config(itchclaim.parse_args(["refresh_sale_cache", "--max-pages", "0"]))
    assert config.max_pages == 0
