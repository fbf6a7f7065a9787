import argparse
import json
import os
import sys
from typing import List, Optional

from claim_games import run_claim
from crawl_categories import crawl_all_categories
from crawl_sales import crawl_sales, refresh_sales
from download_urls import downloadable_files
from generate_web import generate_web
from itch_config import DEFAULT_CLAIM_URL, VERSION, ClaimConfig, load_env_credentials, resolve_credential
from itch_errors import AuthenticationError, ItchClaimError, TransientNetworkError
from itch_scrape import build_session, log_line
from itch_session import login_user
from record_store import RecordStore

COMMANDS = ["claim", "refresh_library", "refresh_sale_cache", "download_urls", "generate_web", "version"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="itchclaim",
        description="Automatically claim free games from itch.io.",
    )
    parser.add_argument("command", nargs="?", choices=COMMANDS, help="Command to run")
    parser.add_argument("target", nargs="?", help="Game URL for download_urls")
    parser.add_argument("--version", action="store_true", help="Print the version and exit")
    parser.add_argument("--login", help="Username or email to log in with (env: ITCH_USERNAME)")
    parser.add_argument("--password", help="Password for login (env: ITCH_PASSWORD)")
    parser.add_argument("--totp", help="2FA code or TOTP secret (env: ITCH_TOTP)")
    parser.add_argument("--creds-file", help="Path to a .env file with ITCH_* credentials")
    parser.add_argument(
        "--url",
        default=DEFAULT_CLAIM_URL,
        help=f"URL of the free games list to claim from (default: {DEFAULT_CLAIM_URL})",
    )
    parser.add_argument("--games-dir", help="Directory for game records (default: <web-dir>/data)")
    parser.add_argument("--web-dir", default="web", help="Directory for published feeds (default: web)")
    parser.add_argument("--max-pages", type=int, help="Maximum number of sale pages to visit (negative: no limit)")
    parser.add_argument(
        "--max-not-found-pages",
        type=int,
        default=25,
        help="Consecutive missing sale pages before stopping (default: 25)",
    )
    parser.add_argument("--no-fail", action="store_true", help="Keep going after network errors")
    parser.add_argument(
        "--sales",
        type=int,
        nargs="+",
        help="Refresh only these sale ids instead of crawling",
    )
    parser.add_argument("--delay", type=float, default=0.5, help="Delay between requests (seconds)")
    parser.add_argument("--log-file", help="Append progress lines to this file")
    parser.add_argument("--dev", action="store_true", help="Development mode (disables TLS verification)")
    args = parser.parse_args(argv)
    if args.command is None and not args.version:
        parser.error("a command is required")
    return args


def build_config(args: argparse.Namespace) -> ClaimConfig:
    return ClaimConfig(
        games_dir=args.games_dir or os.path.join(args.web_dir, "data"),
        web_dir=args.web_dir,
        request_delay=args.delay,
        max_not_found_pages=args.max_not_found_pages,
        max_pages=args.max_pages if args.max_pages is not None and args.max_pages >= 0 else None,
        no_fail=args.no_fail,
        dev=args.dev,
        log_file=args.log_file,
    )


def run_command(args: argparse.Namespace, config: ClaimConfig) -> int:
    creds = load_env_credentials(args.creds_file) if args.creds_file else {}
    username = resolve_credential(args.login, "ITCH_USERNAME", creds)
    password = resolve_credential(args.password, "ITCH_PASSWORD", creds)
    totp = resolve_credential(args.totp, "ITCH_TOTP", creds)

    if args.command in ("claim", "refresh_library"):
        if not username:
            print("Missing username: pass --login or set ITCH_USERNAME", file=sys.stderr)
            return 1
        user = login_user(username, config, password, totp)
        if args.command == "claim":
            run_claim(user, config, args.url)
        else:
            total = user.reload_owned_games()
            user.save_session()
            log_line(f"Library refreshed: {total} games owned", config)
        return 0

    if args.command == "refresh_sale_cache":
        session = build_session(config)
        store = RecordStore(config.games_dir)
        if args.sales:
            refresh_sales(session, store, config, args.sales)
            return 0
        crawl_sales(session, store, config)
        crawl_all_categories(session, store, config)
        return 0

    if args.command == "download_urls":
        if not args.target:
            print("Error: Game URL is required", file=sys.stderr)
            return 1
        if username:
            session = login_user(username, config, password, totp).session
        else:
            session = build_session(config)
        files = downloadable_files(session, config, args.target, authenticated=bool(username))
        print(json.dumps(files, indent=2))
        return 0

    generate_web(build_session(config), config)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.version or args.command == "version":
        print(VERSION)
        return 0

    config = build_config(args)
    try:
        return run_command(args, config)
    except AuthenticationError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return 1
    except TransientNetworkError as exc:
        print(f"Aborted after a network error: {exc}", file=sys.stderr)
        return 1
    except ItchClaimError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
