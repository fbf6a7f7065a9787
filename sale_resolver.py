import datetime as dt
import enum
import json
import re
from dataclasses import dataclass
from typing import Optional

import requests

from itch_config import ClaimConfig
from itch_errors import DataInconsistency, ParseError, RateLimited, TransientNetworkError
from itch_models import Sale
from itch_scrape import BASE_URL, fetch_response, was_redirected

SALE_SCRIPT_RE = re.compile(r"init_Sale.+, (.+)\);i")
SALE_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SaleStatus(enum.Enum):
    FOUND = "found"
    PARSE_ERROR = "parse_error"
    NOT_FOUND_MORE_MAY_EXIST = "not_found_more_may_exist"
    END_OF_LIST = "end_of_list"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class SaleResult:
    sale_id: int
    status: SaleStatus
    sale: Optional[Sale] = None
    html: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[BaseException] = None


def sale_url(sale_id: int) -> str:
    return f"{BASE_URL}/s/{sale_id}"


def parse_sale_date(value: str) -> int:
    parsed = dt.datetime.strptime(value, SALE_DATE_FORMAT).replace(tzinfo=dt.timezone.utc)
    return int(parsed.timestamp())


def parse_sale_page(sale_id: int, html: str) -> Sale:
    match = SALE_SCRIPT_RE.search(html)
    if not match:
        raise ParseError("Could not parse sale data from HTML")
    payload = json.loads(match.group(1))
    if int(payload["id"]) != sale_id:
        raise DataInconsistency(f"Sale ID mismatch in parsed script tag. Expected {sale_id}, got {payload['id']}")
    return Sale(
        id=sale_id,
        start=parse_sale_date(payload["start_date"]),
        end=parse_sale_date(payload["end_date"]),
    )


def resolve_sale(session: requests.Session, sale_id: int, config: ClaimConfig) -> SaleResult:
    url = sale_url(sale_id)
    try:
        response = fetch_response(
            session,
            url,
            config.timeout,
            headers={"Accept-Language": "en-GB,en;q=0.9"},
        )
    except (TransientNetworkError, RateLimited) as exc:
        cause = getattr(exc, "cause", None) or exc
        return SaleResult(sale_id, SaleStatus.TRANSIENT_ERROR, error=str(exc), cause=cause)

    if response.status_code == 404:
        if not was_redirected(response, url) and sale_id > config.low_water_mark:
            return SaleResult(sale_id, SaleStatus.END_OF_LIST)
        return SaleResult(sale_id, SaleStatus.NOT_FOUND_MORE_MAY_EXIST, error="404 Not Found")

    if response.status_code != 200:
        return SaleResult(
            sale_id, SaleStatus.PARSE_ERROR, error=f"Unexpected status {response.status_code}"
        )

    html = response.text
    try:
        sale = parse_sale_page(sale_id, html)
    except (ParseError, ValueError, KeyError, TypeError) as exc:
        return SaleResult(sale_id, SaleStatus.PARSE_ERROR, html=html, error=str(exc))
    return SaleResult(sale_id, SaleStatus.FOUND, sale=sale, html=html)
