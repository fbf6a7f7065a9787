import enum
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


def now_ts() -> int:
    return int(time.time())


@dataclass
class Sale:
    id: int
    start: Optional[int] = None
    end: Optional[int] = None
    err: Optional[str] = field(default=None, compare=False)

    def is_complete(self) -> bool:
        return self.start is not None and self.end is not None and self.err is None

    def is_active(self, now: Optional[int] = None) -> bool:
        if self.start is None or self.end is None:
            return False
        now = now_ts() if now is None else now
        return self.start < now < self.end

    def is_upcoming(self, now: Optional[int] = None) -> bool:
        if self.start is None:
            return False
        now = now_ts() if now is None else now
        return now < self.start

    def serialize(self) -> Dict[str, object]:
        return {"id": self.id, "start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Sale":
        return cls(id=int(data["id"]), start=data.get("start"), end=data.get("end"))


@dataclass
class Game:
    """A tracked itch.io listing and every 100% sale seen for it.

    ``claimable`` is tri-state: True, False or None (unknown). ``claimable_stale``
    is not persisted; it marks a value that must be refreshed online before use.
    """

    id: int
    name: Optional[str] = None
    url: Optional[str] = None
    price: Optional[float] = None
    cover_image: Optional[str] = None
    sales: List[Sale] = field(default_factory=list)
    claimable: Optional[bool] = None
    claimable_stale: bool = field(default=True, compare=False)

    def merge_sale(self, sale: Sale) -> bool:
        if not sale.is_complete():
            raise ValueError(f"Refusing to store incomplete sale {sale.id} for game {self.id}")
        for idx, existing in enumerate(self.sales):
            if existing.id == sale.id:
                self.sales[idx] = sale
                return True
        self.sales.append(sale)
        return False

    def is_first_sale(self) -> bool:
        return len(self.sales) == 1

    def sort_sales(self) -> None:
        self.sales.sort(key=lambda sale: sale.id)

    def active_sale(self, now: Optional[int] = None) -> Optional[Sale]:
        now = now_ts() if now is None else now
        active = [sale for sale in self.sales if sale.is_active(now)]
        if not active:
            return None
        return min(active, key=lambda sale: sale.end)

    def last_upcoming_sale(self, now: Optional[int] = None) -> Optional[Sale]:
        now = now_ts() if now is None else now
        upcoming = [sale for sale in self.sales if sale.is_upcoming(now)]
        if not upcoming:
            return None
        return max(upcoming, key=lambda sale: sale.start)

    def reset_claimable(self) -> None:
        self.claimable = None
        self.claimable_stale = True

    def serialize(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "price": self.price,
            "claimable": self.claimable,
            "sales": [sale.serialize() for sale in self.sales],
            "cover_image": self.cover_image,
        }

    def serialize_min(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "claimable": self.claimable,
            "sales": [sale.serialize() for sale in self.sales],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object], refresh_claimable: bool = False) -> "Game":
        claimable = data.get("claimable")
        game = cls(
            id=int(data["id"]),
            name=data.get("name"),
            url=data.get("url"),
            price=data.get("price"),
            cover_image=data.get("cover_image"),
            sales=[Sale.from_dict(raw) for raw in data.get("sales") or []],
            claimable=None if refresh_claimable else claimable,
        )
        game.claimable_stale = refresh_claimable or claimable is None
        return game


class ClaimOutcome(enum.Enum):
    CLAIMED = "claimed"
    ALREADY_OWNED = "already_owned"
    NOT_CLAIMABLE = "not_claimable"
    INDETERMINATE = "indeterminate"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    reason: str = ""
