import json
import os
import tempfile
from typing import List, Optional

from itch_errors import DataInconsistency
from itch_models import Game

CURSOR_FILENAME = "resume_index.txt"


def write_atomic(path: str, content: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.basename(path))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_json_atomic(path: str, data: object) -> None:
    write_atomic(path, json.dumps(data, indent=2) + "\n")


class RecordStore:
    """One JSON record per game plus the sequential crawl cursor, under ``games_dir``."""

    def __init__(self, games_dir: str):
        self.games_dir = games_dir

    def path_for(self, game_id: int) -> str:
        return os.path.join(self.games_dir, f"{game_id}.json")

    def cursor_path(self) -> str:
        return os.path.join(self.games_dir, CURSOR_FILENAME)

    def exists(self, game_id: int) -> bool:
        return os.path.exists(self.path_for(game_id))

    def load(self, game_id: int, refresh_claimable: bool = False) -> Optional[Game]:
        path = self.path_for(game_id)
        if not os.path.exists(path):
            return None
        return self._load_path(path, refresh_claimable)

    def _load_path(self, path: str, refresh_claimable: bool = False) -> Game:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Game.from_dict(data, refresh_claimable=refresh_claimable)

    def save(self, game: Game) -> None:
        write_json_atomic(self.path_for(game.id), game.serialize())

    def load_all(self) -> List[Game]:
        if not os.path.isdir(self.games_dir):
            return []
        games = []
        for name in os.listdir(self.games_dir):
            stem, ext = os.path.splitext(name)
            if ext != ".json" or not stem.isdigit():
                continue
            games.append(self._load_path(os.path.join(self.games_dir, name)))
        games.sort(key=lambda game: game.id)
        return games

    def load_cursor(self) -> int:
        try:
            with open(self.cursor_path(), "r", encoding="utf-8") as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return 1
        try:
            return int(raw)
        except ValueError as exc:
            raise DataInconsistency(f"Cursor file {self.cursor_path()} holds {raw!r}, not a sale id") from exc

    def save_cursor(self, value: int) -> None:
        write_atomic(self.cursor_path(), str(value))
