from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .errors import StaleRaffleError, StoreError, ValidationError
from .models import COMPLETED, LIVE, Raffle

logger = logging.getLogger(__name__)

Predicate = Callable[[Raffle], bool]


class RaffleStore:
    """
    Read/write-by-id plus filtered scans over Raffle records.

    save() with expected_status is a compare-and-set: it only writes when the
    stored record still has that status, else raises StaleRaffleError. The
    live->completed transition goes through it so selection happens once.
    Records handed out are copies; callers mutate and save them back.
    """

    def get(self, raffle_id: str) -> Optional[Raffle]:
        raise NotImplementedError

    def save(self, raffle: Raffle, expected_status: Optional[str] = None) -> None:
        raise NotImplementedError

    def find(self, predicate: Predicate) -> List[Raffle]:
        raise NotImplementedError

    def find_completable(self, now: datetime) -> List[Raffle]:
        return self.find(lambda r: r.status == LIVE and r.time_frame <= now)

    def find_undispersed(self) -> List[Raffle]:
        return self.find(lambda r: r.status == COMPLETED and not r.prize_dispersed)

    def prize_txids(self) -> Set[str]:
        """Every prize transaction id recorded on any raffle."""
        txids: Set[str] = set()
        for raffle in self.find(lambda r: r.status == COMPLETED):
            txids.update(t.txid for t in raffle.prize_records())
        return txids


class MemoryRaffleStore(RaffleStore):
    def __init__(self, raffles: Optional[List[Raffle]] = None) -> None:
        self._lock = threading.Lock()
        self._raffles: Dict[str, Raffle] = {}
        for raffle in raffles or []:
            self._raffles[raffle.raffle_id] = raffle.copy()

    def get(self, raffle_id: str) -> Optional[Raffle]:
        with self._lock:
            raffle = self._raffles.get(raffle_id)
            return raffle.copy() if raffle else None

    def save(self, raffle: Raffle, expected_status: Optional[str] = None) -> None:
        with self._lock:
            if expected_status is not None:
                current = self._raffles.get(raffle.raffle_id)
                if current is None or current.status != expected_status:
                    raise StaleRaffleError(
                        f"Raffle {raffle.raffle_id} is no longer {expected_status}"
                    )
            self._raffles[raffle.raffle_id] = raffle.copy()

    def find(self, predicate: Predicate) -> List[Raffle]:
        with self._lock:
            return [r.copy() for r in self._raffles.values() if predicate(r)]


class JsonRaffleStore(RaffleStore):
    """One <raffleId>.json document per raffle in a directory."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, raffle_id: str) -> Path:
        if not raffle_id or "/" in raffle_id or raffle_id.startswith("."):
            raise StoreError(f"Invalid raffle id: {raffle_id!r}")
        return self.directory / f"{raffle_id}.json"

    def _read(self, path: Path) -> Raffle:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Raffle.from_document(json.load(f))
        except (OSError, ValueError, KeyError, ValidationError) as e:
            raise StoreError(f"Could not read raffle document {path}: {e}") from e

    def get(self, raffle_id: str) -> Optional[Raffle]:
        path = self._path(raffle_id)
        with self._lock:
            if not path.exists():
                return None
            return self._read(path)

    def save(self, raffle: Raffle, expected_status: Optional[str] = None) -> None:
        path = self._path(raffle.raffle_id)
        with self._lock:
            if expected_status is not None:
                current = self._read(path) if path.exists() else None
                if current is None or current.status != expected_status:
                    raise StaleRaffleError(
                        f"Raffle {raffle.raffle_id} is no longer {expected_status}"
                    )
            tmp = path.with_suffix(".tmp")
            try:
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(raffle.to_document(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                tmp.replace(path)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise StoreError(f"Could not write raffle document {path}: {e}") from e

    def find(self, predicate: Predicate) -> List[Raffle]:
        out: List[Raffle] = []
        with self._lock:
            for path in sorted(self.directory.glob("*.json")):
                try:
                    raffle = self._read(path)
                except StoreError as e:
                    # One corrupt document must not hide every other raffle.
                    logger.error("Skipping unreadable raffle document: %s", e)
                    continue
                if predicate(raffle):
                    out.append(raffle)
        return out
