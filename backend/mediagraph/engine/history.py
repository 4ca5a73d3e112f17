"""Per-node result history and run-level cost accounting."""
import threading
import time
from dataclasses import dataclass, field
from typing import Any

HISTORY_LIMIT = 50

# USD per image for the built-in Gemini image models
PRICING: dict[str, dict[str, float]] = {
    "nano-banana": {"1K": 0.039, "2K": 0.039, "4K": 0.039},
    "nano-banana-pro": {"1K": 0.134, "2K": 0.134, "4K": 0.24},
}


def calculate_generation_cost(model: str | None, resolution: str | None) -> float:
    # nano-banana only renders at 1K
    if model == "nano-banana":
        return PRICING["nano-banana"]["1K"]
    return PRICING["nano-banana-pro"].get(resolution or "1K", PRICING["nano-banana-pro"]["1K"])


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class HistoryItem:
    id: str
    timestamp: int
    prompt: str
    model: str
    aspect_ratio: str | None = None

    def to_dict(self) -> dict[str, Any]:
        item = {
            "id": self.id,
            "timestamp": self.timestamp,
            "prompt": self.prompt,
            "model": self.model,
        }
        if self.aspect_ratio is not None:
            item["aspectRatio"] = self.aspect_ratio
        return item


def push_history(
    history: list[dict[str, Any]] | None,
    item: HistoryItem,
    limit: int = HISTORY_LIMIT,
) -> list[dict[str, Any]]:
    """Return a new history with `item` first, evicting the oldest past `limit`."""
    return [item.to_dict(), *(history or [])][:limit]


def reconcile_history_id(
    history: list[dict[str, Any]] | None,
    provisional_id: str,
    stored_id: str,
) -> list[dict[str, Any]] | None:
    """Rewrite the entry saved under `provisional_id`. None when nothing changed."""
    entries = list(history or [])
    for i, entry in enumerate(entries):
        if entry.get("id") == provisional_id:
            entries[i] = {**entry, "id": stored_id}
            return entries
    return None


def clamp_selected_index(index: int | None, length: int) -> int | None:
    if length == 0 or index is None:
        return None
    return max(0, min(index, length - 1))


@dataclass
class CostLedger:
    """Running cost plus the global generation history for one workflow."""

    incurred: float = 0.0
    global_history: list[dict[str, Any]] = field(default_factory=list)
    history_limit: int = HISTORY_LIMIT
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_cost(self, amount: float) -> None:
        with self._lock:
            self.incurred = round(self.incurred + float(amount), 6)

    def add_to_history(self, entry: dict[str, Any]) -> None:
        with self._lock:
            self.global_history = [
                {"id": str(entry.get("timestamp", now_ms())), **entry},
                *self.global_history,
            ][: self.history_limit]

    def reset(self) -> None:
        with self._lock:
            self.incurred = 0.0
