from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable


@dataclass(frozen=True)
class EnumDomain:
    name: str
    label: str
    values: tuple[str, ...]

    def normalize(self, value: str | None) -> str | None:
        """Match ``value`` against the domain case-insensitively."""

        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        lookup = {member.lower(): member for member in self.values}
        return lookup.get(text.lower(), text)

    def validate(self, value: str | None, *, required: bool = False) -> str | None:
        normalized = self.normalize(value)
        if normalized is None:
            if required:
                raise ValueError(f"{self.label} is required.")
            return None
        if normalized not in self.values:
            allowed = ", ".join(self.values)
            raise ValueError(f"{self.label} must be one of {allowed}.")
        return normalized


COUNTRIES = EnumDomain(
    name="countries",
    label="Country",
    values=("AU", "US", "UK", "JP", "VN"),
)

GAME_GENRES = EnumDomain(
    name="game_genres",
    label="Genre",
    values=("RPG", "FPS", "Strategy", "Puzzle", "Sports"),
)

PAYMENT_METHODS = EnumDomain(
    name="payment_methods",
    label="Payment method",
    values=("CreditCard", "PayPal", "Crypto", "BankTransfer"),
)

PRIVACY_VALUES: tuple[str, ...] = ("public", "friends", "private")
THEME_VALUES: tuple[str, ...] = ("light", "dark", "auto")

# Ordered from most to least prestigious; the first threshold met wins.
RARITY_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (500, "Legendary"),
    (250, "Epic"),
    (100, "Rare"),
    (0, "Common"),
)

RARITY_ORDER: Dict[str, int] = {
    "Legendary": 4,
    "Epic": 3,
    "Rare": 2,
    "Common": 1,
}

COMPANY_SIZE_BUCKETS: Dict[str, str] = {
    "Indie (1-10)": "indie",
    "Small (11-50)": "small",
    "Medium (51-200)": "medium",
    "Large (200-500)": "large",
    "Enterprise (500+)": "enterprise",
}


def determine_rarity(points: int | None) -> str:
    points = int(points or 0)
    for threshold, label in RARITY_THRESHOLDS:
        if points >= threshold:
            return label
    return "Common"


def iter_domains() -> Iterable[EnumDomain]:
    return (COUNTRIES, GAME_GENRES, PAYMENT_METHODS)
