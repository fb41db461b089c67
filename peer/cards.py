"""
Card and deck primitives for Beefy Four-Layer.

Cards are immutable; decks are plain tuples that are only ever shortened
from the front (draw) or replaced wholesale (shuffle/refresh). Every
shuffle takes an explicit seed so two peers that start from the same
seed produce byte-identical decks.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from constants import NUM_CENTER_PILES

Seed = Union[int, str]


class Suit(str, Enum):
    """Card suits for a standard deck."""

    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class Rank(str, Enum):
    """
    Card ranks.

    The 13 standard ranks form a cycle (K is adjacent to A). The Joker has
    no suit and is wild for adjacency.
    """

    ACE = "A"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"
    SIX = "6"
    SEVEN = "7"
    EIGHT = "8"
    NINE = "9"
    TEN = "10"
    JACK = "J"
    QUEEN = "Q"
    KING = "K"
    JOKER = "JOKER"


STANDARD_RANKS: tuple[Rank, ...] = tuple(r for r in Rank if r != Rank.JOKER)


@dataclass(frozen=True)
class Card:
    """
    A playing card.

    Attributes:
        id: Unique identifier within the deck (e.g. "card-17").
        rank: The card's rank (A, 2-10, J, Q, K, or JOKER).
        suit: The card's suit, or None for Jokers.
    """

    id: str
    rank: Rank
    suit: Optional[Suit] = None

    @property
    def is_joker(self) -> bool:
        return self.rank == Rank.JOKER

    def to_dict(self) -> dict:
        """Convert card to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "rank": self.rank.value,
            "suit": self.suit.value if self.suit else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Card":
        """Create from dictionary."""
        suit = d.get("suit")
        return cls(
            id=d["id"],
            rank=Rank(d["rank"]),
            suit=Suit(suit) if suit else None,
        )


def create_deck() -> tuple[Card, ...]:
    """
    Build an unshuffled 54-card deck.

    Standard cards come first in suit-major order, followed by two Jokers.
    Card ids are assigned sequentially ("card-0" .. "card-53").
    """
    cards: list[Card] = []
    next_id = 0

    for suit in Suit:
        for rank in STANDARD_RANKS:
            cards.append(Card(id=f"card-{next_id}", rank=rank, suit=suit))
            next_id += 1

    for _ in range(2):
        cards.append(Card(id=f"card-{next_id}", rank=Rank.JOKER, suit=None))
        next_id += 1

    return tuple(cards)


def shuffle(cards: Sequence[Card], seed: Seed) -> tuple[Card, ...]:
    """
    Return a shuffled copy of the cards.

    Uses a private Random instance so the global random state is never
    touched and the result depends only on the seed.

    Args:
        cards: Cards to shuffle (not modified).
        seed: Int or string seed.

    Returns:
        New tuple of the same cards in shuffled order.
    """
    shuffled = list(cards)
    random.Random(seed).shuffle(shuffled)
    return tuple(shuffled)


def draw_cards(deck: Sequence[Card], count: int) -> tuple[tuple[Card, ...], tuple[Card, ...]]:
    """
    Draw up to `count` cards from the top (front) of the deck.

    Returns:
        (drawn, remaining)
    """
    return tuple(deck[:count]), tuple(deck[count:])


def draw_one(deck: Sequence[Card]) -> tuple[Optional[Card], tuple[Card, ...]]:
    """
    Draw the top card of the deck.

    Returns:
        (card, remaining), or (None, ()) if the deck is empty.
    """
    if not deck:
        return None, ()
    return deck[0], tuple(deck[1:])


def refresh_center_piles(
    center_piles: Sequence[Sequence[Card]],
    seed: Seed,
) -> tuple[tuple[Card, ...], tuple[tuple[Card, ...], ...]]:
    """
    Rebuild the deck from the center piles.

    Collects every card from every pile (pile 0 bottom-to-top, then pile 1,
    and so on), shuffles them with the given seed, and deals four new
    singleton piles off the top. The rest becomes the new deck.

    Args:
        center_piles: Current piles (not modified).
        seed: Seed for the reshuffle.

    Returns:
        (new_deck, new_center_piles)
    """
    collected = [card for pile in center_piles for card in pile]
    shuffled = shuffle(collected, seed)
    drawn, remaining = draw_cards(shuffled, NUM_CENTER_PILES)
    return remaining, tuple((card,) for card in drawn)
