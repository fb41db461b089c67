"""
Play legality for Beefy Four-Layer.

A card may be played on a center pile when its rank is adjacent to the
pile's top rank. Adjacency wraps (K-A), and Jokers are wild in either
position. These predicates are pure: both peers must reach the same
answer for the same cards, which is what lets the game ship actions
instead of state.
"""

from typing import Optional, Sequence

from cards import Card, Rank, Suit
from constants import WRAP_DISTANCE

# Rank values for adjacency checking (A=1, J=11, Q=12, K=13)
RANK_VALUES: dict[Rank, int] = {
    Rank.ACE: 1,
    Rank.TWO: 2,
    Rank.THREE: 3,
    Rank.FOUR: 4,
    Rank.FIVE: 5,
    Rank.SIX: 6,
    Rank.SEVEN: 7,
    Rank.EIGHT: 8,
    Rank.NINE: 9,
    Rank.TEN: 10,
    Rank.JACK: 11,
    Rank.QUEEN: 12,
    Rank.KING: 13,
    Rank.JOKER: 0,  # Special case, never compared numerically
}

SUIT_SYMBOLS: dict[Suit, str] = {
    Suit.HEARTS: "♥",
    Suit.DIAMONDS: "♦",
    Suit.CLUBS: "♣",
    Suit.SPADES: "♠",
}


def is_adjacent(rank1: Rank, rank2: Rank) -> bool:
    """
    Check if two ranks are adjacent on the A..K cycle.

    A is adjacent to K and 2; K is adjacent to Q and A. A Joker is
    adjacent to everything.
    """
    if rank1 == Rank.JOKER or rank2 == Rank.JOKER:
        return True

    diff = abs(RANK_VALUES[rank1] - RANK_VALUES[rank2])
    return diff == 1 or diff == WRAP_DISTANCE


def can_play(card: Optional[Card], pile_top: Optional[Card]) -> bool:
    """
    Check if a card can be played on a pile whose top card is `pile_top`.

    Returns False if either card is missing (e.g. an empty pile).
    """
    if card is None or pile_top is None:
        return False

    if card.is_joker or pile_top.is_joker:
        return True

    return is_adjacent(card.rank, pile_top.rank)


def legal_piles(card: Optional[Card], center_piles: Sequence[Sequence[Card]]) -> list[int]:
    """
    Get all pile indices the card can legally be played on.

    Empty piles are never legal targets.
    """
    if card is None:
        return []

    return [
        i for i, pile in enumerate(center_piles)
        if pile and can_play(card, pile[-1])
    ]


def has_legal_hand_play(hand: Sequence[Card], center_piles: Sequence[Sequence[Card]]) -> bool:
    """Check if any card in the hand has at least one legal pile."""
    return any(legal_piles(card, center_piles) for card in hand)


def rank_display(rank: Rank) -> str:
    """Get rank display string (Jokers show as a star)."""
    if rank == Rank.JOKER:
        return "★"
    return rank.value


def card_display(card: Card) -> str:
    """Get a short display string like "10♥" or "★"."""
    if card.suit is None:
        return rank_display(card.rank)
    return f"{rank_display(card.rank)}{SUIT_SYMBOLS[card.suit]}"
