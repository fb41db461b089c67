"""
Game state for Beefy Four-Layer.

This module defines the immutable state that the reducer transforms.
Each state is a frozen snapshot; the reducer builds a new one for every
effective transition and hands back the same object for no-ops, so
callers can detect an ineffective action by identity or equality.

Beefy Four-Layer Rules Summary:
    - Two players, each with 4 face-down cards and an initially empty hand
    - 4 face-up center piles; a card may go on a pile if its rank is
      adjacent to the pile's top (K-A wraps, Jokers are wild)
    - Playing from hand or winning a face-down gamble keeps your turn
    - Losing a gamble sends the card to your hand, refills the slot from
      the deck, and passes the turn; drawing also passes the turn
    - When a draw empties the deck, all pile cards are reshuffled into a
      new deck and 4 new piles are dealt
    - First player with an empty hand and no face-down cards wins

Table Layout:
    P2:  [0] [1] [2] [3]      <- face-down slots
         (pile 0) (pile 1) (pile 2) (pile 3)
    P1:  [0] [1] [2] [3]
"""

import json
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from cards import Card, Seed, create_deck, draw_cards, shuffle
from constants import FACE_DOWN_SLOTS, LOG_GAME_STARTED


class PlayerId(str, Enum):
    """The two seats at the table."""

    P1 = "P1"
    P2 = "P2"


def opponent(player: PlayerId) -> PlayerId:
    """Get the other player."""
    return PlayerId.P2 if player == PlayerId.P1 else PlayerId.P1


@dataclass(frozen=True)
class PlayerState:
    """
    One player's cards.

    Attributes:
        hand: Face-up hand cards (order is stable but not meaningful to rules).
        face_down: Exactly 4 slots, each a Card or None once emptied.
    """

    face_down: tuple[Optional[Card], ...] = (None,) * FACE_DOWN_SLOTS
    hand: tuple[Card, ...] = ()

    @property
    def has_face_down(self) -> bool:
        return any(card is not None for card in self.face_down)

    def card_count(self) -> int:
        return len(self.hand) + sum(1 for card in self.face_down if card is not None)

    def to_dict(self) -> dict:
        return {
            "faceDown": [card.to_dict() if card else None for card in self.face_down],
            "hand": [card.to_dict() for card in self.hand],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PlayerState":
        return cls(
            face_down=tuple(Card.from_dict(c) if c else None for c in d["faceDown"]),
            hand=tuple(Card.from_dict(c) for c in d.get("hand", [])),
        )


# -----------------------------------------------------------------------------
# Selection cursor
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class HandSelection:
    """A hand card chosen for play; already known to have a legal pile."""

    index: int


@dataclass(frozen=True)
class FaceDownSelection:
    """A face-down slot chosen for a blind gamble."""

    index: int


@dataclass(frozen=True)
class DrawGamble:
    """The deck's top card, drawn speculatively and waiting for a pile."""

    card: Card


Selection = Union[HandSelection, FaceDownSelection, DrawGamble, None]


def selection_to_dict(selection: Selection) -> Optional[dict]:
    if selection is None:
        return None
    if isinstance(selection, HandSelection):
        return {"source": "hand", "index": selection.index}
    if isinstance(selection, FaceDownSelection):
        return {"source": "faceDown", "index": selection.index}
    return {"source": "drawGamble", "card": selection.card.to_dict()}


def selection_from_dict(d: Optional[dict]) -> Selection:
    if d is None:
        return None
    source = d["source"]
    if source == "hand":
        return HandSelection(index=int(d["index"]))
    if source == "faceDown":
        return FaceDownSelection(index=int(d["index"]))
    if source == "drawGamble":
        return DrawGamble(card=Card.from_dict(d["card"]))
    raise ValueError(f"Unknown selection source: {source!r}")


# -----------------------------------------------------------------------------
# Game state
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class GameState:
    """
    Complete, immutable table state.

    Attributes:
        deck: Draw pile, top card first.
        center_piles: The 4 face-up piles, each bottom-to-top.
        players: PlayerState keyed by PlayerId.
        current_player: Whose turn it is.
        winner: Set once and terminal until a new deal.
        selection: The selection cursor (see Selection).
        log: Append-only game log.
        seed: Seed of the deal; every refresh shuffle derives from it.
        refresh_count: Number of deck refreshes so far.
        move_count: Number of committed turn-actions so far.
        first_player_set: Whether the starting player has been fixed.
    """

    deck: tuple[Card, ...]
    center_piles: tuple[tuple[Card, ...], ...]
    players: dict[PlayerId, PlayerState]
    current_player: PlayerId = PlayerId.P1
    winner: Optional[PlayerId] = None
    selection: Selection = None
    log: tuple[str, ...] = ()
    seed: Seed = 0
    refresh_count: int = 0
    move_count: int = 0
    first_player_set: bool = False

    def player(self, player_id: PlayerId) -> PlayerState:
        return self.players[player_id]

    @property
    def current(self) -> PlayerState:
        """The PlayerState of the player whose turn it is."""
        return self.players[self.current_player]

    def pile_top(self, pile_index: int) -> Optional[Card]:
        """Top card of a pile, or None for an empty or unknown pile."""
        if not (0 <= pile_index < len(self.center_piles)):
            return None
        pile = self.center_piles[pile_index]
        return pile[-1] if pile else None

    def to_dict(self) -> dict:
        """Convert state to dictionary for checkpointing and sync."""
        return {
            "deck": [card.to_dict() for card in self.deck],
            "centerPiles": [[card.to_dict() for card in pile] for pile in self.center_piles],
            "players": {pid.value: p.to_dict() for pid, p in self.players.items()},
            "currentPlayer": self.current_player.value,
            "winner": self.winner.value if self.winner else None,
            "selection": selection_to_dict(self.selection),
            "log": list(self.log),
            "seed": self.seed,
            "refreshCount": self.refresh_count,
            "moveCount": self.move_count,
            "firstPlayerSet": self.first_player_set,
        }

    def to_json(self) -> str:
        """
        Canonical JSON form.

        Keys are sorted so two peers holding equal states produce
        byte-identical output.
        """
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: dict) -> "GameState":
        """Rebuild a state from its dictionary form."""
        winner = d.get("winner")
        return cls(
            deck=tuple(Card.from_dict(c) for c in d["deck"]),
            center_piles=tuple(
                tuple(Card.from_dict(c) for c in pile) for pile in d["centerPiles"]
            ),
            players={
                PlayerId(pid): PlayerState.from_dict(p) for pid, p in d["players"].items()
            },
            current_player=PlayerId(d.get("currentPlayer", "P1")),
            winner=PlayerId(winner) if winner else None,
            selection=selection_from_dict(d.get("selection")),
            log=tuple(d.get("log", [])),
            seed=d.get("seed", 0),
            refresh_count=d.get("refreshCount", 0),
            move_count=d.get("moveCount", 0),
            first_player_set=d.get("firstPlayerSet", False),
        )

    @classmethod
    def from_json(cls, raw: str) -> "GameState":
        return cls.from_dict(json.loads(raw))


def new_seed() -> int:
    """Pick a fresh deal seed."""
    return random.randint(0, 2**31 - 1)


def create_initial_state(seed: Optional[Seed] = None) -> GameState:
    """
    Deal a new game.

    Shuffles a full deck, deals 4 face-down cards to P1, then 4 to P2,
    then 4 singleton center piles. The remaining 42 cards form the deck.
    P1 moves first until SetFirstPlayer says otherwise.

    Args:
        seed: Deal seed. Peers that deal with the same seed get identical
              games. If None, a random seed is chosen.
    """
    if seed is None:
        seed = new_seed()

    deck = shuffle(create_deck(), seed)

    p1_face_down, rest = draw_cards(deck, FACE_DOWN_SLOTS)
    p2_face_down, rest = draw_cards(rest, FACE_DOWN_SLOTS)
    center_cards, rest = draw_cards(rest, FACE_DOWN_SLOTS)

    return GameState(
        deck=rest,
        center_piles=tuple((card,) for card in center_cards),
        players={
            PlayerId.P1: PlayerState(face_down=p1_face_down),
            PlayerId.P2: PlayerState(face_down=p2_face_down),
        },
        current_player=PlayerId.P1,
        log=(LOG_GAME_STARTED.format(player=PlayerId.P1.value),),
        seed=seed,
    )


def check_winner(state: GameState) -> Optional[PlayerId]:
    """Return the first player with no hand cards and no face-down cards."""
    for player_id in (PlayerId.P1, PlayerId.P2):
        player = state.players[player_id]
        if not player.hand and not player.has_face_down:
            return player_id
    return None


def total_cards(state: GameState) -> int:
    """Count every card on the table; always equals the deck size."""
    count = len(state.deck)
    count += sum(len(pile) for pile in state.center_piles)
    count += sum(p.card_count() for p in state.players.values())
    return count
