"""
Game actions for Beefy Four-Layer.

Actions are the discrete intents fed to the reducer and shipped between
peers. The union is closed: every action type has exactly one dataclass
here, and action_from_dict() rejects anything else.

Actions fall into classes that the sync layer treats differently:
    - Turn actions commit state and need turn-authority validation.
    - UI hint actions only move the selection cursor; they are broadcast so
      the opponent can watch, but are not state-committing on their own.
    - Lifecycle actions (start/reset/first player/sync) stay local.
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union

from cards import Seed
from game import GameState, PlayerId


class InvalidActionPayload(ValueError):
    """Raised when an action dict cannot be decoded."""
    pass


class ActionType(str, Enum):
    """All action types."""

    # Lifecycle
    START_GAME = "start_game"
    RESET_GAME = "reset_game"
    SET_FIRST_PLAYER = "set_first_player"
    SYNC_STATE = "sync_state"

    # Selection (UI hints)
    SELECT_HAND_CARD = "select_hand_card"
    SELECT_FACEDOWN_CARD = "select_facedown_card"
    CLEAR_SELECTIONS = "clear_selections"
    START_DRAW_GAMBLE = "start_draw_gamble"
    CANCEL_DRAW_GAMBLE = "cancel_draw_gamble"

    # Turn actions
    SELECT_PILE = "select_pile"
    DRAW_FROM_DECK = "draw_from_deck"
    PLAY_DRAW_GAMBLE = "play_draw_gamble"


@dataclass(frozen=True)
class StartGame:
    seed: Optional[Seed] = None
    type: ClassVar[ActionType] = ActionType.START_GAME


@dataclass(frozen=True)
class ResetGame:
    seed: Optional[Seed] = None
    type: ClassVar[ActionType] = ActionType.RESET_GAME


@dataclass(frozen=True)
class SelectHandCard:
    index: int
    type: ClassVar[ActionType] = ActionType.SELECT_HAND_CARD


@dataclass(frozen=True)
class SelectFaceDownCard:
    index: int
    type: ClassVar[ActionType] = ActionType.SELECT_FACEDOWN_CARD


@dataclass(frozen=True)
class SelectPile:
    pile_index: int
    type: ClassVar[ActionType] = ActionType.SELECT_PILE


@dataclass(frozen=True)
class ClearSelections:
    type: ClassVar[ActionType] = ActionType.CLEAR_SELECTIONS


@dataclass(frozen=True)
class DrawFromDeck:
    type: ClassVar[ActionType] = ActionType.DRAW_FROM_DECK


@dataclass(frozen=True)
class StartDrawGamble:
    type: ClassVar[ActionType] = ActionType.START_DRAW_GAMBLE


@dataclass(frozen=True)
class CancelDrawGamble:
    type: ClassVar[ActionType] = ActionType.CANCEL_DRAW_GAMBLE


@dataclass(frozen=True)
class PlayDrawGamble:
    pile_index: int
    type: ClassVar[ActionType] = ActionType.PLAY_DRAW_GAMBLE


@dataclass(frozen=True)
class SetFirstPlayer:
    player: PlayerId
    type: ClassVar[ActionType] = ActionType.SET_FIRST_PLAYER


@dataclass(frozen=True)
class SyncState:
    state: GameState
    type: ClassVar[ActionType] = ActionType.SYNC_STATE


GameAction = Union[
    StartGame,
    ResetGame,
    SelectHandCard,
    SelectFaceDownCard,
    SelectPile,
    ClearSelections,
    DrawFromDeck,
    StartDrawGamble,
    CancelDrawGamble,
    PlayDrawGamble,
    SetFirstPlayer,
    SyncState,
]


# Actions that change the game state (require turn validation)
TURN_ACTIONS: frozenset[ActionType] = frozenset({
    ActionType.SELECT_PILE,
    ActionType.PLAY_DRAW_GAMBLE,
    ActionType.DRAW_FROM_DECK,
})

# UI feedback actions (opponent sees your selections)
UI_HINT_ACTIONS: frozenset[ActionType] = frozenset({
    ActionType.SELECT_HAND_CARD,
    ActionType.SELECT_FACEDOWN_CARD,
    ActionType.CLEAR_SELECTIONS,
    ActionType.START_DRAW_GAMBLE,
    ActionType.CANCEL_DRAW_GAMBLE,
})

# Actions that should be broadcast to the opponent
BROADCAST_ACTIONS: frozenset[ActionType] = TURN_ACTIONS | UI_HINT_ACTIONS


def is_turn_action(action: GameAction) -> bool:
    return action.type in TURN_ACTIONS


def is_broadcast_action(action: GameAction) -> bool:
    return action.type in BROADCAST_ACTIONS


def action_to_dict(action: GameAction) -> dict:
    """Serialize an action for the wire."""
    data: dict = {"type": action.type.value}
    if isinstance(action, (StartGame, ResetGame)):
        data["seed"] = action.seed
    elif isinstance(action, (SelectHandCard, SelectFaceDownCard)):
        data["index"] = action.index
    elif isinstance(action, (SelectPile, PlayDrawGamble)):
        data["pileIndex"] = action.pile_index
    elif isinstance(action, SetFirstPlayer):
        data["player"] = action.player.value
    elif isinstance(action, SyncState):
        data["state"] = action.state.to_dict()
    return data


def _int_field(d: dict, key: str) -> int:
    value = d.get(key)
    # bool is an int subclass; an index of True is a malformed payload
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidActionPayload(f"Field {key!r} must be an integer, got {value!r}")
    return value


def action_from_dict(d: dict) -> GameAction:
    """
    Deserialize an action received from the wire.

    Raises:
        InvalidActionPayload: If the type is unknown or a field is malformed.
    """
    if not isinstance(d, dict):
        raise InvalidActionPayload(f"Action must be an object, got {type(d).__name__}")

    try:
        action_type = ActionType(d.get("type"))
    except ValueError:
        raise InvalidActionPayload(f"Unknown action type: {d.get('type')!r}")

    if action_type == ActionType.START_GAME:
        return StartGame(seed=d.get("seed"))
    if action_type == ActionType.RESET_GAME:
        return ResetGame(seed=d.get("seed"))
    if action_type == ActionType.SELECT_HAND_CARD:
        return SelectHandCard(index=_int_field(d, "index"))
    if action_type == ActionType.SELECT_FACEDOWN_CARD:
        return SelectFaceDownCard(index=_int_field(d, "index"))
    if action_type == ActionType.SELECT_PILE:
        return SelectPile(pile_index=_int_field(d, "pileIndex"))
    if action_type == ActionType.PLAY_DRAW_GAMBLE:
        return PlayDrawGamble(pile_index=_int_field(d, "pileIndex"))
    if action_type == ActionType.CLEAR_SELECTIONS:
        return ClearSelections()
    if action_type == ActionType.DRAW_FROM_DECK:
        return DrawFromDeck()
    if action_type == ActionType.START_DRAW_GAMBLE:
        return StartDrawGamble()
    if action_type == ActionType.CANCEL_DRAW_GAMBLE:
        return CancelDrawGamble()
    if action_type == ActionType.SET_FIRST_PLAYER:
        try:
            return SetFirstPlayer(player=PlayerId(d.get("player")))
        except ValueError:
            raise InvalidActionPayload(f"Unknown player: {d.get('player')!r}")

    # SYNC_STATE
    try:
        return SyncState(state=GameState.from_dict(d["state"]))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise InvalidActionPayload(f"Malformed sync state: {e}")
