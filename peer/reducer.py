"""
State machine for Beefy Four-Layer.

game_reducer() is a pure (state, action) -> state function. It owns turn
alternation, win detection, deck-exhaustion refresh and action legality.
It never raises for an inapplicable action: it returns the same state
object, and callers detect the no-op by comparing states.

Turn flow:
    select_hand_card / select_facedown_card / start_draw_gamble
        -> select_pile / play_draw_gamble   (resolve)
    draw_from_deck                          (take a card, pass the turn)

Both peers run this exact function over the same ordered actions, so
everything here must be deterministic. The only randomness, the refresh
shuffle, is seeded from the state itself.
"""

import logging
from dataclasses import replace
from typing import Optional

from actions import (
    CancelDrawGamble,
    ClearSelections,
    DrawFromDeck,
    GameAction,
    PlayDrawGamble,
    ResetGame,
    SelectFaceDownCard,
    SelectHandCard,
    SelectPile,
    SetFirstPlayer,
    StartDrawGamble,
    StartGame,
    SyncState,
)
from cards import Card, draw_one, refresh_center_piles
from constants import LOG_DREW, LOG_FIRST_PLAYER, LOG_REFRESH, LOG_TURN, LOG_WINS
from game import (
    DrawGamble,
    FaceDownSelection,
    GameState,
    HandSelection,
    PlayerState,
    check_winner,
    create_initial_state,
    opponent,
)
from rules import can_play, legal_piles, rank_display

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _add_log(state: GameState, *messages: str) -> GameState:
    return replace(state, log=state.log + messages)


def _pile_top_display(top: Optional[Card]) -> str:
    return rank_display(top.rank) if top else "?"


def _with_player(state: GameState, player: PlayerState) -> GameState:
    players = dict(state.players)
    players[state.current_player] = player
    return replace(state, players=players)


def _with_card_on_pile(state: GameState, pile_index: int, card: Card) -> GameState:
    piles = list(state.center_piles)
    piles[pile_index] = piles[pile_index] + (card,)
    return replace(state, center_piles=tuple(piles))


def _refresh_seed(state: GameState) -> str:
    return f"{state.seed}:refresh:{state.refresh_count}"


def _refresh_if_exhausted(state: GameState) -> tuple[GameState, bool]:
    """
    Reshuffle the piles into a new deck if a draw just emptied it.

    Returns:
        (state, refreshed)
    """
    if state.deck:
        return state, False

    new_deck, new_piles = refresh_center_piles(state.center_piles, _refresh_seed(state))
    logger.debug(
        f"Deck refreshed: {len(new_deck)} cards in new deck "
        f"(refresh #{state.refresh_count + 1})"
    )
    return replace(
        state,
        deck=new_deck,
        center_piles=new_piles,
        refresh_count=state.refresh_count + 1,
    ), True


def _pass_turn(state: GameState, refreshed: bool) -> GameState:
    """Hand the turn to the opponent, clearing the selection cursor."""
    next_player = opponent(state.current_player)
    state = replace(state, current_player=next_player, selection=None)
    if refreshed:
        state = _add_log(state, LOG_REFRESH)
    return _add_log(state, LOG_TURN.format(player=next_player.value))


def _finish_extra_turn(state: GameState) -> GameState:
    """
    End a successful play: the player keeps the turn unless they just won.
    """
    winner = check_winner(state)
    if winner:
        state = _add_log(state, LOG_WINS.format(player=winner.value))
        return replace(state, winner=winner)
    return state


def _committed(state: GameState) -> GameState:
    return replace(state, move_count=state.move_count + 1, selection=None)


def _valid_target_pile(state: GameState, pile_index: int) -> bool:
    return state.pile_top(pile_index) is not None


# -----------------------------------------------------------------------------
# Selection
# -----------------------------------------------------------------------------

def _select_hand_card(state: GameState, action: SelectHandCard) -> GameState:
    if state.winner or isinstance(state.selection, DrawGamble):
        return state

    hand = state.current.hand
    if not (0 <= action.index < len(hand)):
        return state

    # Card has no legal plays, cannot select
    if not legal_piles(hand[action.index], state.center_piles):
        return state

    return replace(state, selection=HandSelection(index=action.index))


def _select_face_down_card(state: GameState, action: SelectFaceDownCard) -> GameState:
    if state.winner or isinstance(state.selection, DrawGamble):
        return state

    face_down = state.current.face_down
    if not (0 <= action.index < len(face_down)) or face_down[action.index] is None:
        return state

    # No legality pre-check: face-down plays are gambles
    return replace(state, selection=FaceDownSelection(index=action.index))


def _clear_selections(state: GameState) -> GameState:
    if isinstance(state.selection, (HandSelection, FaceDownSelection)):
        return replace(state, selection=None)
    return state


# -----------------------------------------------------------------------------
# Pile resolution
# -----------------------------------------------------------------------------

def _play_from_hand(state: GameState, index: int, pile_index: int) -> GameState:
    player = state.current
    if not (0 <= index < len(player.hand)):
        return state

    card = player.hand[index]
    pile_top = state.pile_top(pile_index)
    if not can_play(card, pile_top):
        return state

    new_hand = player.hand[:index] + player.hand[index + 1:]
    new_state = _with_player(state, replace(player, hand=new_hand))
    new_state = _with_card_on_pile(new_state, pile_index, card)
    new_state = _committed(new_state)
    new_state = _add_log(
        new_state,
        f"{state.current_player.value} played {rank_display(card.rank)} "
        f"on pile {_pile_top_display(pile_top)} (success)",
    )
    return _finish_extra_turn(new_state)


def _play_from_face_down(state: GameState, index: int, pile_index: int) -> GameState:
    player = state.current
    if not (0 <= index < len(player.face_down)):
        return state

    card = player.face_down[index]
    if card is None:
        return state

    pile_top = state.pile_top(pile_index)
    who = state.current_player.value
    face_down = list(player.face_down)

    # Reveal the card
    if can_play(card, pile_top):
        face_down[index] = None
        new_state = _with_player(state, replace(player, face_down=tuple(face_down)))
        new_state = _with_card_on_pile(new_state, pile_index, card)
        new_state = _committed(new_state)
        new_state = _add_log(
            new_state,
            f"{who} flipped {rank_display(card.rank)} "
            f"on pile {_pile_top_display(pile_top)} (success)",
        )
        return _finish_extra_turn(new_state)

    # Failure: card goes to hand, replacement drawn into the slot
    replacement, new_deck = draw_one(state.deck)
    face_down[index] = replacement

    new_state = _with_player(
        state,
        replace(player, hand=player.hand + (card,), face_down=tuple(face_down)),
    )
    new_state = replace(new_state, deck=new_deck)
    refreshed = False
    if replacement is not None:
        new_state, refreshed = _refresh_if_exhausted(new_state)

    new_state = _committed(new_state)
    new_state = _add_log(
        new_state,
        f"{who} flipped {rank_display(card.rank)} "
        f"on pile {_pile_top_display(pile_top)} (fail), moved to hand",
    )
    return _pass_turn(new_state, refreshed)


def _select_pile(state: GameState, action: SelectPile) -> GameState:
    if state.winner:
        return state
    if not _valid_target_pile(state, action.pile_index):
        return state

    selection = state.selection
    if isinstance(selection, HandSelection):
        return _play_from_hand(state, selection.index, action.pile_index)
    if isinstance(selection, FaceDownSelection):
        return _play_from_face_down(state, selection.index, action.pile_index)
    return state


# -----------------------------------------------------------------------------
# Deck
# -----------------------------------------------------------------------------

def _draw_from_deck(state: GameState) -> GameState:
    if state.winner or state.selection is not None or not state.deck:
        return state

    drawn, new_deck = draw_one(state.deck)
    player = state.current

    new_state = _with_player(state, replace(player, hand=player.hand + (drawn,)))
    new_state = replace(new_state, deck=new_deck)
    new_state, refreshed = _refresh_if_exhausted(new_state)
    new_state = _committed(new_state)
    new_state = _add_log(new_state, LOG_DREW.format(player=state.current_player.value))
    return _pass_turn(new_state, refreshed)


def _start_draw_gamble(state: GameState) -> GameState:
    if state.winner or state.selection is not None or not state.deck:
        return state
    # The card stays on the deck until a pile is chosen
    return replace(state, selection=DrawGamble(card=state.deck[0]))


def _cancel_draw_gamble(state: GameState) -> GameState:
    if not isinstance(state.selection, DrawGamble):
        return state
    return replace(state, selection=None)


def _play_draw_gamble(state: GameState, action: PlayDrawGamble) -> GameState:
    if state.winner or not isinstance(state.selection, DrawGamble):
        return state
    if not _valid_target_pile(state, action.pile_index):
        return state

    card, new_deck = draw_one(state.deck)
    if card is None:
        return state

    player = state.current
    pile_top = state.pile_top(action.pile_index)
    success = can_play(card, pile_top)
    who = state.current_player.value

    if success:
        new_state = _with_card_on_pile(state, action.pile_index, card)
    else:
        new_state = _with_player(state, replace(player, hand=player.hand + (card,)))

    new_state = replace(new_state, deck=new_deck)
    new_state, refreshed = _refresh_if_exhausted(new_state)
    new_state = _committed(new_state)
    new_state = _add_log(
        new_state,
        f"{who} gambled {rank_display(card.rank)} from deck "
        f"on pile {_pile_top_display(pile_top)} ({'success' if success else 'fail'})",
    )

    if success:
        if refreshed:
            new_state = _add_log(new_state, LOG_REFRESH)
        return _finish_extra_turn(new_state)
    return _pass_turn(new_state, refreshed)


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

def _set_first_player(state: GameState, action: SetFirstPlayer) -> GameState:
    if state.winner or state.first_player_set or state.move_count > 0:
        return state
    return _add_log(
        replace(
            state,
            current_player=action.player,
            selection=None,
            first_player_set=True,
        ),
        LOG_FIRST_PLAYER.format(player=action.player.value),
    )


def game_reducer(state: GameState, action: GameAction) -> GameState:
    """
    Apply one action to the game state.

    Args:
        state: Current state (never modified).
        action: The action to apply.

    Returns:
        The next state, or `state` itself when the action does not apply.
    """
    if isinstance(action, (StartGame, ResetGame)):
        return create_initial_state(action.seed)
    if isinstance(action, SyncState):
        return action.state
    if isinstance(action, SelectHandCard):
        return _select_hand_card(state, action)
    if isinstance(action, SelectFaceDownCard):
        return _select_face_down_card(state, action)
    if isinstance(action, SelectPile):
        return _select_pile(state, action)
    if isinstance(action, ClearSelections):
        return _clear_selections(state)
    if isinstance(action, DrawFromDeck):
        return _draw_from_deck(state)
    if isinstance(action, StartDrawGamble):
        return _start_draw_gamble(state)
    if isinstance(action, CancelDrawGamble):
        return _cancel_draw_gamble(state)
    if isinstance(action, PlayDrawGamble):
        return _play_draw_gamble(state, action)
    if isinstance(action, SetFirstPlayer):
        return _set_first_player(state, action)
    return state


def apply_actions(state: GameState, actions: list[GameAction]) -> GameState:
    """Fold a list of actions through the reducer."""
    for action in actions:
        state = game_reducer(state, action)
    return state
