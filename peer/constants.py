"""
Game constants for Beefy Four-Layer.

This module is the single source of truth for table geometry and the
room-code alphabet. Timing and backend settings live in config.py.

Table layout:
    - 54 cards: 13 ranks x 4 suits + 2 Jokers
    - 4 face-down slots per player
    - 4 face-up center piles
    - the remaining 42 cards form the draw deck
"""

# =============================================================================
# Table Geometry
# =============================================================================

NUM_SUITS: int = 4
NUM_RANKS: int = 13
NUM_JOKERS: int = 2
DECK_SIZE: int = NUM_SUITS * NUM_RANKS + NUM_JOKERS  # 54

FACE_DOWN_SLOTS: int = 4
NUM_CENTER_PILES: int = 4
NUM_PLAYERS: int = 2

# Cards left in the deck right after the deal
INITIAL_DECK_SIZE: int = DECK_SIZE - NUM_PLAYERS * FACE_DOWN_SLOTS - NUM_CENTER_PILES  # 42

# Rank distance that closes the A..K cycle
WRAP_DISTANCE: int = NUM_RANKS - 1  # 12


# =============================================================================
# Rooms
# =============================================================================

# No I or O, to avoid confusion with 1 and 0
ROOM_CODE_ALPHABET: str = "ABCDEFGHJKLMNPQRSTUVWXYZ"

# Redis channel prefix for action broadcasts
GAME_CHANNEL_PREFIX: str = "beefy:game:"

# Postgres NOTIFY channel for room record changes
ROOM_CHANGES_CHANNEL: str = "room_changes"


# =============================================================================
# Log Messages
# =============================================================================

LOG_GAME_STARTED = "Game started! {player}'s turn"
LOG_TURN = "{player}'s turn"
LOG_WINS = "{player} wins!"
LOG_REFRESH = "Deck refreshed (center piles reshuffled)"
LOG_DREW = "{player} drew a card from deck"
LOG_FIRST_PLAYER = "{player} goes first"
