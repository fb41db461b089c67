"""
Beefy two-peer simulation runner.

Plays complete games between a host session and a guest session wired
through the in-memory room store and broadcast hub. Each peer is driven
by a random bot that only picks legal actions. After every game both
peers' states are compared byte for byte.

No Redis or PostgreSQL needed.

Usage:
    python simulate.py [num_games] [seed]

Examples:
    python simulate.py           # 10 games, random seed
    python simulate.py 100 42    # 100 reproducible games
"""

import asyncio
import random
import sys
from typing import Optional

from actions import (
    DrawFromDeck,
    GameAction,
    PlayDrawGamble,
    SelectFaceDownCard,
    SelectHandCard,
    SelectPile,
    StartDrawGamble,
)
from game import GameState, PlayerId
from room import RoomService
from rules import legal_piles
from session import GameOutcome, GameSession
from stores.memory import InMemoryBroadcastHub, InMemoryRoomStore

# Give up on a game after this many dispatched actions
MAX_ACTIONS_PER_GAME = 5000


class SimulationStats:
    """Track simulation statistics."""

    def __init__(self):
        self.games_played = 0
        self.stalled = 0
        self.desynced = 0
        self.wins: dict[str, int] = {p.value: 0 for p in PlayerId}
        self.total_moves = 0
        self.total_refreshes = 0
        self.longest_game = 0

    def record_game(self, state: GameState, in_sync: bool) -> None:
        self.games_played += 1
        if state.winner:
            self.wins[state.winner.value] += 1
        else:
            self.stalled += 1
        if not in_sync:
            self.desynced += 1
        self.total_moves += state.move_count
        self.total_refreshes += state.refresh_count
        self.longest_game = max(self.longest_game, state.move_count)

    def report(self) -> str:
        games = max(self.games_played, 1)
        lines = [
            "",
            "=" * 50,
            f"SIMULATION RESULTS ({self.games_played} games)",
            "=" * 50,
        ]
        for player, count in self.wins.items():
            lines.append(f"  {player} wins: {count} ({count / games * 100:.1f}%)")
        lines.append(f"  Stalled:    {self.stalled}")
        lines.append(f"  Avg moves:  {self.total_moves / games:.1f} (longest {self.longest_game})")
        lines.append(f"  Refreshes:  {self.total_refreshes} ({self.total_refreshes / games:.2f}/game)")
        lines.append(f"  Desynced:   {self.desynced}")
        return "\n".join(lines)


def choose_turn(state: GameState, rng: random.Random) -> list[GameAction]:
    """
    Pick one complete turn for the current player.

    Prefers a legal hand play; otherwise gambles a face-down card, gambles
    the top of the deck, or draws.
    """
    player = state.current
    pile_indices = [i for i in range(len(state.center_piles)) if state.pile_top(i)]

    hand_plays = [
        (i, p)
        for i, card in enumerate(player.hand)
        for p in legal_piles(card, state.center_piles)
    ]
    if hand_plays and rng.random() < 0.85:
        index, pile = rng.choice(hand_plays)
        return [SelectHandCard(index=index), SelectPile(pile_index=pile)]

    options: list[list[GameAction]] = []
    face_down = [i for i, c in enumerate(player.face_down) if c is not None]
    if face_down and pile_indices:
        options.append([
            SelectFaceDownCard(index=rng.choice(face_down)),
            SelectPile(pile_index=rng.choice(pile_indices)),
        ])
    if state.deck:
        options.append([DrawFromDeck()])
        if pile_indices:
            options.append([StartDrawGamble(), PlayDrawGamble(pile_index=rng.choice(pile_indices))])
    if hand_plays:
        index, pile = rng.choice(hand_plays)
        options.append([SelectHandCard(index=index), SelectPile(pile_index=pile)])

    return rng.choice(options) if options else []


async def run_game(rng: random.Random, seed: Optional[int] = None) -> tuple[GameState, bool]:
    """
    Play one game between two in-memory peers.

    Returns:
        (final host state, whether both peers ended identical)
    """
    store = InMemoryRoomStore()
    hub = InMemoryBroadcastHub()
    host_rooms = RoomService(store, "sim-host")
    guest_rooms = RoomService(store, "sim-guest")

    room = await host_rooms.create_room()
    await guest_rooms.join_room(room.code)
    room = await host_rooms.start_game(room.id, seed=seed)

    host = GameSession(room, "sim-host", host_rooms, hub.channel("sim-host"))
    guest = GameSession(room, "sim-guest", guest_rooms, hub.channel("sim-guest"))
    await host.start()
    await guest.start()

    actions = 0
    while host.outcome == GameOutcome.IN_PROGRESS and actions < MAX_ACTIONS_PER_GAME:
        current = host if host.is_my_turn else guest
        turn = choose_turn(current.state, rng)
        if not turn:
            break
        for action in turn:
            await current.dispatch(action)
            actions += 1

    await host.flush()
    await guest.flush()
    in_sync = host.state.to_json() == guest.state.to_json()

    await host.stop()
    await guest.stop()
    return host.state, in_sync


async def run_simulation(num_games: int = 10, seed: Optional[int] = None) -> SimulationStats:
    rng = random.Random(seed)
    stats = SimulationStats()

    print(f"Running {num_games} games...")
    for i in range(num_games):
        deal_seed = rng.randint(0, 2**31 - 1) if seed is not None else None
        state, in_sync = await run_game(rng, deal_seed)
        stats.record_game(state, in_sync)
        result = f"{state.winner.value} wins" if state.winner else "stalled"
        print(f"  Game {i + 1}: {result} after {state.move_count} moves"
              f"{'' if in_sync else ' (DESYNC)'}")

    print(stats.report())
    return stats


if __name__ == "__main__":
    num_games = int(sys.argv[1]) if len(sys.argv) > 1 else 10
    seed = int(sys.argv[2]) if len(sys.argv) > 2 else None
    asyncio.run(run_simulation(num_games, seed))
