"""
Command-line Beefy peer.

Usage:
    python main.py host          Create a room, wait for a guest, deal
    python main.py join CODE     Join a room by its code
    python main.py resume        Rejoin this client's unfinished game

During play, type one command per line:
    hand N     select hand card N
    slot N     select face-down slot N
    pile N     play the selected card on pile N
    draw       draw a card and pass the turn
    gamble     reveal the top of the deck
    play N     play the revealed deck card on pile N
    cancel     put the revealed deck card back
    clear      clear the selection
    quit       leave the game
"""

import asyncio
import logging
import sys
from typing import Awaitable, Callable, Optional

from actions import (
    CancelDrawGamble,
    ClearSelections,
    DrawFromDeck,
    GameAction,
    PlayDrawGamble,
    SelectFaceDownCard,
    SelectHandCard,
    SelectPile,
    StartDrawGamble,
)
from config import config
from game import DrawGamble, GameState, PlayerId
from identity import get_or_create_client_id
from logging_config import client_id_var, setup_logging
from models.room import RoomRecord, RoomStatus
from room import RoomError, RoomService
from rules import card_display
from services.recovery_service import RecoveryService
from session import GameOutcome, GameSession
from stores.base import ActionChannel
from stores.pubsub import create_action_channel
from stores.room_store import close_room_store, get_room_store

logger = logging.getLogger(__name__)


SIMPLE_COMMANDS: dict[str, Callable[[], GameAction]] = {
    "draw": DrawFromDeck,
    "gamble": StartDrawGamble,
    "cancel": CancelDrawGamble,
    "clear": ClearSelections,
}

INDEXED_COMMANDS: dict[str, Callable[[int], GameAction]] = {
    "hand": lambda i: SelectHandCard(index=i),
    "slot": lambda i: SelectFaceDownCard(index=i),
    "pile": lambda i: SelectPile(pile_index=i),
    "play": lambda i: PlayDrawGamble(pile_index=i),
}


def parse_command(line: str) -> Optional[GameAction]:
    """Turn one line of player input into an action, or None if it isn't one."""
    parts = line.strip().lower().split()
    if not parts:
        return None
    name, args = parts[0], parts[1:]

    if name in SIMPLE_COMMANDS and not args:
        return SIMPLE_COMMANDS[name]()
    if name in INDEXED_COMMANDS and len(args) == 1 and args[0].isdigit():
        return INDEXED_COMMANDS[name](int(args[0]))
    return None


def describe_state(state: GameState, me: PlayerId) -> str:
    """One-line summary of the table from one player's seat."""
    piles = " ".join(card_display(pile[-1]) if pile else "--" for pile in state.center_piles)
    mine = state.players[me]
    hand = " ".join(card_display(c) for c in mine.hand) or "-"
    slots = " ".join("##" if c else "--" for c in mine.face_down)

    line = (
        f"{state.current_player.value} to move | piles: {piles} | hand: {hand} | "
        f"face-down: {slots} | deck: {len(state.deck)}"
    )
    if isinstance(state.selection, DrawGamble):
        line += f" | revealed: {card_display(state.selection.card)}"
    if state.log:
        line += f"\n  {state.log[-1]}"
    return line


class Peer:
    """
    One client's connections and room operations.

    Args:
        client_id: This client's persistent identity.
        rooms: Room operations bound to the identity.
        channel: Broadcast channel for live actions.
    """

    def __init__(self, client_id: str, rooms: RoomService, channel: ActionChannel):
        self.client_id = client_id
        self.rooms = rooms
        self.channel = channel

    @classmethod
    async def connect(cls) -> "Peer":
        """Load the identity and connect to PostgreSQL and Redis."""
        client_id = get_or_create_client_id()
        client_id_var.set(client_id)

        store = await get_room_store(config.POSTGRES_URL)
        channel = await create_action_channel(config.REDIS_URL, client_id)
        peer = cls(client_id, RoomService(store, client_id), channel)

        removed = await peer.rooms.cleanup()
        logger.info(f"Peer {client_id[:8]} connected ({removed} stale rooms removed)")
        return peer

    async def wait_for(
        self,
        room_id: str,
        predicate: Callable[[RoomRecord], bool],
    ) -> RoomRecord:
        """Block until the room record satisfies the predicate."""
        found: asyncio.Future = asyncio.get_running_loop().create_future()

        async def on_change(record: RoomRecord) -> None:
            if predicate(record) and not found.done():
                found.set_result(record)

        await self.rooms.subscribe(room_id, on_change)
        try:
            current = await self.rooms.get_room(room_id)
            if current is not None and predicate(current):
                return current
            return await found
        finally:
            await self.rooms.unsubscribe(room_id, on_change)

    async def host(self) -> GameOutcome:
        room = await self.rooms.create_room()
        print(f"Room code: {room.code} (waiting for a guest)")
        await self.wait_for(room.id, lambda r: r.guest_id is not None)
        room = await self.rooms.start_game(room.id)
        return await self.play(room)

    async def join(self, code: str) -> GameOutcome:
        room = await self.rooms.join_room(code)
        print(f"Joined room {room.code} (waiting for the host to deal)")
        room = await self.wait_for(room.id, lambda r: r.status != RoomStatus.WAITING)
        return await self.play(room)

    async def resume(self) -> Optional[GameOutcome]:
        result = await RecoveryService(self.rooms).find_resumable_game()
        if result is None:
            print("No unfinished game")
            return None
        if not result.success:
            print(f"Cannot resume room {result.room.code}: {result.error}")
            return None
        print(f"Resuming room {result.room.code} at move {result.state.move_count}")
        return await self.play(result.room)

    async def play(
        self,
        room: RoomRecord,
        commands: Optional[Callable[[GameSession], Awaitable[None]]] = None,
    ) -> GameOutcome:
        """
        Run a session until the game ends or the command source runs out.

        Args:
            room: A dealt room this client belongs to.
            commands: Drives the local player; reads stdin by default.
        """
        session = GameSession(room, self.client_id, self.rooms, self.channel)
        ended = asyncio.Event()

        def on_state(state: GameState) -> None:
            print(describe_state(state, session.player))
            if session.outcome != GameOutcome.IN_PROGRESS:
                ended.set()

        session.add_listener(on_state)
        await session.start()
        on_state(session.state)

        driver = asyncio.create_task((commands or read_commands)(session))
        finished = asyncio.create_task(ended.wait())
        try:
            await asyncio.wait({driver, finished}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (driver, finished):
                task.cancel()
            await asyncio.gather(driver, finished, return_exceptions=True)
            await session.stop()

        if session.outcome == GameOutcome.WON:
            print(f"{session.winner.value} wins!")
        elif session.outcome == GameOutcome.INACTIVITY:
            print("Game ended: no move for too long")
        return session.outcome


async def read_commands(session: GameSession) -> None:
    """Feed stdin lines to the session until EOF or `quit`."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    while True:
        raw = await reader.readline()
        line = raw.decode().strip()
        if not raw or line == "quit":
            return
        action = parse_command(line)
        if action is None:
            print("Commands: hand N, slot N, pile N, draw, gamble, play N, cancel, clear, quit")
            continue
        if not await session.dispatch(action):
            print("Not possible right now")


async def run(command: str, args: list[str]) -> int:
    peer = await Peer.connect()
    try:
        if command == "host":
            await peer.host()
        elif command == "join":
            await peer.join(args[0])
        else:
            await peer.resume()
    except RoomError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await close_room_store()
        redis_client = getattr(peer.channel, "redis", None)
        if redis_client is not None:
            await redis_client.aclose()
    return 0


def main(argv: list[str]) -> int:
    setup_logging(
        level="DEBUG" if config.DEBUG else config.LOG_LEVEL,
        environment=config.ENVIRONMENT,
    )

    if len(argv) < 2 or argv[1] not in ("host", "join", "resume"):
        print(__doc__)
        return 1
    if argv[1] == "join" and len(argv) < 3:
        print("Usage: python main.py join CODE")
        return 1

    try:
        return asyncio.run(run(argv[1], argv[2:]))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main(sys.argv))
