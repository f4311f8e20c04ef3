"""
Console front end for the quiz sessions.

    python main.py sheets
    python main.py play --sheets Animals [--practice]
    python main.py host --sheets Animals --difficulty medium --name Alice
    python main.py join CODE --name Bob --address 192.168.1.20:8000

While a game runs, answer by number or by typing the answer. Host commands:
``/start``, ``/quit``. Client commands: ``/ready``, ``/rematch``, ``/quit``.
"""
from typing import List
import argparse
import asyncio
import logging
import sys

import config
config.setup_logging()

from client_session import ClientSession
from events import EventChannel, GameEvent
from game_modes import PracticeGame, SinglePlayerGame
from host_lobby import HostLobby
from quiz_engine import ContentLoadError, QuestionsManager, QuizEngine
from transport import PeerConnectionError, WebSocketClientTransport, WebSocketHostTransport, get_local_ip

logger = logging.getLogger(__name__)


class ConsoleView:
    """Prints session events and remembers the answers currently on offer."""

    def __init__(self, events: EventChannel):
        self.answers: List[str] = []
        self.done = asyncio.Event()
        events.subscribe(GameEvent.QUESTION_NEW, self.on_question)
        events.subscribe(GameEvent.ANSWER_CHECKED, self.on_answer)
        events.subscribe(GameEvent.TIME_UP, lambda question_index: print("Time's up!"))
        events.subscribe(GameEvent.ROSTER_CHANGED, self.on_roster)
        events.subscribe(GameEvent.LOCAL_PLAYER_FINISHED, self.on_local_finished)
        events.subscribe(GameEvent.GAME_FINISHED, self.on_finished)
        events.subscribe(GameEvent.REMATCH_ACCEPTED, lambda: print("\nRematch! New game starting..."))
        events.subscribe(GameEvent.HOST_LOST, self.on_host_lost)
        events.subscribe(GameEvent.ERROR, lambda message, context="": print(f"! {message}"))

    def on_question(self, question_index, total_questions, question, answers):
        self.answers = answers
        print(f"\nQuestion {question_index + 1}/{total_questions}: {question}")
        for i, answer in enumerate(answers, start=1):
            print(f"  {i}. {answer}")

    def on_answer(self, is_correct, score_delta, correct_answer, **_):
        self.answers = []
        if is_correct:
            print(f"Correct! +{score_delta}")
        else:
            print(f"Wrong, the answer was: {correct_answer}")

    def on_roster(self, players):
        line = ", ".join(
            f"{p['name']}{' (host)' if p['isHost'] else ''}{' ✓' if p['isReady'] else ''} {p['score']}"
            for p in players.values()
        )
        print(f"[players] {line}")

    def on_local_finished(self, score, results):
        print(f"\nYou finished with {score} points. Waiting for the others...")

    def on_finished(self, mode, results, local_player_score=None):
        if mode != "multiplayer":
            print(f"\nGame over: {results['score']} points, "
                  f"{results['correct_answers']}/{results['total_questions']} correct")
            self.done.set()
            return
        print("\n=== Final results ===")
        for entry in results["players"]:
            print(f"{entry['rank']}. {entry['name']} - {entry['score']}")
        print(f"Winner: {results['winner'] or 'tie'}")
        if results["departed"]:
            print(f"Left early: {', '.join(results['departed'])}")

    def on_host_lost(self, reason):
        print(f"\nSession ended ({reason})")
        self.done.set()

    def resolve(self, line: str) -> str:
        if line.isdigit() and 1 <= int(line) <= len(self.answers):
            return self.answers[int(line) - 1]
        return line


async def read_lines():
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        yield line.strip()


async def run_play(args):
    events = EventChannel()
    view = ConsoleView(events)
    engine = QuizEngine(QuestionsManager())
    await engine.load_questions(args.sheets, args.difficulty)
    settings = {"selection": args.sheets, "difficulty": args.difficulty}
    game_cls = PracticeGame if args.practice else SinglePlayerGame
    game = game_cls(settings, engine, args.name, events)
    await game.start()
    async for line in read_lines():
        if line == "/quit" or view.done.is_set():
            break
        await game.submit_answer(view.resolve(line))
        if game.is_finished:
            break
    game.destroy()


async def run_host(args):
    events = EventChannel()
    view = ConsoleView(events)
    lobby = HostLobby(
        WebSocketHostTransport(port=args.port),
        player_name=args.name,
        events=events,
        host_plays=not args.spectate,
    )
    code = await lobby.start_hosting(args.sheets, args.difficulty)
    print(f"Hosting session {code} at {get_local_ip()}:{lobby.transport.port}")
    print("Type /start when everyone is ready.")
    try:
        async for line in read_lines():
            if line == "/quit":
                break
            if line == "/start":
                if not await lobby.start_game():
                    print("Can't start yet: every player must be connected and ready.")
            elif line:
                await lobby.submit_answer(view.resolve(line))
    finally:
        await lobby.leave()


async def run_join(args):
    events = EventChannel()
    view = ConsoleView(events)
    session = ClientSession(WebSocketClientTransport(args.address), player_name=args.name, events=events)
    await session.join(args.code.upper())
    print("Joined. Type /ready when you're ready to play.")
    try:
        async for line in read_lines():
            if line == "/quit" or view.done.is_set():
                break
            if line == "/ready":
                await session.set_ready()
            elif line == "/rematch":
                await session.request_rematch()
            elif line:
                await session.submit_answer(view.resolve(line))
    finally:
        await session.leave()


def list_sheets(args):
    for item in QuestionsManager().get_available_sheets():
        print(item["id"])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Quiz game - solo or multiplayer on the local network")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    subparsers.add_parser("sheets", help="List the selectable question sheets")

    def add_game_args(p):
        p.add_argument("--sheets", nargs="+", required=True, help="Sheet ids, e.g. Animals or Animals:Birds")
        p.add_argument("--difficulty", default=config.DEFAULT_DIFFICULTY, choices=config.VALID_DIFFICULTIES)
        p.add_argument("--name", default="Player", help="Your display name")

    play_p = subparsers.add_parser("play", help="Play alone")
    add_game_args(play_p)
    play_p.add_argument("--practice", action="store_true", help="No timer, no score")

    host_p = subparsers.add_parser("host", help="Host a multiplayer session")
    add_game_args(host_p)
    host_p.add_argument("--port", type=int, default=config.PORT, help="Port to listen on")
    host_p.add_argument("--spectate", action="store_true", help="Host without playing")

    join_p = subparsers.add_parser("join", help="Join a host")
    join_p.add_argument("code", help="Session code shown by the host")
    join_p.add_argument("--name", default="Player", help="Your display name")
    join_p.add_argument("--address", default=config.HOST_ADDRESS, help="Host address as ip:port")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.mode == "sheets":
        list_sheets(args)
        return 0
    runner = {"play": run_play, "host": run_host, "join": run_join}[args.mode]
    try:
        asyncio.run(runner(args))
    except (ContentLoadError, PeerConnectionError) as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
