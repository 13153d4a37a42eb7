"""CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Optional

from .backend import BackendClient
from .config import SCORING_FAILURE_POLICIES, Config, apply_env, load_config, save_config
from .controller import SessionController
from .errors import PracticeError
from .gateway import ScoringGateway
from .logging_utils import setup_logging
from .models import SessionResult
from .player import AudioPlayer
from .recorder import Recorder, list_input_devices
from .tracking import PracticeTracker

DEFAULT_CONFIG = "cclpractice_config.yml"

HELP = """Commands:
  p  play reference        a  pause reference
  s  stop recording        l  listen to your recording
  u  submit                r  repeat segment
  n  next segment          b  previous segment
  f  finish / get results  q  quit
"""


def _load(path: str) -> Config:
    if os.path.exists(path):
        return load_config(path)
    return apply_env(Config())


def print_notification(level: str, title: str, message: str) -> None:
    marker = {"error": "!", "success": "+"}.get(level, "-")
    print(f"[{marker}] {title}: {message}")


def print_result(result: SessionResult) -> None:
    score = "n/a" if result.score is None else f"{result.score:g}"
    line = f"Score: {score}"
    if result.degraded:
        line += " (partial)"
    print(line)
    if result.overall_feedback:
        print(result.overall_feedback)


def build_controller(config: Config, backend: BackendClient, on_complete=None) -> SessionController:
    player = AudioPlayer(
        backend=backend,
        expiry_seconds=config.backend.signed_url_expiry_seconds,
        device_name=config.audio.output_device,
    )
    recorder = Recorder(
        sample_rate_hz=config.audio.sample_rate_hz,
        chunk_interval_ms=config.audio.chunk_interval_ms,
        device_name=config.audio.input_device,
        echo_cancellation=config.audio.echo_cancellation,
        noise_suppression=config.audio.noise_suppression,
    )
    return SessionController(
        backend=backend,
        gateway=ScoringGateway(backend),
        player=player,
        recorder=recorder,
        user_id=config.user_id or "",
        language=config.language,
        policy=config.session,
        notify=print_notification,
        on_complete=on_complete,
    )


def _status_line(controller: SessionController) -> str:
    s = controller.session
    segment = s.current
    speaker = f"{segment.speaker}: " if segment.speaker else ""
    return (
        f"[{s.index + 1}/{len(s)} {s.progress:.0%}] {controller.status.value} | "
        f"{speaker}{segment.text_content}"
    )


def run_practice(controller: SessionController, dialogue_id: str) -> int:
    dialogue = controller.backend.get_dialogue(dialogue_id)
    if not controller.start(dialogue):
        return 1
    print(f"{dialogue.title} ({len(controller.session)} segments)")
    print(HELP)
    actions = {
        "p": controller.play_current,
        "a": controller.pause_current,
        "s": controller.stop_recording,
        "l": controller.play_recording,
        "u": controller.submit_current,
        "r": controller.repeat_current,
        "n": controller.next,
        "b": controller.previous,
    }
    try:
        while not controller.complete:
            print(_status_line(controller))
            try:
                choice = input("> ").strip().lower()
            except EOFError:
                break
            if choice == "q":
                break
            if choice == "f":
                controller.finish()
                continue
            action = actions.get(choice)
            if action is None:
                print(HELP)
                continue
            action()
    except KeyboardInterrupt:
        pass
    finally:
        controller.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(prog="cclpractice")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="Config file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to console.")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")

    config_cmd = sub.add_parser("config")
    config_cmd.add_argument("--url", help="Backend URL.")
    config_cmd.add_argument("--user-id", help="Student user id.")
    config_cmd.add_argument("--language", help="Language name, e.g. Punjabi.")

    dialogues_cmd = sub.add_parser("dialogues")
    dialogues_cmd.add_argument("--language-id", help="Override configured language id.")

    practice_cmd = sub.add_parser("practice")
    practice_cmd.add_argument("dialogue_id", help="Dialogue to practise.")
    mode = practice_cmd.add_mutually_exclusive_group()
    mode.add_argument(
        "--strict",
        action="store_true",
        help="Next stays locked until the current segment is scored.",
    )
    mode.add_argument(
        "--relaxed",
        action="store_true",
        help="Submit advances immediately; results load after the last segment.",
    )
    practice_cmd.add_argument(
        "--on-scoring-failure",
        choices=SCORING_FAILURE_POLICIES,
        help="What to do when a segment fails to score.",
    )

    sub.add_parser("results")

    args = parser.parse_args()

    try:
        config = _load(args.config)
    except PracticeError as exc:
        print(f"{exc.title}: {exc}")
        return 2
    logger, _log_path = setup_logging(
        config.log_dir,
        level=logging.DEBUG if args.verbose else logging.INFO,
        console=args.verbose,
    )

    if args.command == "devices":
        try:
            devices = list_input_devices()
        except PracticeError as exc:
            print(f"{exc.title}: {exc}")
            return 1
        if args.match:
            devices = [
                d for d in devices if args.match.lower() in d.get("name", "").lower()
            ]
        for device in devices:
            name = device.get("name", "Unknown")
            index = device.get("index", "?")
            channels = device.get("max_input_channels", 0)
            print(f"[{index}] {name} (inputs: {channels})")
        return 0

    if args.command == "config":
        if args.url:
            config.backend.url = args.url
        if args.user_id:
            config.user_id = args.user_id
        if args.language:
            config.language = args.language
        save_config(args.config, config)
        print(f"Wrote {args.config}")
        return 0

    if args.command not in ("dialogues", "practice", "results"):
        parser.print_help()
        return 0

    try:
        backend = BackendClient(config.backend)
    except PracticeError as exc:
        print(f"{exc.title}: {exc}")
        return 2

    try:
        if args.command == "dialogues":
            language_id: Optional[str] = args.language_id or config.language_id
            for dialogue in backend.list_dialogues(language_id):
                domain = dialogue.domain.title if dialogue.domain else "-"
                tier = dialogue.difficulty or "-"
                duration = dialogue.duration or "?"
                print(f"{dialogue.id}  {dialogue.title}  [{domain}, {tier}, {duration}]")
            return 0

        if args.command == "results":
            if not config.user_id:
                print("Set user_id in the config first.")
                return 2
            for result in ScoringGateway(backend).fetch_exam_results(config.user_id):
                print(f"{result.created_at or '?'}  {result.dialogue_id or '?'}")
                print_result(result)
            return 0

        if not config.user_id:
            print("Set user_id in the config first.")
            return 2
        if args.strict:
            config.session.strict_advance = True
            config.session.auto_finish = False
        elif args.relaxed:
            config.session.strict_advance = False
            config.session.auto_finish = True
        if args.on_scoring_failure:
            config.session.on_scoring_failure = args.on_scoring_failure

        controller = build_controller(config, backend, on_complete=print_result)
        with PracticeTracker(backend, config.user_id):
            return run_practice(controller, args.dialogue_id)
    except PracticeError as exc:
        logger.exception("Command %s failed", args.command)
        print(f"{exc.title}: {exc}")
        return 1
    finally:
        backend.close()


if __name__ == "__main__":
    raise SystemExit(main())
