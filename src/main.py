"""Command-line reader for StoryMap episodes."""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
from importlib import resources
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence, TextIO, cast

from storymap import (
    AtEnding,
    AtScene,
    AwaitingChoice,
    InMemorySceneContent,
    PlaybackResolver,
    ReaderSession,
    SceneNode,
    SessionStatus,
    StoryGraph,
    load_graph_from_file,
    load_graph_from_mapping,
    validate_graph,
)
from storymap.delivery import load_scene_content_from_file
from storymap.errors import MutationError, StoryError, UnresolvedBranchError
from storymap.observability import configure_runtime_logging
from storymap.playback import Scheduler, ThreadingScheduler


class ServerLaunchError(RuntimeError):
    """Raised when the embedded API server cannot be controlled."""


def _format_host_for_url(host: str) -> str:
    """Return a host suitable for inclusion in an HTTP URL."""

    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


class ApiServerLauncher:
    """Manage a background ``uvicorn`` process hosting the StoryMap API."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 8000,
        reload: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.reload = reload
        self._process: subprocess.Popen[bytes] | None = None
        self._env_overrides = dict(env) if env is not None else None

    def base_url(self) -> str:
        return f"http://{_format_host_for_url(self.host)}:{self.port}"

    def is_running(self) -> bool:
        process = self._process
        if process is None:
            return False
        if process.poll() is not None:
            self._process = None
            return False
        return True

    def start(self) -> None:
        """Launch the API server if it is not already running."""

        if self.is_running():
            raise ServerLaunchError("API server is already running.")

        command = [
            sys.executable,
            "-m",
            "uvicorn",
            "storymap.api.app:create_app",
            "--factory",
            "--host",
            self.host,
            "--port",
            str(self.port),
        ]
        if self.reload:
            command.append("--reload")

        env = os.environ.copy()
        if self._env_overrides is not None:
            env.update(self._env_overrides)

        try:
            process = subprocess.Popen(command, env=env)
        except OSError as exc:  # pragma: no cover - exercising OS failures is hard
            raise ServerLaunchError(f"Failed to launch API server: {exc}") from exc

        # Surface immediate launch failures such as a port already in use.
        time.sleep(0.2)
        if process.poll() is not None:
            exit_code = process.wait()
            raise ServerLaunchError(
                "API server exited immediately. "
                "Check the console output above for details. "
                f"(exit status {exit_code})"
            )

        self._process = process

    def stop(self) -> bool:
        """Terminate the API server if it is running."""

        process = self._process
        if process is None:
            return False

        self._process = None
        if process.poll() is not None:
            process.wait()
            return False

        try:
            process.terminate()
        except OSError as exc:  # pragma: no cover - difficult to simulate
            raise ServerLaunchError(f"Failed to stop API server: {exc}") from exc

        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=5)
        return True


class _LauncherSentinel:
    """Sentinel value distinguishing auto-creation from explicit ``None``."""


_LAUNCHER_DEFAULT = _LauncherSentinel()


class _InertCall:
    def cancel(self) -> None:
        return None


class DisabledScheduler:
    """Scheduler that never fires, used when timed choices are switched off."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> _InertCall:
        del delay_seconds, callback
        return _InertCall()


class TranscriptLogger:
    """Structured writer that records reading transcripts for debugging."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._turn = 0

    def log_reader_input(self, text: str) -> None:
        formatted = text if text else "(empty)"
        self._write(f"Reader input: {formatted}")
        self._stream.flush()

    def log_session(self, session: ReaderSession, narration: str) -> None:
        """Record the current node's narration, variables and choices."""

        self._turn += 1
        snapshot = session.snapshot()
        self._write("")
        self._write(f"=== Turn {self._turn} ===")
        self._write(f"State: {snapshot['state']['kind']} {snapshot['state'].get('nodeId')}")
        self._write("Narration:")
        for line in narration.splitlines() or ("",):
            self._write(f"  {line}")

        variables = snapshot["variables"]
        if variables:
            self._write("Variables:")
            for key, value in sorted(variables.items()):
                self._write(f"  {key}: {value}")
        else:
            self._write("Variables: (none)")

        choices = session.visible_choices()
        if choices:
            self._write("Choices:")
            for choice in choices:
                self._write(f"  [{choice.choice_id}] {choice.text}")
        else:
            self._write("Choices: (none)")
        self._stream.flush()

    def _write(self, text: str) -> None:
        self._stream.write(f"{text}\n")


def load_bundled_story() -> tuple[StoryGraph, InMemorySceneContent]:
    """Read the demo StoryMap and its scene content from the package data."""

    data = resources.files("storymap.data")
    with data.joinpath("sample_storymap.json").open("r", encoding="utf-8") as handle:
        graph = load_graph_from_mapping(json.load(handle))
    with data.joinpath("sample_scenes.json").open("r", encoding="utf-8") as handle:
        scenes = json.load(handle)
    return graph, InMemorySceneContent(scenes)


def _narration(session: ReaderSession, scenes: InMemorySceneContent) -> str:
    state = session.state
    node_id = getattr(state, "node_id", None)
    if isinstance(state, AwaitingChoice) and state.scene_node_id is not None:
        return ""
    if node_id is None:
        return ""
    node = session.graph.get_node(node_id)
    if isinstance(node, SceneNode) and node.scene_id:
        try:
            content = scenes.get_scene(node.scene_id)
        except KeyError:
            return node.title
        text = content.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
    if isinstance(state, AtEnding):
        ending = getattr(node, "ending_title", "") or node.title
        return f"The End: {ending}"
    return node.title


_HELP_TEXT = (
    "Commands:\n"
    "  <number> or <choice id>  Take one of the listed choices.\n"
    "  continue (or Enter)      Move on from the current scene.\n"
    "  wait                     Let the timer run out and take the default choice.\n"
    "  status (s)               Show the session status and variables.\n"
    "  server [status|stop]     Control the StoryMap API server.\n"
    "  help (?)                 Show this overview.\n"
    "  quit (q)                 Stop reading."
)


def run_cli(
    session: ReaderSession,
    scenes: InMemorySceneContent,
    *,
    transcript_logger: TranscriptLogger | None = None,
    server_launcher: (
        ApiServerLauncher | None | _LauncherSentinel
    ) = _LAUNCHER_DEFAULT,
) -> None:
    """Drive an interactive reading loop using ``input``/``print``."""

    if isinstance(server_launcher, _LauncherSentinel):
        launcher: ApiServerLauncher | None = ApiServerLauncher()
    else:
        launcher = cast(ApiServerLauncher | None, server_launcher)

    print("Welcome to the StoryMap reader!")
    print("Type 'help' for a command overview or 'quit' to stop reading.")
    print()

    def _render() -> None:
        narration = _narration(session, scenes)
        if narration:
            print(narration)
        state = session.state
        if isinstance(state, AwaitingChoice):
            for index, choice in enumerate(session.visible_choices(), start=1):
                print(f"  {index}. {choice.text} [{choice.choice_id}]")
            if state.deadline_seconds is not None:
                print(f"(You have {state.deadline_seconds:g} seconds to decide.)")
        elif isinstance(state, AtScene):
            print("(Press Enter to continue.)")
        if transcript_logger is not None:
            transcript_logger.log_session(session, narration)

    def _guard(operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except (MutationError, UnresolvedBranchError) as exc:
            print(f"The story is stuck: {exc}")
        except StoryError as exc:
            print(f"The story could not continue: {exc}")
        return None

    def _resolve_choice(text: str) -> str | None:
        choices = session.visible_choices()
        if text.isdigit():
            index = int(text)
            if 1 <= index <= len(choices):
                return choices[index - 1].choice_id
            return None
        for choice in choices:
            if choice.choice_id.lower() == text.lower():
                return choice.choice_id
        return None

    def _server_command(argument: str) -> None:
        if launcher is None:
            print("API server integration is unavailable for this session.")
            return
        if argument == "status":
            if launcher.is_running():
                print(f"API server status: running at {launcher.base_url()}")
            else:
                print("API server status: stopped")
            return
        if argument == "stop":
            if launcher.stop():
                print("API server stopped.")
            else:
                print("The API server is not currently running.")
            return
        try:
            launcher.start()
        except ServerLaunchError as exc:
            print(exc)
            return
        print(f"API server is running at {launcher.base_url()}")

    _render()
    try:
        while session.status not in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            shown_state = session.state
            try:
                raw = input("> ")
            except EOFError:
                print()
                break
            text = raw.strip()
            if transcript_logger is not None:
                transcript_logger.log_reader_input(text)
            lowered = text.lower()

            if lowered in {"quit", "q", "exit"}:
                break
            if lowered in {"help", "?"}:
                print(_HELP_TEXT)
                continue
            if lowered in {"status", "s"}:
                snapshot = session.snapshot()
                print(f"Status: {snapshot['status']}")
                for key, value in sorted(snapshot["variables"].items()):
                    print(f"  {key} = {value}")
                continue
            if lowered == "server" or lowered.startswith("server "):
                _server_command(lowered[len("server"):].strip())
                continue

            if session.state != shown_state:
                print("Time ran out and the default choice was taken.")
                _render()
                continue

            state = session.state
            if isinstance(state, AtScene):
                if lowered not in {"", "continue", "c"}:
                    print("Press Enter or type 'continue' to move on.")
                    continue
                if _guard(session.proceed) is not None:
                    _render()
                continue

            if isinstance(state, AwaitingChoice):
                if lowered == "wait":
                    outcome = _guard(lambda: session.expire(prompt_token=state.prompt_token))
                else:
                    choice_id = _resolve_choice(text)
                    if choice_id is None:
                        print("That is not one of the available choices.")
                        continue
                    outcome = _guard(
                        lambda: session.select(choice_id, prompt_token=state.prompt_token)
                    )
                if outcome is not None and not outcome.applied:
                    print("Too late! The default choice was already taken.")
                if outcome is not None:
                    _render()
                continue

        error = session.error
        if session.status is SessionStatus.FAILED and error is not None:
            print(f"Reading ended early ({error.code}).")
        print("Thanks for reading!")
    finally:
        session.close()
        if launcher is not None and launcher.is_running():
            launcher.stop()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="StoryMap reader")
    parser.add_argument(
        "--storymap",
        type=Path,
        help=(
            "Path to a StoryMap JSON file. Defaults to STORYMAP_PATH or the "
            "bundled demo story."
        ),
    )
    parser.add_argument(
        "--scenes",
        type=Path,
        help="Path to a JSON file with scene content keyed by scene id.",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Path to a transcript log capturing narration, variables and input.",
    )
    parser.add_argument(
        "--no-timers",
        action="store_true",
        help="Ignore choice time limits; use 'wait' to take the default choice.",
    )
    parser.add_argument(
        "--server-host",
        default="127.0.0.1",
        help="Host interface for the optional API server.",
    )
    parser.add_argument(
        "--server-port",
        type=int,
        default=8000,
        help="Port where the optional API server should listen.",
    )
    parser.add_argument(
        "--server-reload",
        action="store_true",
        help="Run the API server with auto-reload enabled.",
    )
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="Disable the server command for this session.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    """Read a StoryMap episode interactively."""

    args = _parse_args(argv)
    configure_runtime_logging()

    storymap_path: Path | None = args.storymap
    if storymap_path is None:
        env_path = os.getenv("STORYMAP_PATH")
        if env_path is not None and env_path.strip():
            storymap_path = Path(env_path.strip()).expanduser()

    if storymap_path is None:
        graph, scenes = load_bundled_story()
    else:
        try:
            graph = load_graph_from_file(storymap_path)
        except (OSError, ValueError) as exc:
            print(f"Failed to load StoryMap from '{storymap_path}': {exc}")
            raise SystemExit(2) from exc
        scenes = InMemorySceneContent()

    if args.scenes is not None:
        try:
            scenes = load_scene_content_from_file(args.scenes)
        except (OSError, ValueError) as exc:
            print(f"Failed to load scenes from '{args.scenes}': {exc}")
            raise SystemExit(2) from exc

    issues = validate_graph(graph)
    if issues:
        print("The StoryMap cannot be read:")
        for issue in issues:
            print(f"  - {issue.message}")
        raise SystemExit(2)

    scheduler: Scheduler = DisabledScheduler() if args.no_timers else ThreadingScheduler()
    session = ReaderSession(PlaybackResolver(graph), scheduler=scheduler)

    if args.no_server:
        launcher: ApiServerLauncher | None = None
    else:
        server_env: dict[str, str] | None = None
        if args.scenes is not None:
            server_env = {"STORYMAP_SCENE_CONTENT_PATH": str(args.scenes.resolve())}
        launcher = ApiServerLauncher(
            host=args.server_host,
            port=args.server_port,
            reload=args.server_reload,
            env=server_env,
        )

    transcript_logger: TranscriptLogger | None = None
    log_handle: TextIO | None = None
    try:
        if args.log_file is not None:
            args.log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = args.log_file.open("a", encoding="utf-8")
            transcript_logger = TranscriptLogger(log_handle)

        run_cli(
            session,
            scenes,
            transcript_logger=transcript_logger,
            server_launcher=launcher,
        )
    finally:
        if log_handle is not None:
            log_handle.close()


if __name__ == "__main__":
    main()
