from __future__ import annotations

import argparse
import codecs
import json
import logging
import os
import select
import sys
import termios
import tty
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv
from platformdirs import user_config_dir
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.markup import escape
from rich.text import Text

__version__ = "0.1.0"

APP_NAME = "bk"
STORE_FILENAME = "bookmarks.json"
TTY_PATH = "/dev/tty"
DEFAULT_LOG_LEVEL = "WARNING"
COMMANDS = ("add", "help", "shell")

FILTER_STYLE = "bold color(214)"
DIM_STYLE = "color(245)"
CURSOR_STYLE = "reverse"
STATUS_STYLE = "bold red"
VIEW_CHROME_ROWS = 9
ESCAPE_TIMEOUT_SECONDS = 0.05

EMPTY_MESSAGE = "No bookmarks yet. Use 'bk add' to add the current directory."
HELP_LINE = "↑/↓ navigate • enter select • e rename • d delete • esc clear • q quit"
ESCAPE_SEQUENCES = {
    "[A": "UP",
    "[B": "DOWN",
    "OA": "UP",
    "OB": "DOWN",
}

USAGE_TEXT = """bk - directory bookmarks

Usage:
  bk        Open bookmark selector
  bk add    Add current directory to bookmarks
  bk shell  Print the shell function that cds into the selection

Options:
  --store PATH       Bookmark file (default: $BK_STORE or the user config dir)
  --log-level LEVEL  Diagnostics level on stderr (default: $BK_LOG_LEVEL or WARNING)

Keys:
  ↑/↓, j/k  Navigate
  Enter     Go to selected directory
  e         Edit bookmark name
  d         Delete bookmark
  Esc       Clear filter, or quit
  q         Quit
  Anything else filters by name or path."""

SHELL_FUNCTION = """bk() {
  if [[ $# -gt 0 ]]; then
    command bk "$@"
  else
    local dir
    dir=$(command bk)
    if [[ -n "$dir" && -d "$dir" ]]; then
      cd "$dir"
    fi
  fi
}
"""

logger = logging.getLogger(APP_NAME)


class StoreError(Exception):
    """The bookmark file could not be written."""


class TerminalError(Exception):
    """The controlling terminal is unavailable."""


@dataclass
class Bookmark:
    path: str
    name: str = ""
    count: int = 0

    def display_name(self) -> str:
        return self.name or self.path

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"path": self.path}
        if self.name:
            out["name"] = self.name
        out["count"] = self.count
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> Bookmark:
        if not isinstance(raw, dict):
            raise ValueError("bookmark entry must be an object")
        path = raw.get("path")
        if not isinstance(path, str) or not path:
            raise ValueError("bookmark entry needs a non-empty string 'path'")
        name = raw.get("name") or ""
        if not isinstance(name, str):
            raise ValueError(f"bookmark name for {path} must be a string")
        count = raw.get("count") or 0
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError(f"bookmark count for {path} must be a non-negative integer")
        return cls(path=path, name=name, count=count)


@dataclass
class AppConfig:
    command: str
    store_path: Path
    log_level: str


@dataclass
class SelectorState:
    bookmarks: list[Bookmark]
    filtered: list[int]
    cursor: int = 0
    filter: str = ""
    editing: bool = False
    edit_buffer: str = ""
    result: str | None = None
    done: bool = False
    status_message: str = ""


Saver = Callable[[list[Bookmark]], None]


def default_store_path() -> Path:
    override = os.getenv("BK_STORE", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(user_config_dir(APP_NAME)) / STORE_FILENAME


def load_bookmarks(store_path: Path) -> list[Bookmark]:
    """Read the bookmark file.

    A missing file means no bookmarks yet. An unreadable or malformed file is
    discarded as a whole and also yields an empty list.
    """
    try:
        raw = json.loads(store_path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("top level must be an object")
        entries = raw.get("bookmarks") or []
        if not isinstance(entries, list):
            raise ValueError("'bookmarks' must be a list")
        return [Bookmark.from_dict(entry) for entry in entries]
    except FileNotFoundError:
        return []
    except (OSError, ValueError, RecursionError) as exc:
        logger.warning("Ignoring unreadable bookmark file %s: %s", store_path, exc)
        return []


def save_bookmarks(store_path: Path, bookmarks: list[Bookmark]) -> None:
    payload = {"bookmarks": [bookmark.to_dict() for bookmark in bookmarks]}
    try:
        store_path.parent.mkdir(parents=True, exist_ok=True)
        store_path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
    except OSError as exc:
        raise StoreError(f"could not write {store_path}: {exc}") from exc
    logger.debug("Saved %d bookmarks to %s", len(bookmarks), store_path)


def find_bookmark(bookmarks: list[Bookmark], path: str) -> Bookmark | None:
    for bookmark in bookmarks:
        if bookmark.path == path:
            return bookmark
    return None


def sort_by_usage(bookmarks: list[Bookmark]) -> list[Bookmark]:
    # sorted() is stable, so equal counts keep their file order.
    return sorted(bookmarks, key=lambda bookmark: -bookmark.count)


def filter_indices(bookmarks: list[Bookmark], query: str) -> list[int]:
    if not query:
        return list(range(len(bookmarks)))
    lowered = query.lower()
    return [
        index
        for index, bookmark in enumerate(bookmarks)
        if lowered in bookmark.name.lower() or lowered in bookmark.path.lower()
    ]


def clamp_cursor(cursor: int, filtered: list[int]) -> int:
    if not filtered:
        return 0
    if cursor < 0:
        return 0
    if cursor >= len(filtered):
        return len(filtered) - 1
    return cursor


def make_initial_state(bookmarks: list[Bookmark]) -> SelectorState:
    ordered = sort_by_usage(bookmarks)
    return SelectorState(bookmarks=ordered, filtered=filter_indices(ordered, ""))


def selected_bookmark(state: SelectorState) -> Bookmark | None:
    if not state.filtered:
        return None
    return state.bookmarks[state.filtered[state.cursor]]


def set_filter(state: SelectorState, query: str) -> None:
    state.filter = query
    state.filtered = filter_indices(state.bookmarks, query)
    state.cursor = 0


def persist(state: SelectorState, save: Saver) -> bool:
    try:
        save(state.bookmarks)
    except StoreError as exc:
        logger.error("Failed to save bookmarks: %s", exc)
        state.status_message = f"Save failed: {exc}"
        return False
    state.status_message = ""
    return True


def is_printable_key(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def move_cursor(state: SelectorState, delta: int) -> None:
    state.cursor = clamp_cursor(state.cursor + delta, state.filtered)


def delete_selected(state: SelectorState, save: Saver) -> None:
    if not state.filtered:
        return
    removed = state.bookmarks.pop(state.filtered[state.cursor])
    logger.info("Deleted bookmark %s", removed.path)
    persist(state, save)
    # Indices after the removed one shifted; rebuild instead of patching.
    state.filtered = filter_indices(state.bookmarks, state.filter)
    if state.cursor >= len(state.filtered) and state.cursor > 0:
        state.cursor -= 1


def handle_edit_key(state: SelectorState, key: str, save: Saver) -> SelectorState:
    if key == "ENTER":
        bookmark = selected_bookmark(state)
        if bookmark is not None:
            bookmark.name = state.edit_buffer
            persist(state, save)
        state.editing = False
        state.edit_buffer = ""
    elif key == "ESC":
        state.editing = False
        state.edit_buffer = ""
    elif key == "BACKSPACE":
        state.edit_buffer = state.edit_buffer[:-1]
    elif is_printable_key(key):
        state.edit_buffer += key
    return state


def handle_key(state: SelectorState, key: str, save: Saver) -> SelectorState:
    """Apply one decoded key to the selector state and return it.

    ``save`` receives the full bookmark list after every mutation and raises
    ``StoreError`` on failure; failures are logged and shown in the status
    line without undoing the in-memory change.
    """
    if state.done:
        return state
    if state.editing:
        return handle_edit_key(state, key, save)

    if key == "QUIT":
        state.done = True
        return state
    if key == "ESC":
        if state.filter:
            set_filter(state, "")
        else:
            state.done = True
        return state
    if key == "UP":
        move_cursor(state, -1)
        return state
    if key == "DOWN":
        move_cursor(state, 1)
        return state
    if key == "ENTER":
        bookmark = selected_bookmark(state)
        if bookmark is not None:
            bookmark.count += 1
            persist(state, save)
            state.result = bookmark.path
            state.done = True
        return state
    if key == "BACKSPACE":
        if state.filter:
            set_filter(state, state.filter[:-1])
        return state
    if not is_printable_key(key):
        return state

    if not state.filter:
        if key == "q":
            state.done = True
            return state
        if key == "e":
            bookmark = selected_bookmark(state)
            if bookmark is not None:
                state.editing = True
                state.edit_buffer = bookmark.name
            return state
        if key == "d":
            delete_selected(state, save)
            return state
        if key == "j":
            move_cursor(state, 1)
            return state
        if key == "k":
            move_cursor(state, -1)
            return state

    set_filter(state, state.filter + key)
    return state


def visible_window(cursor: int, total: int, max_rows: int | None) -> tuple[int, int]:
    if max_rows is None or total <= max_rows:
        return 0, total
    rows = max(max_rows, 1)
    start = min(max(cursor - rows // 2, 0), total - rows)
    return start, start + rows


def build_view(state: SelectorState, max_rows: int | None = None) -> Text:
    view = Text()
    if not state.bookmarks:
        view.append(f"\n  {EMPTY_MESSAGE}\n\n  Press q to quit.\n")
        if state.status_message:
            view.append(f"\n  {state.status_message}\n", style=STATUS_STYLE)
        return view

    view.append("\n")
    if state.filter:
        view.append("  ")
        view.append("filter:", style=FILTER_STYLE)
        view.append(f" {state.filter}\n\n")

    if state.editing:
        view.append(f"  Rename bookmark: {state.edit_buffer}\n")
        view.append("  (Enter to save, Esc to cancel)\n\n")

    if not state.filtered:
        view.append("  No matches", style=DIM_STYLE)
        view.append("\n")
    start, stop = visible_window(state.cursor, len(state.filtered), max_rows)
    for row in range(start, stop):
        bookmark = state.bookmarks[state.filtered[row]]
        if row == state.cursor:
            view.append("  > ")
            view.append(bookmark.display_name(), style=CURSOR_STYLE)
        else:
            view.append(f"    {bookmark.display_name()}")
        if bookmark.name:
            view.append(f" {bookmark.path}", style=DIM_STYLE)
        view.append("\n")

    if state.status_message:
        view.append(f"\n  {state.status_message}\n", style=STATUS_STYLE)
    view.append(f"\n  {HELP_LINE}\n")
    return view


def translate_key(key: str) -> str:
    if key in {"\r", "\n"}:
        return "ENTER"
    if key == "\t":
        return "TAB"
    if key in {"\x7f", "\b"}:
        return "BACKSPACE"
    if key == "\x03":
        return "QUIT"
    return key


def decode_escape(sequence: str) -> str:
    if not sequence:
        return "ESC"
    return ESCAPE_SEQUENCES.get(sequence, "")


def read_key(fd: int) -> str:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")
    key = ""
    while not key:
        data = os.read(fd, 1)
        if not data:
            raise TerminalError("terminal closed")
        key = decoder.decode(data)

    if key != "\x1b":
        return translate_key(key)

    sequence = ""
    while select.select([fd], [], [], ESCAPE_TIMEOUT_SECONDS)[0]:
        chunk = os.read(fd, 1).decode("utf-8", errors="ignore")
        if not chunk:
            break
        sequence += chunk
        if len(sequence) > 1 and (sequence[-1].isalpha() or sequence[-1] == "~"):
            break
        if len(sequence) >= 6:
            break
    return decode_escape(sequence)


def visible_rows(console: Console, fd: int) -> int:
    try:
        console.size = os.get_terminal_size(fd)
    except OSError:
        pass
    return max(1, console.size.height - VIEW_CHROME_ROWS)


def run_selector(config: AppConfig) -> str | None:
    state = make_initial_state(load_bookmarks(config.store_path))
    save = partial(save_bookmarks, config.store_path)

    try:
        fd = os.open(TTY_PATH, os.O_RDWR)
    except OSError as exc:
        raise TerminalError(f"Error opening tty: {exc}") from exc
    try:
        old_settings = termios.tcgetattr(fd)
    except termios.error as exc:
        os.close(fd)
        raise TerminalError(f"Error reading tty settings: {exc}") from exc

    try:
        with os.fdopen(os.dup(fd), "w", encoding="utf-8") as tty_out:
            console = Console(file=tty_out, force_terminal=True, highlight=False)
            try:
                tty.setcbreak(fd)
            except termios.error as exc:
                raise TerminalError(f"Error switching tty to cbreak mode: {exc}") from exc
            with Live(
                build_view(state, visible_rows(console, fd)),
                console=console,
                screen=True,
                auto_refresh=False,
                vertical_overflow="crop",
            ) as live:
                while not state.done:
                    try:
                        key = read_key(fd)
                    except KeyboardInterrupt:
                        key = "QUIT"
                    handle_key(state, key, save)
                    live.update(build_view(state, visible_rows(console, fd)), refresh=True)
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        finally:
            os.close(fd)
    return state.result


def add_bookmark(
    store_path: Path,
    cwd: str,
    prompt: Callable[[str], str],
    console: Console,
    err_console: Console | None = None,
) -> int:
    bookmarks = load_bookmarks(store_path)
    if find_bookmark(bookmarks, cwd) is not None:
        console.print(f"Bookmark already exists: {escape(cwd)}", soft_wrap=True)
        return 0

    console.print(f"Adding: {escape(cwd)}", soft_wrap=True)
    try:
        alias = prompt("Alias (enter to skip): ").strip()
    except EOFError:
        alias = ""

    bookmarks.append(Bookmark(path=cwd, name=alias))
    try:
        save_bookmarks(store_path, bookmarks)
    except StoreError as exc:
        logger.error("Error saving bookmarks: %s", exc)
        err_console = err_console or Console(stderr=True, highlight=False)
        err_console.print(f"[red]Error saving bookmarks:[/red] {escape(str(exc))}")
        return 1

    if alias:
        console.print(f"Added bookmark: {escape(alias)} ({escape(cwd)})", soft_wrap=True)
    else:
        console.print(f"Added bookmark: {escape(cwd)}", soft_wrap=True)
    return 0


def configure_logging(level: str, console: Console) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.addHandler(
        RichHandler(console=console, show_time=False, show_path=False, markup=False)
    )
    logger.setLevel(level)
    logger.propagate = False


def parse_args(argv: list[str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Directory bookmarks with an interactive selector.",
        add_help=False,
    )
    parser.add_argument("command", nargs="?")
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("--store", default="")
    parser.add_argument("--log-level", default=os.getenv("BK_LOG_LEVEL", DEFAULT_LOG_LEVEL))

    args = parser.parse_args(argv)

    if args.command is not None and args.command not in COMMANDS:
        valid = ", ".join(COMMANDS)
        raise ValueError(f"Unknown command '{args.command}'. Valid commands: {valid}")

    log_level = args.log_level.strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError(f"Unknown log level '{args.log_level}'")

    command = args.command or "select"
    if args.help:
        command = "help"
    store_path = Path(args.store).expanduser() if args.store else default_store_path()

    return AppConfig(command=command, store_path=store_path, log_level=log_level)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console(highlight=False)
    err_console = Console(stderr=True, highlight=False)
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except ValueError as exc:
        err_console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        return 2
    configure_logging(config.log_level, err_console)

    if config.command == "help":
        sys.stdout.write(USAGE_TEXT + "\n")
        return 0
    if config.command == "shell":
        sys.stdout.write(SHELL_FUNCTION)
        return 0
    if config.command == "add":
        try:
            cwd = os.getcwd()
        except OSError as exc:
            err_console.print(f"[red]Error getting current directory:[/red] {escape(str(exc))}")
            return 1
        return add_bookmark(config.store_path, cwd, console.input, console, err_console)

    try:
        selected = run_selector(config)
    except TerminalError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        return 1
    except KeyboardInterrupt:
        return 0

    # Only the chosen path goes to stdout; the shell wrapper captures it.
    if selected:
        sys.stdout.write(f"{selected}\n")
        sys.stdout.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
