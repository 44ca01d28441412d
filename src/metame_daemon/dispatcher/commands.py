"""Parsing of chat text into command variants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(slots=True, frozen=True)
class NewSession:
    arg: str = ""


@dataclass(slots=True, frozen=True)
class Resume:
    query: str = ""


@dataclass(slots=True, frozen=True)
class Continue:
    pass


@dataclass(slots=True, frozen=True)
class Last:
    pass


@dataclass(slots=True, frozen=True)
class ChangeDir:
    path: str = ""


@dataclass(slots=True, frozen=True)
class NameSession:
    label: str = ""


@dataclass(slots=True, frozen=True)
class ShowSession:
    pass


@dataclass(slots=True, frozen=True)
class Status:
    pass


@dataclass(slots=True, frozen=True)
class ListTasks:
    pass


@dataclass(slots=True, frozen=True)
class RunTask:
    name: str = ""


@dataclass(slots=True, frozen=True)
class ShowBudget:
    pass


@dataclass(slots=True, frozen=True)
class Reload:
    pass


@dataclass(slots=True, frozen=True)
class Quiet:
    pass


@dataclass(slots=True, frozen=True)
class Mute:
    pass


@dataclass(slots=True, frozen=True)
class Unmute:
    pass


@dataclass(slots=True, frozen=True)
class Browse:
    mode: str = "cd"
    path: str = ""


@dataclass(slots=True, frozen=True)
class Help:
    pass


@dataclass(slots=True, frozen=True)
class Ask:
    text: str


Command = Union[
    NewSession,
    Resume,
    Continue,
    Last,
    ChangeDir,
    NameSession,
    ShowSession,
    Status,
    ListTasks,
    RunTask,
    ShowBudget,
    Reload,
    Quiet,
    Mute,
    Unmute,
    Browse,
    Help,
    Ask,
]

_NO_ARG = {
    "continue": Continue,
    "last": Last,
    "session": ShowSession,
    "status": Status,
    "tasks": ListTasks,
    "budget": ShowBudget,
    "reload": Reload,
    "quiet": Quiet,
    "mute": Mute,
    "unmute": Unmute,
    "help": Help,
    "start": Help,
}


def parse_command(text: str) -> Command:
    """Turn one inbound chat text into a command; unknown slash commands become Help."""

    text = text.strip()
    if not text.startswith("/"):
        return Ask(text)

    head, _, rest = text.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    rest = rest.strip()

    if name in _NO_ARG:
        return _NO_ARG[name]()
    if name == "new":
        return NewSession(rest)
    if name == "resume":
        return Resume(rest)
    if name == "cd":
        return ChangeDir(rest)
    if name == "name":
        return NameSession(rest)
    if name == "run":
        return RunTask(rest)
    if name == "browse":
        mode, _, path = rest.partition(" ")
        return Browse(mode or "cd", path.strip())
    return Help()


__all__ = [
    "Ask",
    "Browse",
    "ChangeDir",
    "Command",
    "Continue",
    "Help",
    "Last",
    "ListTasks",
    "Mute",
    "NameSession",
    "NewSession",
    "Quiet",
    "Reload",
    "Resume",
    "RunTask",
    "ShowBudget",
    "ShowSession",
    "Status",
    "Unmute",
    "parse_command",
]
