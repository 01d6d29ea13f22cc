from __future__ import annotations

import json as _json
from dataclasses import dataclass
from typing import Union
from urllib.parse import urlsplit, urlunsplit

from .errors import CairnError
from .hashutil import short_id


@dataclass(frozen=True)
class Success:
    id: str
    repository: str


@dataclass(frozen=True)
class Failure:
    kind: str
    repository: str
    message: str


Status = Union[Success, Failure]


def display_location(location: str) -> str:
    """Repository location with any embedded password removed."""
    scheme_split = location.split(":", 1)
    if len(scheme_split) == 2 and "://" in scheme_split[1]:
        prefix, rest = scheme_split[0] + ":", scheme_split[1]
    else:
        prefix, rest = "", location
    if "://" not in rest:
        return location
    parts = urlsplit(rest)
    if parts.password is None:
        return location
    netloc = parts.hostname or ""
    if parts.username:
        netloc = f"{parts.username}:***@{netloc}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return prefix + urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def failure_from(exc: BaseException, repository: str) -> Failure:
    kind = exc.tag if isinstance(exc, CairnError) else "error_repository"
    return Failure(kind=kind, repository=display_location(repository), message=str(exc))


def render(status: Status, *, as_json: bool = False) -> str:
    """Serialize a status for the terminal: human lines or one JSON record."""
    if isinstance(status, Success):
        if as_json:
            return _json.dumps(
                {"status": "success", "id": short_id(status.id), "repository": display_location(status.repository)}
            )
        return (
            f"created cairn repository {short_id(status.id)} at {display_location(status.repository)}\n"
            "\n"
            "Please note that knowledge of your password is required to access\n"
            "the repository. Losing your password means that your data is\n"
            "irrecoverably lost."
        )
    if as_json:
        return _json.dumps({"status": status.kind, "repository": status.repository, "message": status.message})
    return f"Error: {status.message} (repository {status.repository})"


def exit_code(status: Status) -> int:
    return 0 if isinstance(status, Success) else 2
