"""
Session Commands - Text command surface over the session subsystem.

Every command returns a CommandResult with a human-readable message; errors
are reported in the message instead of being raised.
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models import Session, SessionSummary
from ..storage.session_store import SessionStore
from .errors import NotFoundError, ParleyError, PersistenceError, ValidationError
from .session_query import SessionQuery
from .title_generator import TitleGenerator

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
SEARCH_LIMIT = 5

HELP_TEXT = """Available commands:
  history [n]            Show the n most recent sessions (default 10)
  search <query>         Search session titles and keywords
  save                   Write every session to storage
  export                 Export all sessions and chat logs
  delete help            Show delete options
  titles                 Generate titles for untitled sessions
  rename <id> <title>    Rename a session
  help                   Show this help"""

DELETE_HELP = """Delete options:
  delete current          Delete the current session
  delete <id>             Delete a session by id
  delete range <a> <b>    Delete sessions a-b from the history list
  delete <a> <b>          Same as range
  delete all              Delete ALL sessions (permanent)
  delete old <days>       Delete sessions inactive for more than <days> days"""


@dataclass
class CommandResult:
    """Outcome of a command."""
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _format_session(index: int, session: Session) -> str:
    summary = SessionSummary.from_session(session)
    line = (
        f"{index}. {summary.title} "
        f"({summary.last_activity_at:%Y-%m-%d %H:%M}, {summary.message_count} messages, "
        f"{summary.state.value})\n   id: {summary.id}"
    )
    if summary.keywords:
        line += f"\n   keywords: {', '.join(summary.keywords)}"
    return line


class SessionCommands:
    """Parses and runs session commands."""

    def __init__(self, store: SessionStore, query: SessionQuery, titles: TitleGenerator):
        self.store = store
        self.query = query
        self.titles = titles
        self._handlers: Dict[str, Callable[[List[str], Optional[str]], Awaitable[CommandResult]]] = {
            "help": self._help,
            "history": self._history,
            "search": self._search,
            "save": self._save,
            "export": self._export,
            "delete": self._delete,
            "titles": self._titles,
            "rename": self._rename,
        }

    @property
    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def execute(self, command_line: str, current_session_id: Optional[str] = None) -> CommandResult:
        """
        Run one command line such as ``delete range 1 5`` or ``/history``.

        Args:
            command_line: Command text; a leading slash is accepted
            current_session_id: Session that ``delete current`` refers to

        Returns:
            CommandResult: Never raises for command failures
        """
        try:
            parts = shlex.split(command_line.strip().lstrip("/"))
        except ValueError:
            parts = command_line.strip().lstrip("/").split()
        if not parts:
            return CommandResult(False, "Empty command. Type 'help' for a list of commands.")

        name, args = parts[0].lower(), parts[1:]
        handler = self._handlers.get(name)
        if handler is None:
            return CommandResult(False, f"Unknown command: {name}. Type 'help' for a list of commands.")

        try:
            return await handler(args, current_session_id)
        except ValidationError as e:
            return CommandResult(False, f"Invalid {name} command: {e.message}")
        except NotFoundError as e:
            return CommandResult(False, e.message)
        except PersistenceError as e:
            logger.error(f"Command '{name}' failed to persist: {e}")
            return CommandResult(False, f"Storage error: {e.message}")
        except ParleyError as e:
            logger.error(f"Command '{name}' failed: {e}")
            return CommandResult(False, f"{name} failed: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error in command '{name}': {e}", exc_info=True)
            return CommandResult(False, f"{name} failed. Please try again.")

    async def _help(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        return CommandResult(True, HELP_TEXT, {"commands": self.names})

    async def _history(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        limit = _int_or_none(args[0]) if args else HISTORY_LIMIT
        if limit is None or limit < 1:
            raise ValidationError("usage: history [n] with n >= 1")

        sessions = await self.query.list_recent(limit)
        if not sessions:
            return CommandResult(True, "No session history found.", {"sessions": []})

        lines = ["Recent session history:"]
        lines += [_format_session(i, s) for i, s in enumerate(sessions, start=1)]
        return CommandResult(True, "\n".join(lines), {
            "sessions": [SessionSummary.from_session(s).model_dump(mode="json") for s in sessions]
        })

    async def _search(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        query = " ".join(args).strip()
        if not query:
            raise ValidationError("usage: search <query>")

        results = await self.query.search(query)
        if not results:
            return CommandResult(True, f'No sessions found matching "{query}".', {"sessions": []})

        shown = results[:SEARCH_LIMIT]
        lines = [f'Found {len(results)} sessions matching "{query}":']
        lines += [_format_session(i, s) for i, s in enumerate(shown, start=1)]
        if len(results) > SEARCH_LIMIT:
            lines.append(f"... and {len(results) - SEARCH_LIMIT} more")
        return CommandResult(True, "\n".join(lines), {
            "sessions": [SessionSummary.from_session(s).model_dump(mode="json") for s in shown],
            "total": len(results),
        })

    async def _save(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        count = await self.store.flush()
        return CommandResult(True, f"Saved {count} sessions.", {"saved": count})

    async def _export(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        payload = await self.store.export_all()
        return CommandResult(
            True,
            f"Exported {len(payload['sessions'])} sessions and {len(payload['chatLogs'])} chat logs.",
            {"export": payload},
        )

    async def _delete(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        sub = args[0].lower() if args else "help"

        if sub == "help":
            return CommandResult(True, DELETE_HELP)

        if sub == "current":
            if not current_session_id:
                return CommandResult(False, "No active session to delete.")
            await self.query.delete_session(current_session_id)
            return CommandResult(True, "Current session deleted.", {"deleted": 1})

        if sub == "all":
            count = await self.query.delete_all()
            return CommandResult(True, f"Deleted {count} sessions.", {"deleted": count})

        if sub == "old":
            days = _int_or_none(args[1]) if len(args) > 1 else None
            if days is None or days < 1:
                raise ValidationError("usage: delete old <days> with days >= 1")
            count = await self.query.delete_older_than(days)
            return CommandResult(
                True, f"Deleted {count} sessions older than {days} days.", {"deleted": count}
            )

        if sub == "range":
            bounds = args[1:3]
        else:
            bounds = args[0:2]
        start, end = (_int_or_none(b) for b in (bounds + [None, None])[:2])

        if sub == "range" and (start is None or end is None):
            raise ValidationError("usage: delete range <start> <end>")
        if start is not None and end is not None:
            count = await self.query.delete_range(start, end)
            return CommandResult(
                True, f"Deleted {count} sessions from range {start}-{end}.", {"deleted": count}
            )

        session_id = args[0]
        try:
            await self.query.delete_session(session_id)
        except NotFoundError:
            return CommandResult(False, f"Session {session_id} not found.")
        return CommandResult(True, f"Deleted session {session_id}.", {"deleted": 1})

    async def _titles(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        succeeded, failed = await self.titles.regenerate_missing_titles()
        if succeeded == 0 and failed == 0:
            return CommandResult(True, "No untitled sessions found that need titles.",
                                 {"generated": 0, "failed": 0})

        message = f"Title generation complete. Generated: {succeeded}"
        if failed:
            message += f", failed: {failed}"
        return CommandResult(failed == 0, message, {"generated": succeeded, "failed": failed})

    async def _rename(self, args: List[str], current_session_id: Optional[str]) -> CommandResult:
        if len(args) < 2:
            raise ValidationError("usage: rename <id> <title>")
        session_id, title = args[0], " ".join(args[1:])
        session = await self.store.update_session_title(session_id, title)
        return CommandResult(True, f'Session renamed to "{session.title}".', {"id": session.id})
