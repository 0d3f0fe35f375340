"""Declarative tool table: capability flag -> declaration + handler.

The manifest sent at connect time and the handler lookup used by the
dispatcher both come from ``build_toolset()``, so the agent is only ever
offered tools that can actually run.

Handlers take ``(ctx, args)`` and return a string (or something JSON
serializable). Host integrations reach the session through two injected
objects on the ToolContext:

- WorkspaceServices: async capability functions (search, file storage,
  tasks). Every method defaults to raising CapabilityDisabled.
- SideEffects: fire-and-forget notifications to the host UI (note saved,
  media play, expression change, ...). Every method defaults to a no-op.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote_plus

from session_config import IntegrationsConfig
from session_events import CapabilityDisabled

logger = logging.getLogger(__name__)

DRIVE_READ_LIMIT = 20000
SEARCH_RESULT_LIMIT = 5

EXPRESSIONS = ["neutral", "happy", "sad", "surprised", "angry", "thinking", "embarrassed"]


class WorkspaceServices:
    """Async capability functions supplied by the host. Override what exists."""

    async def search_web(self, query: str) -> list[dict]:
        raise CapabilityDisabled("web search")

    async def search_files(self, query: str) -> list[dict]:
        raise CapabilityDisabled("file search")

    async def read_resource(self, resource_id: str) -> str | None:
        raise CapabilityDisabled("file read")

    async def list_task_lists(self) -> list[dict]:
        raise CapabilityDisabled("task lists")

    async def list_tasks(self, list_id: str | None = None) -> list[dict]:
        raise CapabilityDisabled("tasks")

    async def add_task(self, title: str, notes: str | None = None,
                       list_id: str | None = None) -> dict | None:
        raise CapabilityDisabled("tasks")


class SideEffects:
    """Host-side reactions to tool calls. Every hook is a no-op by default."""

    def note_saved(self, note: str):
        pass

    def file_saved(self, name: str, content: str):
        pass

    def media_play(self, query: str, url: str):
        pass

    def expression_changed(self, expression: str):
        pass

    def notification(self, title: str, body: str) -> bool:
        """Return False if the host could not show the notification."""
        return True

    def open_url(self, url: str):
        pass


@dataclass
class WorkspaceFile:
    name: str
    content: str


@dataclass
class ToolContext:
    """Everything a handler may touch."""
    services: WorkspaceServices = field(default_factory=WorkspaceServices)
    effects: SideEffects = field(default_factory=SideEffects)
    files: list[WorkspaceFile] = field(default_factory=list)
    on_grounding: Callable[[dict], None] = lambda metadata: None


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: dict
    handler: Callable[[ToolContext, dict], Any]
    capability: str | None = None  # IntegrationsConfig flag; None = always on

    def declaration(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def _schema(properties=None, required=()):
    return {
        "type": "object",
        "properties": properties or {},
        "required": list(required),
    }


def _string(description, enum=None):
    prop = {"type": "string", "description": description}
    if enum:
        prop["enum"] = list(enum)
    return prop


def _require(args: dict, key: str) -> str:
    value = args.get(key)
    if value in (None, ""):
        raise ValueError(f"missing argument '{key}'")
    return value


# ── Handlers ──────────────────────────────────────────────────────

def _remember_note(ctx, args):
    ctx.effects.note_saved(_require(args, "note"))
    return "Note saved to memory."


def _save_to_workspace(ctx, args):
    name = _require(args, "file_name")
    content = args.get("content", "")
    ctx.effects.file_saved(name, content)
    for f in ctx.files:
        if f.name == name:
            f.content = content
            break
    else:
        ctx.files.append(WorkspaceFile(name=name, content=content))
    return f"File '{name}' saved successfully."


def _list_files(ctx, args):
    if not ctx.files:
        return "The workspace is empty."
    return ", ".join(f.name for f in ctx.files)


def _read_file(ctx, args):
    name = _require(args, "file_name")
    for f in ctx.files:
        if f.name == name:
            return f.content
    return f"File '{name}' not found."


async def _search_drive(ctx, args):
    files = await ctx.services.search_files(_require(args, "query"))
    return json.dumps([
        {"id": f.get("id"), "name": f.get("name"), "mimeType": f.get("mimeType")}
        for f in files
    ])


async def _read_drive_file(ctx, args):
    content = await ctx.services.read_resource(_require(args, "file_id"))
    if not content:
        return "Empty file or read error."
    return content[:DRIVE_READ_LIMIT]


async def _list_task_lists(ctx, args):
    lists = await ctx.services.list_task_lists()
    return json.dumps([{"id": tl.get("id"), "title": tl.get("title")} for tl in lists])


async def _list_tasks(ctx, args):
    tasks = await ctx.services.list_tasks(args.get("list_id"))
    return json.dumps([
        {"id": t.get("id"), "title": t.get("title"),
         "notes": t.get("notes"), "status": t.get("status")}
        for t in tasks
    ])


async def _add_task(ctx, args):
    task = await ctx.services.add_task(_require(args, "title"), args.get("notes"),
                                       args.get("list_id"))
    if not task:
        return "Failed to add task."
    return f"Task '{task.get('title', args['title'])}' added successfully."


def _search_youtube(ctx, args):
    url = "https://www.youtube.com/results?search_query=" + quote_plus(_require(args, "query"))
    return f"Found video search results: {url}"


def _search_music(ctx, args):
    url = "https://music.youtube.com/search?q=" + quote_plus(_require(args, "query"))
    return f"Found music search results: {url}"


def _play_media(ctx, args):
    query = _require(args, "query")
    url = args.get("url") or "https://music.youtube.com/search?q=" + quote_plus(query)
    ctx.effects.media_play(query, url)
    return f"Playing '{query}'."


def _open_url(ctx, args):
    url = _require(args, "url")
    ctx.effects.open_url(url)
    return "Opened tab."


def _send_notification(ctx, args):
    if ctx.effects.notification(_require(args, "title"), args.get("body", "")):
        return "Notification sent."
    return "Permission denied for notifications."


async def _search_web(ctx, args):
    query = _require(args, "query")
    items = (await ctx.services.search_web(query))[:SEARCH_RESULT_LIMIT]
    if not items:
        return "No results found."
    ctx.on_grounding({
        "webSearchQueries": [query],
        "groundingChunks": [
            {"web": {"uri": i.get("link"), "title": i.get("title")}} for i in items
        ],
    })
    return json.dumps([
        {"title": i.get("title"), "link": i.get("link"), "snippet": i.get("snippet")}
        for i in items
    ])


def _set_expression(ctx, args):
    expression = _require(args, "expression")
    if expression not in EXPRESSIONS:
        raise ValueError(f"unknown expression '{expression}'")
    ctx.effects.expression_changed(expression)
    return f"Expression set to {expression}."


# ── Table ─────────────────────────────────────────────────────────

TOOL_TABLE = [
    ToolSpec(
        name="remember_note",
        description="Save a short note about the user for future reference.",
        parameters=_schema({"note": _string("The content of the note to remember.")}, ["note"]),
        handler=_remember_note,
    ),
    ToolSpec(
        name="list_files",
        description="List the files currently open in the local workspace.",
        parameters=_schema(),
        handler=_list_files,
    ),
    ToolSpec(
        name="read_file",
        description="Read the content of a file from the local workspace.",
        parameters=_schema({"file_name": _string("The name of the file.")}, ["file_name"]),
        handler=_read_file,
    ),
    ToolSpec(
        name="save_to_workspace",
        description="Save generated content to a file in the user's local workspace.",
        parameters=_schema({
            "file_name": _string("The name of the file."),
            "content": _string("The full text content to save."),
        }, ["file_name", "content"]),
        handler=_save_to_workspace,
    ),
    ToolSpec(
        name="search_drive",
        description="Search the user's cloud drive for documents. Returns ids for read_drive_file.",
        parameters=_schema({"query": _string("Keywords or file name.")}, ["query"]),
        handler=_search_drive,
        capability="workspace",
    ),
    ToolSpec(
        name="read_drive_file",
        description="Read the content of a cloud drive file by the id returned from search_drive.",
        parameters=_schema({"file_id": _string("The id of the file to read.")}, ["file_id"]),
        handler=_read_drive_file,
        capability="workspace",
    ),
    ToolSpec(
        name="list_task_lists",
        description="Get all of the user's to-do lists.",
        parameters=_schema(),
        handler=_list_task_lists,
        capability="workspace",
    ),
    ToolSpec(
        name="list_tasks",
        description="Get tasks from a specific list, or the default list.",
        parameters=_schema({"list_id": _string("The task list id (optional).")}),
        handler=_list_tasks,
        capability="workspace",
    ),
    ToolSpec(
        name="add_task",
        description="Add a new task to the user's to-do list.",
        parameters=_schema({
            "title": _string("Title of the task."),
            "notes": _string("Additional notes."),
            "list_id": _string("Target list id (optional)."),
        }, ["title"]),
        handler=_add_task,
        capability="workspace",
    ),
    ToolSpec(
        name="search_youtube",
        description="Find a video on YouTube. Returns a search link.",
        parameters=_schema({"query": _string("The video search terms.")}, ["query"]),
        handler=_search_youtube,
        capability="youtube",
    ),
    ToolSpec(
        name="search_music",
        description="Find music on YouTube Music. Returns a search link.",
        parameters=_schema({"query": _string("The song or artist name.")}, ["query"]),
        handler=_search_music,
        capability="media",
    ),
    ToolSpec(
        name="play_media",
        description="Play a song or artist for the user in the media player.",
        parameters=_schema({
            "query": _string("The song or artist name."),
            "url": _string("A specific media URL, if one was found."),
        }, ["query"]),
        handler=_play_media,
        capability="media",
    ),
    ToolSpec(
        name="open_url",
        description="Open a URL in a new browser tab. Only use URLs found through a search tool.",
        parameters=_schema({"url": _string("The fully qualified URL to open.")}, ["url"]),
        handler=_open_url,
        capability="open_tabs",
    ),
    ToolSpec(
        name="send_notification",
        description="Send a desktop notification to the user.",
        parameters=_schema({
            "title": _string("Notification title."),
            "body": _string("Notification body text."),
        }, ["title", "body"]),
        handler=_send_notification,
        capability="notifications",
    ),
    ToolSpec(
        name="search_web",
        description="Personalized web search through the user's account. Use for all web searches.",
        parameters=_schema({"query": _string("The search query.")}, ["query"]),
        handler=_search_web,
        capability="personalized_search",
    ),
    ToolSpec(
        name="set_expression",
        description="Change the avatar's facial expression to match the mood of the conversation.",
        parameters=_schema({"expression": _string("The expression to show.", enum=EXPRESSIONS)},
                           ["expression"]),
        handler=_set_expression,
        capability="expressions",
    ),
]


def build_toolset(integrations: IntegrationsConfig, table=None) -> dict[str, ToolSpec]:
    """Select the tools whose capability flag is enabled, keyed by name."""
    toolset = {}
    for spec in (TOOL_TABLE if table is None else table):
        if spec.capability is not None and not getattr(integrations, spec.capability, False):
            continue
        toolset[spec.name] = spec
    logger.debug("Toolset: %s", ", ".join(toolset))
    return toolset


def manifest(toolset: dict[str, ToolSpec]) -> list[dict]:
    return [spec.declaration() for spec in toolset.values()]
