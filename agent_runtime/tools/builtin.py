"""Built-in coding tools bound to the filesystem and command services."""
from __future__ import annotations

import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from agent_runtime.agent.tool_registry import AgentMode, Sensitivity, ToolContext, ToolDef, ToolExecutionError
from agent_runtime.security.command_guard import validate_command
from agent_runtime.security.path_guard import ensure_not_protected, resolve_path
from agent_runtime.tools.commands import CommandRunner
from agent_runtime.tools.filesystem import FileSystem

MAX_READ_SIZE = 2_000_000
MAX_SEARCH_RESULTS = 100
MAX_SEARCH_DEPTH = 8
MAX_FILE_SIZE_FOR_SEARCH = 500_000
MAX_STDERR = 10_000

IGNORE_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "__pycache__",
    ".venv", "venv", ".cache", "coverage", ".idea", ".vscode",
    "dist-electron", ".svelte-kit", ".nuxt",
})

PLANNER_TOOLS = frozenset({"read_file", "list_directory", "search_files", "get_git_diff", "list_code_definitions"})
CHAT_TOOLS = frozenset({"read_file", "write_file", "str_replace", "list_directory", "search_files", "execute_command"})

_DEFINITION_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "ts": [
        re.compile(r"^\s*(?:export\s+)?(?:async\s+)?function\s+\w+"),
        re.compile(r"^\s*(?:export\s+)?(?:abstract\s+)?class\s+\w+"),
        re.compile(r"^\s*(?:export\s+)?(?:type|interface)\s+\w+"),
        re.compile(r"^\s*(?:export\s+)?const\s+\w+\s*=\s*(?:async\s+)?\("),
    ],
    "py": [re.compile(r"^(?:async\s+)?def\s+\w+"), re.compile(r"^class\s+\w+")],
    "rs": [re.compile(r"^\s*(?:pub\s+)?(?:async\s+)?fn\s+\w+"), re.compile(r"^\s*(?:pub\s+)?(?:struct|enum|trait)\s+\w+")],
    "go": [re.compile(r"^func\s+"), re.compile(r"^type\s+\w+\s+(?:struct|interface)")],
    "other": [re.compile(r"^\s*(?:export\s+)?(?:async\s+)?function\s+\w+"), re.compile(r"^\s*(?:export\s+)?class\s+\w+")],
}
_EXTENSION_KIND = {".ts": "ts", ".tsx": "ts", ".js": "ts", ".jsx": "ts", ".mjs": "ts", ".py": "py", ".rs": "rs", ".go": "go"}


def _modes(name: str) -> frozenset[AgentMode]:
    modes = {AgentMode.BUILDER}
    if name in PLANNER_TOOLS:
        modes.add(AgentMode.PLANNER)
    if name in CHAT_TOOLS:
        modes.add(AgentMode.CHAT)
    return frozenset(modes)


def _target(context: ToolContext, raw: Any) -> Path:
    path = resolve_path(context.workspace_root, str(raw))
    ensure_not_protected(path)
    return path


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


def _path_property(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def build_builtin_tools(fs: FileSystem, runner: CommandRunner) -> list[ToolDef]:
    def read_file(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        info = fs.stat(path)
        if info.is_dir:
            raise ToolExecutionError(f"Path is a directory, not a file: {path}")
        if info.size > MAX_READ_SIZE:
            raise ToolExecutionError(f"File too large ({info.size / 1024 / 1024:.1f}MB). Max 2MB.")
        return fs.read_file(path) or "(empty file)"

    def write_file(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        written = fs.write_file(path, args["content"])
        return f"File written successfully: {path} ({written} bytes)"

    def str_replace(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        content = fs.read_file(path)
        old, new = args["old_str"], args["new_str"]
        occurrences = content.count(old) if old else 0
        if occurrences == 0:
            lines = len(content.split("\n"))
            raise ToolExecutionError(
                f"Could not find the specified text in {path} ({lines} lines). "
                "The old_str must match the file content exactly, including whitespace and indentation."
            )
        if occurrences > 1:
            raise ToolExecutionError(
                f"Found {occurrences} occurrences of old_str in {path}. "
                "Please provide a more specific/unique string to replace."
            )
        fs.write_file(path, content.replace(old, new, 1))
        return f"File edited successfully: {path}"

    def list_directory(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args.get("path") or ".")
        entries = [e for e in fs.read_dir(path) if not e.name.startswith(".") and e.name != "node_modules"]
        entries.sort(key=lambda e: (not e.is_dir, e.name.lower()))
        if not entries:
            return "(empty directory)"
        return "\n".join(f"{'[DIR]' if e.is_dir else '[FILE]'} {e.name}" for e in entries)

    def search_files(args: dict[str, Any], context: ToolContext) -> str:
        root = _target(context, args.get("path") or ".")
        try:
            regex = re.compile(args["pattern"], re.IGNORECASE)
        except re.error:
            regex = re.compile(re.escape(args["pattern"]), re.IGNORECASE)
        include = args.get("include")
        results: list[str] = []

        def visit(directory: Path, depth: int) -> None:
            if depth > MAX_SEARCH_DEPTH or len(results) >= MAX_SEARCH_RESULTS:
                return
            try:
                entries = sorted(fs.read_dir(directory), key=lambda e: e.name)
            except OSError:
                return
            for entry in entries:
                if len(results) >= MAX_SEARCH_RESULTS:
                    return
                full = directory / entry.name
                if entry.is_dir:
                    if entry.name not in IGNORE_DIRS and not entry.name.startswith("."):
                        visit(full, depth + 1)
                    continue
                if include and not fnmatch.fnmatch(entry.name, include):
                    continue
                try:
                    if fs.stat(full).size > MAX_FILE_SIZE_FOR_SEARCH:
                        continue
                    content = fs.read_file(full)
                except (OSError, UnicodeDecodeError):
                    continue
                for line_no, line in enumerate(content.split("\n"), start=1):
                    if regex.search(line):
                        results.append(f"{full}:{line_no}: {line.strip()[:200]}")
                        if len(results) >= MAX_SEARCH_RESULTS:
                            break

        visit(root, 0)
        if not results:
            return "No matches found."
        output = "\n".join(results)
        if len(results) >= MAX_SEARCH_RESULTS:
            output += f"\n... (truncated at {MAX_SEARCH_RESULTS} results)"
        return output

    def _run(command: str, cwd: Path, limit: int) -> str:
        result = runner.run_command(command, cwd)
        output = result.stdout[:limit] if result.stdout else ""
        if result.stderr:
            output += ("\n" if output else "") + f"stderr: {result.stderr[:MAX_STDERR]}"
        if result.exit_code != 0:
            raise ToolExecutionError(f"Exit code: {result.exit_code}\n{output}".rstrip())
        return output or f"Command completed with exit code {result.exit_code}"

    def execute_command(args: dict[str, Any], context: ToolContext) -> str:
        command = args["command"]
        validate_command(command)
        if args.get("cwd"):
            cwd = _target(context, args["cwd"])
        else:
            cwd = context.workspace_root or Path(os.getcwd())
        return _run(command, cwd, context.output_limit)

    def get_git_diff(args: dict[str, Any], context: ToolContext) -> str:
        result = runner.run_command("git diff", context.workspace_root or Path(os.getcwd()))
        if result.exit_code != 0:
            raise ToolExecutionError(f"git diff failed (exit code {result.exit_code}): {result.stderr.strip()}")
        return result.stdout or "No uncommitted changes."

    def list_code_definitions(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        patterns = _DEFINITION_PATTERNS[_EXTENSION_KIND.get(path.suffix.lower(), "other")]
        definitions = [
            f"L{line_no}: {line.strip()}"
            for line_no, line in enumerate(fs.read_file(path).split("\n"), start=1)
            if any(p.search(line) for p in patterns)
        ]
        if not definitions:
            return f"No top-level definitions found in {path}"
        return "\n".join(definitions)

    def create_directory(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        fs.make_dir(path)
        return f"Directory created: {path}"

    def delete_file(args: dict[str, Any], context: ToolContext) -> str:
        path = _target(context, args["path"])
        if fs.stat(path).is_dir:
            raise ToolExecutionError("Path is a directory. Use execute_command with rmdir for directories.")
        fs.delete_path(path)
        return f"Deleted: {path}"

    def move_file(args: dict[str, Any], context: ToolContext) -> str:
        source = _target(context, args["old_path"])
        target = _target(context, args["new_path"])
        fs.move_path(source, target)
        return f"Moved: {source} -> {target}"

    specs: list[tuple[str, str, dict[str, Any], Any, Sensitivity, tuple[str, ...]]] = [
        (
            "read_file",
            "Read the contents of a file at the given path. Use this to understand existing code before making changes.",
            _object_schema({"path": _path_property("Path to the file to read")}, ["path"]),
            read_file,
            Sensitivity.SAFE,
            ("path",),
        ),
        (
            "write_file",
            "Create a new file or completely overwrite an existing file with the provided content.",
            _object_schema(
                {
                    "path": _path_property("Path to the file to write"),
                    "content": {"type": "string", "description": "The complete content to write to the file"},
                },
                ["path", "content"],
            ),
            write_file,
            Sensitivity.SENSITIVE,
            ("path",),
        ),
        (
            "str_replace",
            "Edit a file by replacing one exact, unique occurrence of old_str with new_str. "
            "The old_str must match exactly, including whitespace and indentation.",
            _object_schema(
                {
                    "path": _path_property("Path to the file to edit"),
                    "old_str": {"type": "string", "description": "The exact text to replace"},
                    "new_str": {"type": "string", "description": "The replacement text"},
                },
                ["path", "old_str", "new_str"],
            ),
            str_replace,
            Sensitivity.SENSITIVE,
            ("path",),
        ),
        (
            "list_directory",
            "List the contents of a directory. Directories come first, marked [DIR]; files are marked [FILE].",
            _object_schema({"path": _path_property("Directory to list (default: workspace root)")}, []),
            list_directory,
            Sensitivity.SAFE,
            ("path",),
        ),
        (
            "search_files",
            "Search for a text or regex pattern across files in a directory. "
            "Returns matching lines with file paths and line numbers.",
            _object_schema(
                {
                    "pattern": {"type": "string", "description": "Text or regex pattern to search for"},
                    "path": _path_property("Directory to search in (default: workspace root)"),
                    "include": {"type": "string", "description": "Optional file name glob, e.g. '*.py'"},
                },
                ["pattern"],
            ),
            search_files,
            Sensitivity.SAFE,
            ("path",),
        ),
        (
            "execute_command",
            "Run a shell command. Use for installing packages, running builds, tests, git operations, etc.",
            _object_schema(
                {
                    "command": {"type": "string", "description": "The shell command to execute"},
                    "cwd": _path_property("Working directory (optional, defaults to the workspace root)"),
                },
                ["command"],
            ),
            execute_command,
            Sensitivity.SENSITIVE,
            ("cwd",),
        ),
        (
            "get_git_diff",
            "Get the current git diff showing all uncommitted changes in the project.",
            _object_schema({}, []),
            get_git_diff,
            Sensitivity.SAFE,
            (),
        ),
        (
            "list_code_definitions",
            "Extract top-level function, class, and type definitions from a source file.",
            _object_schema({"path": _path_property("Path to the source file to analyze")}, ["path"]),
            list_code_definitions,
            Sensitivity.SAFE,
            ("path",),
        ),
        (
            "create_directory",
            "Create a new directory (and any parent directories) at the given path.",
            _object_schema({"path": _path_property("Path of the directory to create")}, ["path"]),
            create_directory,
            Sensitivity.SENSITIVE,
            ("path",),
        ),
        (
            "delete_file",
            "Delete a file at the given path. Use with caution.",
            _object_schema({"path": _path_property("Path to the file to delete")}, ["path"]),
            delete_file,
            Sensitivity.SENSITIVE,
            ("path",),
        ),
        (
            "move_file",
            "Rename or move a file from one path to another.",
            _object_schema(
                {
                    "old_path": _path_property("Current path of the file"),
                    "new_path": _path_property("New path for the file"),
                },
                ["old_path", "new_path"],
            ),
            move_file,
            Sensitivity.SENSITIVE,
            ("old_path", "new_path"),
        ),
    ]

    return [
        ToolDef(
            name=name,
            description=description,
            input_schema=schema,
            handler=handler,
            sensitivity=sensitivity,
            path_arguments=path_arguments,
            modes=_modes(name),
        )
        for name, description, schema, handler, sensitivity, path_arguments in specs
    ]
