from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path

from helpers import SRC  # noqa: F401

from sprite_hub.cli_sessions import (
    cwd_to_project_dir,
    discover_claude_sessions,
    parse_cli_session_messages,
    project_dir_to_cwd,
)


def _write_jsonl(path: Path, entries: list[object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [entry if isinstance(entry, str) else json.dumps(entry) for entry in entries]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class CliSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.projects = Path(self.tmp.name) / "projects"

    def test_project_dir_names(self) -> None:
        self.assertEqual(cwd_to_project_dir("/home/sprite/app"), "-home-sprite-app")
        self.assertEqual(project_dir_to_cwd("-home-sprite-app"), "/home/sprite/app")

    def test_discover_sorts_newest_first_and_skips_empty(self) -> None:
        older = self.projects / "-home-a" / "old.jsonl"
        newer = self.projects / "-home-b" / "new.jsonl"
        _write_jsonl(older, [{"type": "user", "message": {"content": "first question"}}])
        _write_jsonl(
            newer,
            [
                {"type": "summary"},
                {"type": "user", "message": {"content": [{"type": "text", "text": "second question"}]}},
            ],
        )
        (self.projects / "-home-b" / "empty.jsonl").write_text("", encoding="utf-8")
        os.utime(older, (1_000, 1_000))
        os.utime(newer, (2_000, 2_000))

        sessions = discover_claude_sessions(self.projects)

        self.assertEqual([s["sessionId"] for s in sessions], ["new", "old"])
        self.assertEqual(sessions[0]["cwd"], "/home/b")
        self.assertEqual(sessions[0]["preview"], "second question")
        self.assertEqual(sessions[0]["lastModified"], 2_000_000)
        self.assertEqual(sessions[1]["preview"], "first question")

    def test_discover_missing_directory(self) -> None:
        self.assertEqual(discover_claude_sessions(self.projects), [])

    def test_parse_skips_meta_tool_results_and_commands(self) -> None:
        _write_jsonl(
            self.projects / "-srv" / "abc.jsonl",
            [
                {"type": "user", "isMeta": True, "message": {"content": "caveat"}},
                {"type": "user", "message": {"content": "<command-name>/clear</command-name>"}},
                {"type": "user", "message": {"content": "real question"}, "timestamp": "2024-05-01T10:00:00Z"},
                {
                    "type": "assistant",
                    "message": {
                        "content": [
                            {"type": "text", "text": "part one"},
                            {"type": "tool_use", "name": "Read"},
                            {"type": "text", "text": "part two"},
                        ]
                    },
                    "timestamp": "2024-05-01T10:00:03Z",
                },
                {"type": "user", "message": {"content": [{"type": "tool_result", "content": "ok"}]}},
                "{broken json",
                {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Bash"}]}},
            ],
        )

        messages = parse_cli_session_messages(self.projects, "/srv", "abc")

        self.assertEqual(
            [(m["role"], m["content"]) for m in messages],
            [("user", "real question"), ("assistant", "part one\n\npart two")],
        )
        self.assertEqual(messages[0]["timestamp"], 1714557600000)

    def test_parse_missing_file(self) -> None:
        self.assertEqual(parse_cli_session_messages(self.projects, "/srv", "missing"), [])


if __name__ == "__main__":
    unittest.main()
