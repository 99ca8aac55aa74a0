"""Shared fixtures for integration tests."""

import shutil
import stat
import sys
from pathlib import Path

import pytest

# Stand-in for the agent CLI: speaks the same JSON-lines protocol on stdio
FAKE_AGENT_SOURCE = '''
import json
import os
import sys

LOG = os.environ.get("FAKE_AGENT_LOG")
COMMANDS = [{"name": "help"}, {"name": "compact"}]


def out(message):
    sys.stdout.write(json.dumps(message) + "\\n")
    sys.stdout.flush()


def log(line):
    if LOG:
        with open(LOG, "a", encoding="utf-8") as f:
            f.write(line)


def reply(text):
    out({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": "echo: " + text}]}})
    out({"type": "result", "subtype": "success", "session_id": "agent-123"})


argv = sys.argv[1:]
if "--input-format" not in argv:
    prompt = argv[argv.index("-p") + 1]
    if prompt == "fail":
        sys.stderr.write("boom\\n")
        sys.stderr.flush()
        sys.exit(3)
    out({"type": "system", "subtype": "init", "session_id": "agent-123"})
    reply(prompt)
    sys.exit(0)

for raw in sys.stdin:
    log(raw)
    message = json.loads(raw)
    if message.get("type") == "control_request":
        subtype = message["request"]["subtype"]
        response = {"subtype": "success", "request_id": message["request_id"]}
        if subtype == "initialize":
            response["response"] = {"commands": COMMANDS}
        out({"type": "control_response", "response": response})
        if subtype == "interrupt":
            out({"type": "system", "subtype": "interrupted"})
    elif message.get("type") == "user":
        text = message["message"]["content"][0]["text"]
        if text == "quit":
            sys.exit(0)
        reply(text)
'''


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    """Executable fake agent CLI."""
    path = tmp_path / "fake-agent"
    path.write_text(f"#!{sys.executable}\n{FAKE_AGENT_SOURCE}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def agent_log(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "agent-stdin.log"
    monkeypatch.setenv("FAKE_AGENT_LOG", str(path))
    return path


@pytest.fixture
def bash_path() -> str:
    path = shutil.which("bash")
    if path is None:
        pytest.skip("bash not available")
    return path
