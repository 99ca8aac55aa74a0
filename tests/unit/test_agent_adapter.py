"""Unit tests for agent CLI command building and message parsing."""

import pytest

from dispatchhub.adapters.agent_adapter import (
    AgentAdapter,
    build_agent_command,
    control_request,
    extract_commands,
    option_flags,
    user_message,
)
from dispatchhub.config import AgentConfig
from dispatchhub.core.errors import AdapterInitFailed, BadRequest
from dispatchhub.core.models import AdapterConfig


class TestBuildAgentCommand:
    """Tests for build_agent_command()."""

    @pytest.mark.unit
    def test_stream_mode_reads_json_from_stdin(self):
        cmd = build_agent_command("claude", "stream-json")

        assert cmd[:2] == ["claude", "-p"]
        assert "--input-format" in cmd
        assert cmd[cmd.index("--output-format") + 1] == "stream-json"

    @pytest.mark.unit
    def test_prompt_mode_passes_prompt_and_resume(self):
        cmd = build_agent_command("claude", "prompt", ["--model", "opus"], prompt="fix it", resume="abc")

        assert cmd[:3] == ["claude", "-p", "fix it"]
        assert "--input-format" not in cmd
        assert cmd[cmd.index("--resume") + 1] == "abc"
        assert cmd[-2:] == ["--model", "opus"]

    @pytest.mark.unit
    def test_prompt_mode_requires_prompt(self):
        with pytest.raises(ValueError):
            build_agent_command("claude", "prompt")

    @pytest.mark.unit
    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            build_agent_command("claude", "telepathy")


@pytest.mark.unit
def test_option_flags_accept_snake_and_camel_names():
    flags = option_flags(
        {
            "model": "sonnet",
            "permissionMode": "acceptEdits",
            "max_turns": 5,
            "allowedTools": ["Read", "Bash(git:*)"],
            "append_system_prompt": "",
        }
    )

    assert flags == [
        "--model",
        "sonnet",
        "--permission-mode",
        "acceptEdits",
        "--max-turns",
        "5",
        "--allowedTools",
        "Read,Bash(git:*)",
    ]


@pytest.mark.unit
def test_user_message_and_control_request_shapes():
    message = user_message("hello")
    request = control_request("interrupt")

    assert message["type"] == "user"
    assert message["message"]["content"][0] == {"type": "text", "text": "hello"}
    assert request["type"] == "control_request"
    assert request["request"] == {"subtype": "interrupt"}
    assert request["request_id"].startswith("req_")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("message", "expected"),
    [
        (
            {"type": "control_response", "response": {"response": {"commands": [{"name": "help"}, {"name": "compact"}]}}},
            ["help", "compact"],
        ),
        ({"type": "control_response", "response": {"commands": ["review"]}}, ["review"]),
        ({"type": "system", "subtype": "init", "slash_commands": ["clear", "", 7]}, ["clear"]),
        ({"type": "assistant", "message": {}}, None),
        ({"type": "control_response", "response": "oops"}, None),
    ],
)
def test_extract_commands(message, expected):
    assert extract_commands(message) == expected


@pytest.mark.unit
async def test_missing_binary_fails_init(tmp_path):
    adapter = AgentAdapter(AgentConfig(binary=str(tmp_path / "no-such-agent")))

    with pytest.raises(AdapterInitFailed, match="not found"):
        await adapter.create(AdapterConfig(session_id="a1", working_directory=str(tmp_path)))


@pytest.mark.unit
async def test_invalid_input_mode_is_bad_request(tmp_path):
    adapter = AgentAdapter(AgentConfig(binary="sh"))

    with pytest.raises(BadRequest):
        await adapter.create(
            AdapterConfig(session_id="a1", working_directory=str(tmp_path), options={"input_mode": "voice"})
        )


@pytest.mark.unit
async def test_prompt_mode_has_no_interrupt_capability(tmp_path):
    adapter = AgentAdapter(AgentConfig(binary="sh"))
    handle = await adapter.create(
        AdapterConfig(
            session_id="a1",
            working_directory=str(tmp_path),
            options={"input_mode": "prompt", "discover_commands": False},
        )
    )

    assert handle.can_interrupt is False
    assert handle.interrupt_control is None
    with pytest.raises(BadRequest):
        await handle.interrupt()
    with pytest.raises(BadRequest):
        await handle.send_control("interrupt")
    await handle.close()


@pytest.mark.unit
async def test_resume_option_seeds_agent_session_id(tmp_path):
    adapter = AgentAdapter(AgentConfig(binary="sh"))
    handle = await adapter.create(
        AdapterConfig(
            session_id="a1",
            working_directory=str(tmp_path),
            options={"input_mode": "prompt", "resume": "conv-42", "discover_commands": False},
        )
    )

    assert handle.agent_session_id == "conv-42"
    await handle.close()


@pytest.mark.unit
async def test_emit_commands_publishes_commands_event(tmp_path):
    adapter = AgentAdapter(AgentConfig(binary="sh"))
    handle = await adapter.create(
        AdapterConfig(
            session_id="a1",
            working_directory=str(tmp_path),
            options={"input_mode": "prompt", "discover_commands": False},
        )
    )

    handle.emit_commands(["help", "compact"], from_cache=True)
    event = await handle.events().__anext__()

    assert event.type == "commands"
    assert event.payload == {"commands": ["help", "compact"], "fromCache": True}
    await handle.close()
