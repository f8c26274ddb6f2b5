"""Tests for topomapper/session/terminal.py"""

from __future__ import annotations

import re
import time

from conftest import ScriptedChannel, shell_reply

from topomapper.exceptions import CommandTimeout
from topomapper.session.terminal import (
    LoginStep,
    SessionState,
    ShellProfile,
    Step,
    TerminalSession,
    strip_control_chars,
)

ROUTER = ShellProfile(ready=re.compile(r"router[>#]\s*$"))
PAGED = ShellProfile(ready=re.compile(r"<[^>]+>\s*$"), pager=re.compile(r"-+ More -+"), exit_command="quit")


def _sent(channel) -> list[bytes]:
    return [c.args[0] for c in channel.send.call_args_list]


class TestStripControlChars:
    """Tests for strip_control_chars."""

    def test_removes_ansi_and_carriage_returns(self):
        assert strip_control_chars("\x1b[2Jhello\r\n\x1b[1;32mworld\x1b[0m") == "hello\nworld"

    def test_removes_nul_and_backspace(self):
        assert strip_control_chars("ab\x00c\x08d") == "abcd"

    def test_init_run_only_stripped_on_request(self):
        assert strip_control_chars("7777GS1900#", strip_init_run=True) == "GS1900#"
        assert strip_control_chars("7777GS1900#") == "7777GS1900#"


class TestFeed:
    """Drive the state machine with canned chunks."""

    def test_initial_prompt_sends_first_command(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER, host="r1")
        session.begin([Step("show version")])

        session.feed("Welcome\r\nrouter> ")

        assert session.state == SessionState.STEADY
        assert _sent(mock_channel) == [b"show version\n"]

    def test_output_excludes_echo_and_prompt(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([Step("show version"), Step("show clock")])
        session.feed("router> ")

        session.feed("show version\r\nVersion 1.2\r\nBuild 7\r\nrouter> ")
        session.feed("show clock\r\n12:00\r\nrouter> ")

        assert session.done
        assert session.results() == ["Version 1.2\nBuild 7", "12:00"]
        assert _sent(mock_channel)[-1] == b"exit\n"

    def test_output_split_across_chunks(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([Step("show arp")])
        session.feed("router> ")

        session.feed("show arp\r\n10.0.0.2 ")
        session.feed("aa:bb\r\n")
        assert not session.done
        session.feed("router> ")

        assert session.results() == ["10.0.0.2 aa:bb"]

    def test_step_specific_prompt(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([Step("configure", prompts=(re.compile(r"\(config\)#\s*$"),))])
        session.feed("router# ")

        session.feed("configure\r\nrouter# ")
        assert not session.done
        session.feed("\r\nrouter(config)# ")

        assert session.done

    def test_pager_is_answered_and_removed(self, mock_channel):
        session = TerminalSession(mock_channel, PAGED)
        session.begin([Step("summary")])
        session.feed("<sw1>")

        session.feed("summary\r\nline one\r\n  ---- More ----")
        assert _sent(mock_channel)[-1] == b" "
        session.feed("\r\nline two\r\n<sw1>")

        output = session.results()[0]
        assert "line one" in output
        assert "line two" in output
        assert "More" not in output
        assert _sent(mock_channel)[-1] == b"quit\n"

    def test_bytes_chunks_are_decoded(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([Step("hostname")])
        session.feed(b"router> ")
        session.feed("hostname\r\nrõuter\r\nrouter> ".encode())

        assert session.results() == ["rõuter"]

    def test_multibyte_character_split_across_chunks(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([Step("hostname")])
        session.feed(b"router> ")
        encoded = "hostname\r\nvõrk\r\nrouter> ".encode()
        split = encoded.index("õ".encode()) + 1

        session.feed(encoded[:split])
        session.feed(encoded[split:])

        assert session.results() == ["võrk"]

    def test_feed_after_close_is_ignored(self, mock_channel):
        session = TerminalSession(mock_channel, ROUTER)
        session.begin([])
        session.feed("router> ")
        assert session.done

        session.feed("router> ")

        assert _sent(mock_channel) == [b"exit\n"]


class TestLoginSteps:
    """Shell-level login and mode escalation."""

    def _rkscli_login(self):
        return [
            LoginStep(re.compile(r"Please login:\s*$"), "admin", state=SessionState.AWAITING_LOGIN),
            LoginStep(
                re.compile(r"password\s*:\s*$", re.IGNORECASE),
                "s3cret",
                state=SessionState.AWAITING_PASSWORD,
                secret=True,
            ),
        ]

    def test_login_then_password_then_prompt(self, mock_channel):
        profile = ShellProfile(ready=re.compile(r"rkscli:\s*$"))
        session = TerminalSession(mock_channel, profile)
        session.begin([Step("get version")], self._rkscli_login())
        assert session.state == SessionState.AWAITING_LOGIN

        session.feed("Ruckus Wireless\r\nPlease login: ")
        assert session.state == SessionState.AWAITING_PASSWORD
        session.feed("admin\r\npassword : ")
        assert session.state == SessionState.AWAITING_PROMPT
        session.feed("\r\nrkscli: ")

        assert session.state == SessionState.STEADY
        assert _sent(mock_channel) == [b"admin\n", b"s3cret\n", b"get version\n"]

    def test_optional_step_skipped_when_already_ready(self, mock_channel):
        profile = ShellProfile(ready=re.compile(r"ap[>#]\s*$"))
        enable = LoginStep(re.compile(r"ap>\s*$"), "enable", optional=True)
        session = TerminalSession(mock_channel, profile)
        session.begin([Step("show sysinfo")], [enable])

        session.feed("ap# ")

        assert session.state == SessionState.STEADY
        assert _sent(mock_channel) == [b"show sysinfo\n"]

    def test_optional_step_used_when_prompt_matches(self, mock_channel):
        profile = ShellProfile(ready=re.compile(r"ap[>#]\s*$"))
        enable = LoginStep(re.compile(r"ap>\s*$"), "enable", optional=True)
        session = TerminalSession(mock_channel, profile)
        session.begin([Step("show sysinfo")], [enable])

        session.feed("ap> ")
        session.feed("enable\r\nap# ")

        assert _sent(mock_channel) == [b"enable\n", b"show sysinfo\n"]


class TestRunSequence:
    """Tests for run_sequence over a channel."""

    def test_runs_all_steps(self):
        channel = ScriptedChannel(
            greeting="Welcome\r\nrouter> ",
            replies={
                "show version": shell_reply("show version", "Version 1.2", "router> "),
                "show clock": shell_reply("show clock", "12:00", "router> "),
            },
        )
        session = TerminalSession(channel, ROUTER)

        outputs = session.run_sequence([Step("show version"), Step("show clock")], overall_timeout=5)

        assert outputs == ["Version 1.2", "12:00"]
        assert session.error is None
        assert channel.sent[-1] == "exit\n"

    def test_timeout_backfills_remaining_steps(self):
        channel = ScriptedChannel(
            greeting="router> ",
            replies={"show version": shell_reply("show version", "Version 1.2", "router> ")},
        )
        session = TerminalSession(channel, ROUTER)

        outputs = session.run_sequence(
            [Step("show version"), Step("show hang"), Step("show never")],
            overall_timeout=5,
            command_timeout=0.1,
        )

        assert outputs == ["Version 1.2", "", ""]
        assert isinstance(session.error, CommandTimeout)
        assert session.error.completed == 1
        assert session.done

    def test_channel_closed_by_peer_returns_partial_results(self):
        channel = ScriptedChannel(greeting="router> ")
        channel.closed = True
        session = TerminalSession(channel, ROUTER)

        outputs = session.run_sequence([Step("show version")], overall_timeout=5)

        assert outputs == [""]
        assert session.error is None

    def test_streaming_output_is_not_a_timeout(self):
        channel = TrickleChannel(
            greeting="router> ",
            chunks={"show log": ["show log\r\n"] + [f"entry {i}\r\n" for i in range(6)] + ["router> "]},
        )
        session = TerminalSession(channel, ROUTER)

        outputs = session.run_sequence([Step("show log")], overall_timeout=5, command_timeout=0.15)

        assert session.error is None
        assert outputs[0].splitlines() == [f"entry {i}" for i in range(6)]


class TrickleChannel(ScriptedChannel):
    """Answers a command with several chunks, each one arriving after a pause."""

    def __init__(self, greeting: str, chunks: dict[str, list[str]]):
        super().__init__(greeting)
        self.chunks = chunks

    def send(self, data: bytes) -> int:
        for chunk in self.chunks.get(data.decode().rstrip("\n"), []):
            self._pending.append(chunk.encode())
        return super().send(data)

    def recv(self, size: int) -> bytes:
        time.sleep(0.05)
        return super().recv(size)
