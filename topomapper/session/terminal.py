"""Interactive terminal automation as a synchronous state machine.

A ``TerminalSession`` wraps an interactive shell channel and runs an ordered
list of ``Step`` objects against it. Incoming bytes accumulate in a buffer;
after every chunk the last line is matched against the patterns the current
state expects. Login, password and mode-escalation prompts are handled by
``LoginStep`` entries before the first command is sent.

The machine is driven either by ``run_sequence`` (reads from the channel) or
by ``feed`` (canned chunks, used by the tests).
"""

from __future__ import annotations

import codecs
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from loguru import logger

from topomapper.exceptions import CommandTimeout

BUFFER_SIZE = 65535
READ_DELAY = 0.2

_ANSI_CSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_ANSI_OTHER = re.compile(r"\x1b[^\[]")
_INIT_RUN = re.compile(r"^7+", re.MULTILINE)
_JUNK = re.compile(r"[\r\x00\x08]")


def strip_control_chars(text: str, strip_init_run: bool = False) -> str:
    """Remove ANSI escape sequences, carriage returns, NUL and backspace.

    ``strip_init_run`` also drops the run of ``7`` characters some switches
    emit at the start of a line while initialising the terminal.
    """
    text = _ANSI_CSI.sub("", text)
    text = _ANSI_OTHER.sub("", text)
    text = _JUNK.sub("", text)
    if strip_init_run:
        text = _INIT_RUN.sub("", text)
    return text


class SessionState(str, Enum):
    AWAITING_LOGIN = "awaiting-login"
    AWAITING_PASSWORD = "awaiting-password"
    AWAITING_PROMPT = "awaiting-prompt"
    STEADY = "steady"
    CLOSED = "closed"


@dataclass(frozen=True)
class Step:
    """Send ``send`` and wait until the last line matches one of ``prompts``.

    Empty ``prompts`` means the profile's ready prompt.
    """

    send: str
    prompts: tuple[re.Pattern[str], ...] = ()


@dataclass(frozen=True)
class LoginStep:
    """Wait for ``expect``, then send ``send``.

    ``optional`` steps are skipped when the ready prompt shows up first, e.g.
    an ``enable`` escalation on a device that already starts privileged.
    """

    expect: re.Pattern[str]
    send: str
    state: SessionState = SessionState.AWAITING_PROMPT
    secret: bool = False
    optional: bool = False


@dataclass(frozen=True)
class ShellProfile:
    """Prompt shapes of one CLI dialect."""

    ready: re.Pattern[str]
    pager: Optional[re.Pattern[str]] = None
    exit_command: str = "exit"
    strip_init_run: bool = False
    term: str = "xterm"
    width: int = 200
    height: int = 200


@dataclass
class _Progress:
    outputs: list[str] = field(default_factory=list)
    current: str = ""
    login_index: int = 0
    step_index: int = -1


class TerminalSession:
    """Run command steps over one interactive shell channel."""

    def __init__(
        self,
        channel: Any,
        profile: ShellProfile,
        host: str = "",
    ):
        self.channel = channel
        self.profile = profile
        self.host = host
        self.state = SessionState.AWAITING_PROMPT
        self.error: Optional[CommandTimeout] = None
        self._steps: list[Step] = []
        self._login: list[LoginStep] = []
        self._buffer = ""
        self._progress = _Progress()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # ── state machine ─────────────────────────────────────────────────

    def begin(self, steps: Sequence[Step], login_steps: Sequence[LoginStep] = ()) -> None:
        """Reset the machine for a new step sequence."""
        self._steps = list(steps)
        self._login = list(login_steps)
        self._buffer = ""
        self._progress = _Progress()
        self._decoder.reset()
        self.error = None
        self.state = self._login[0].state if self._login else SessionState.AWAITING_PROMPT

    @property
    def done(self) -> bool:
        return self.state == SessionState.CLOSED

    def feed(self, chunk: str | bytes) -> None:
        """Consume one chunk of shell output and advance the machine."""
        if self.done:
            return
        if isinstance(chunk, bytes):
            # multi-byte characters may straddle recv boundaries
            chunk = self._decoder.decode(chunk)
        if self.state == SessionState.STEADY:
            self._progress.current += chunk
            self._advance_steady()
        else:
            self._buffer += chunk
            self._advance_login()

    def results(self) -> list[str]:
        """Captured output per step, back-filled with empty strings."""
        outputs = list(self._progress.outputs)
        outputs.extend([""] * (len(self._steps) - len(outputs)))
        return outputs

    def _advance_login(self) -> None:
        last = _last_line(strip_control_chars(self._buffer, self.profile.strip_init_run))
        progress = self._progress
        while progress.login_index < len(self._login):
            step = self._login[progress.login_index]
            if step.expect.search(last):
                self._debug(f"{step.state.value}: matched {step.expect.pattern!r}")
                progress.login_index += 1
                self._buffer = ""
                self._send(step.send, secret=step.secret)
                if progress.login_index < len(self._login):
                    self.state = self._login[progress.login_index].state
                else:
                    self.state = SessionState.AWAITING_PROMPT
                return
            if step.optional and self.profile.ready.search(last):
                progress.login_index += 1
                continue
            return
        if self.profile.ready.search(last):
            self._debug("Initial prompt detected")
            self.state = SessionState.STEADY
            self._buffer = ""
            self._send_next()

    def _advance_steady(self) -> None:
        progress = self._progress
        clean = strip_control_chars(progress.current, self.profile.strip_init_run)
        pager = self.profile.pager
        if pager is not None and pager.search(clean.rstrip()):
            progress.current = pager.sub("", progress.current)
            self._send(" ", newline=False)
            return
        if "\n" not in clean:
            return
        step = self._steps[progress.step_index]
        prompts = step.prompts or (self.profile.ready,)
        last = _last_line(clean)
        if not any(p.search(last) for p in prompts):
            return
        lines = clean.split("\n")
        if lines and step.send.strip() and step.send.strip() in lines[0]:
            lines = lines[1:]
        if lines and any(p.search(lines[-1]) for p in prompts):
            lines = lines[:-1]
        if pager is not None:
            lines = [pager.sub("", line) for line in lines]
        output = "\n".join(lines).strip("\n")
        progress.outputs.append(output)
        self._debug(f"Command {progress.step_index + 1}/{len(self._steps)} complete: {len(output)} bytes")
        self._send_next()

    def _send_next(self) -> None:
        progress = self._progress
        progress.step_index += 1
        progress.current = ""
        if progress.step_index < len(self._steps):
            self._send(self._steps[progress.step_index].send)
            return
        self._debug("All commands complete, exiting shell")
        if self.profile.exit_command:
            self._send(self.profile.exit_command)
        self.state = SessionState.CLOSED

    def _send(self, text: str, secret: bool = False, newline: bool = True) -> None:
        if not secret and text.strip():
            self._debug(f"send {text!r}")
        payload = text + "\n" if newline else text
        try:
            self.channel.send(payload.encode("utf-8"))
        except OSError as e:
            logger.warning(f"{self.host}: shell send failed: {e}")
            self.state = SessionState.CLOSED

    def _debug(self, message: str) -> None:
        logger.debug(f"{self.host}: {message}")

    # ── channel driver ────────────────────────────────────────────────

    def run_sequence(
        self,
        steps: Sequence[Step],
        overall_timeout: float = 45.0,
        command_timeout: float = 10.0,
        login_steps: Sequence[LoginStep] = (),
    ) -> list[str]:
        """Run ``steps`` over the channel and return one output per step.

        A prompt that does not appear within ``command_timeout`` (or the
        whole sequence exceeding ``overall_timeout``) stops the sequence:
        ``self.error`` is set to a ``CommandTimeout`` and remaining steps
        come back as empty strings. A channel closed by the device is
        handled the same way, without an error.
        """
        self.begin(steps, login_steps)
        start = time.monotonic()
        last_progress = start

        while not self.done:
            now = time.monotonic()
            if now - last_progress > command_timeout or now - start > overall_timeout:
                completed = len(self._progress.outputs)
                self.error = CommandTimeout(
                    f"No prompt after {now - last_progress:.1f}s (state={self.state.value}, "
                    f"{completed}/{len(self._steps)} commands complete)",
                    completed=completed,
                )
                logger.warning(f"{self.host}: {self.error}")
                self.state = SessionState.CLOSED
                break
            if self.channel.recv_ready():
                chunk = self.channel.recv(BUFFER_SIZE)
                if not chunk:
                    self._closed_by_peer()
                    break
                self.feed(chunk)
                last_progress = time.monotonic()
            elif self.channel.closed or self.channel.exit_status_ready():
                self._closed_by_peer()
                break
            else:
                time.sleep(READ_DELAY)

        return self.results()

    def _closed_by_peer(self) -> None:
        self._debug(f"Shell closed with {len(self._progress.outputs)} results")
        self.state = SessionState.CLOSED

    def close(self) -> None:
        try:
            self.channel.close()
        except Exception as e:
            logger.debug(f"{self.host}: ignoring error on shell close: {e}")
        self.state = SessionState.CLOSED


def _last_line(text: str) -> str:
    return text.rsplit("\n", 1)[-1]
