"""Terminal sessions: SSH transport and the interactive shell state machine."""

from topomapper.session.terminal import LoginStep, SessionState, ShellProfile, Step, TerminalSession, strip_control_chars
from topomapper.session.transport import BaseTransport, SSHTransport, open_session

__all__ = [
    "BaseTransport",
    "SSHTransport",
    "open_session",
    "TerminalSession",
    "SessionState",
    "ShellProfile",
    "Step",
    "LoginStep",
    "strip_control_chars",
]
