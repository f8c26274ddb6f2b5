"""topomapper command line.

Sub-commands:
  network          Add or list networks
  credential       Add or list device credentials
  scan             Crawl a network from its root device
  topology         Print the stored topology tree
  test-credential  Try one credential against one device
  history          List recent scans of a network
  logs             Print the log lines of one scan

Examples:
  topomapper network add office 10.0.0.1 --username admin --password <PW>

  topomapper credential add admin <PW> --network office

  topomapper scan office --workers 4

  topomapper topology office
"""

from __future__ import annotations

import os
import sys

from tabulate import tabulate

from topomapper import __version__, configure_logging
from topomapper import glogger

COMMANDS = {
    "network": "Add or list networks",
    "credential": "Add or list device credentials",
    "scan": "Crawl a network from its root device",
    "topology": "Print the stored topology tree",
    "test-credential": "Try one credential against one device",
    "history": "List recent scans of a network",
    "logs": "Print the log lines of one scan",
}


def _print_usage() -> None:
    print("usage: topomapper [--state FILE] [-v] <command> [options]\n")
    print("Available commands:")
    for cmd, desc in COMMANDS.items():
        print(f"  {cmd:16s}  {desc}")
    print("\nRun 'topomapper <command> --help' for command-specific options.")


def _print_startup_banner() -> None:
    startup_rows = [
        ["version", __version__],
        ["state", os.environ.get("TOPOMAPPER_STATE", "topomapper.json")],
        ["log level", os.environ.get("LOGURU_LEVEL", "INFO")],
    ]

    for var in ("GITHUB_REF", "GITHUB_SHA", "BUILDTIME"):
        val = os.environ.get(var)
        if val and not val.endswith("_is_undefined"):
            startup_rows.append([var, val])

    table_str = tabulate(startup_rows, tablefmt="mixed_grid")
    lines = table_str.split("\n")
    table_width = len(lines[0])
    title = "topomapper starting up"
    title_border = "┍" + "━" * (table_width - 2) + "┑"
    title_row = "│ " + title.center(table_width - 4) + " │"
    separator = lines[0].replace("┍", "┝").replace("┑", "┥").replace("┯", "┿")

    glogger.opt(raw=True).info(
        "\n{}\n", title_border + "\n" + title_row + "\n" + separator + "\n" + "\n".join(lines[1:])
    )


def main() -> None:
    """Main entry point: print the banner and hand over to the CLI."""
    configure_logging()
    _print_startup_banner()

    argv = sys.argv[1:]
    if not argv or argv[0] in ("-h", "--help"):
        _print_usage()
        sys.exit(0 if argv else 1)

    command = next((a for a in argv if not a.startswith("-") and a in COMMANDS), None)
    if command is None:
        print(f"topomapper: unknown command '{argv[0]}'\n", file=sys.stderr)
        _print_usage()
        sys.exit(1)

    from topomapper.cli import main as cli_main

    state = os.environ.get("TOPOMAPPER_STATE")
    if state and "--state" not in argv:
        argv = ["--state", state] + argv
    cli_main(argv)


if __name__ == "__main__":
    main()
