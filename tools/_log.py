"""Timestamped progress output shared by the autoinstall helpers.

Everything goes to stderr so stdout stays clean for callers that capture it.
"""

import shlex
from datetime import datetime

import click

_verbose = False


def set_verbose(enabled):
    """Echo external commands before running them."""
    global _verbose
    _verbose = bool(enabled)


def log(msg):
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    click.echo(f"[{stamp}] {msg}", err=True)


def warn(msg):
    log(f"warning: {msg}")


def log_command(cmd):
    if _verbose:
        log("+ " + " ".join(shlex.quote(str(c)) for c in cmd))
