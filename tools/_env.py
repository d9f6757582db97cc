"""Shared environment and tool discovery for the autoinstall helpers.

External tools (xorriso, gpg) parse their own output in the C locale and
must not pick up the caller's GnuPG agent or keyring settings.  Start from a
whitelist of host vars, pin the locale, and let each helper add what it needs
on top.
"""

import os
import shutil

from autoinstall_errors import DependencyMissing

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "PATH",
    "TMPDIR", "TEMP", "TMP",
    "TERM",
    "http_proxy", "https_proxy", "no_proxy",
    "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY",
})

# Vars pinned to fixed values so tool output is parseable.
_LOCALE_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
}

# Search path for the isolinux hybrid MBR template (Debian/Ubuntu first).
SYSLINUX_DIRS = [
    "/usr/lib/ISOLINUX",
    "/usr/lib/syslinux/bios",
    "/usr/share/syslinux",
    "/usr/lib/syslinux",
]

# Tool -> package that provides it on Ubuntu, for the install hint.
_PACKAGES = {
    "xorriso": "xorriso",
    "gpg": "gpg",
    "isohdpfx.bin": "isolinux",
}


def clean_env(**extra):
    """Return a clean env dict for subprocess env= parameter.

    Copies only whitelisted vars from the host, then applies the locale
    pins.  Keyword arguments are layered on top.
    """
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_LOCALE_PINS)
    env.update(extra)
    return env


def find_tool(name):
    """Find a tool on PATH, return its absolute path or None."""
    return shutil.which(name)


def find_syslinux_file(name, search_dirs=None):
    """Search common syslinux paths for a file."""
    for d in search_dirs or SYSLINUX_DIRS:
        p = os.path.join(d, name)
        if os.path.isfile(p):
            return p
    return None


def _missing(name):
    package = _PACKAGES.get(name, name)
    return DependencyMissing(
        f"{name} is not installed. On Ubuntu, install the '{package}' package.")


def require_tool(name):
    path = find_tool(name)
    if path is None:
        raise _missing(name)
    return path


def require_syslinux_file(name, search_dirs=None):
    path = find_syslinux_file(name, search_dirs)
    if path is None:
        raise _missing(name)
    return path
