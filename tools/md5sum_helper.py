"""Keep the media's md5sum.txt consistent with the patched tree.

casper's boot-time integrity check reads ``md5sum.txt`` at the root of the
media, one ``<md5>  ./<path>`` line per file.  Either the lines for the
files we modified are refreshed, or the whole manifest is emptied, which
turns the check off.
"""

import hashlib
import os

from _log import log, warn

MD5SUM_TXT = "md5sum.txt"


def md5_file(path):
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def update_manifest_text(text, digests):
    """Rewrite lines whose path is exactly one of *digests*' keys.

    *digests* maps ``./relative/path`` to the new hex digest.  Lines are
    ``<digest><whitespace><path>``; anything else passes through unchanged.
    """
    out = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        parts = body.split(None, 1)
        if len(parts) == 2 and parts[1] in digests:
            body = f"{digests[parts[1]]}  {parts[1]}"
        out.append(body + ending)
    return "".join(out)


def update_checksums(tree, modified):
    """Refresh md5sum.txt entries for the tree-relative paths in *modified*."""
    manifest = os.path.join(tree, MD5SUM_TXT)
    if not os.path.isfile(manifest):
        warn(f"{MD5SUM_TXT} not found in the media; nothing to update.")
        return {}
    log(f"Updating {manifest} with hashes of modified files...")
    digests = {}
    for rel in modified:
        path = os.path.join(tree, rel)
        if os.path.isfile(path):
            digests["./" + rel] = md5_file(path)
    with open(manifest, "r") as f:
        text = f.read()
    new_text = update_manifest_text(text, digests)
    if new_text != text:
        with open(manifest, "w") as f:
            f.write(new_text)
    log("Updated hashes.")
    return digests


def clear_checksums(tree):
    """Empty md5sum.txt, disabling the installer's self-check."""
    log("Clearing MD5 hashes...")
    with open(os.path.join(tree, MD5SUM_TXT), "w"):
        pass
    log("Cleared hashes.")


def regenerate(tree, modified, enabled=True):
    if enabled:
        return update_checksums(tree, modified)
    clear_checksums(tree)
    return {}
