"""Overlay a caller-supplied directory onto the extracted ISO tree.

Overlay files replace tree files on path collision; directories merge;
symlinks are recreated as symlinks.
"""

import os
import shutil

from _log import log
from autoinstall_errors import InputValidation


def overlay_tree(overlay, output):
    """Copy everything under *overlay* into *output*, overlay winning."""
    if not os.path.isdir(overlay):
        raise InputValidation(f"overlay directory not found: {overlay}")
    copied = 0
    for dirpath, dirnames, filenames in os.walk(overlay):
        rel = os.path.relpath(dirpath, overlay)
        dest_dir = os.path.normpath(os.path.join(output, rel))
        if os.path.lexists(dest_dir) and not os.path.isdir(dest_dir):
            os.remove(dest_dir)
        os.makedirs(dest_dir, exist_ok=True)
        # os.walk lists symlinked dirs as dirs; recreate those as links
        for d in list(dirnames):
            src = os.path.join(dirpath, d)
            if os.path.islink(src):
                dirnames.remove(d)
                filenames.append(d)
        for f in filenames:
            src = os.path.join(dirpath, f)
            dst = os.path.join(dest_dir, f)
            if os.path.isdir(dst) and not os.path.islink(dst):
                shutil.rmtree(dst)
            if os.path.islink(src):
                link_target = os.readlink(src)
                if os.path.exists(dst) or os.path.islink(dst):
                    os.remove(dst)
                os.symlink(link_target, dst)
            else:
                if os.path.islink(dst):
                    os.remove(dst)
                shutil.copy2(src, dst)
            copied += 1
    return copied


def add_files(tree, additional_files):
    """No-op unless *additional_files* is set."""
    if not additional_files:
        return 0
    log("Adding additional files to the iso image...")
    copied = overlay_tree(additional_files, tree)
    log(f"Added {copied} additional files")
    return copied
