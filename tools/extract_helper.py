"""Unpack a source installer image into the workspace.

The ISO9660 tree is extracted with xorriso as the invoking user, then made
owner-writable so the boot configuration can be edited in place.  For
releases whose media boot UEFI from a GPT-appended partition, the EFI
System Partition and the MBR boot code are also lifted out of the raw
image; the repackager puts them back.
"""

import os
import shutil
import stat
import subprocess
from dataclasses import dataclass

from _env import clean_env, require_tool
from _log import log, log_command
from autoinstall_errors import BuildFailure
from partition_table import (
    Partition,
    copy_mbr_template,
    copy_partition,
    find_efi_partition,
)

# El-Torito boot images xorriso exposes as a pseudo directory.
BOOT_BLOB_DIR = "[BOOT]"


@dataclass
class HybridImages:
    """Sub-images lifted out of a GPT-appended source."""
    efi_image: str
    mbr_template: str
    partition: Partition


def extract_tree(source_path, tree):
    """Extract the whole ISO filesystem of *source_path* into *tree*."""
    xorriso = require_tool("xorriso")
    os.makedirs(tree, exist_ok=True)
    cmd = [
        xorriso,
        "-uid", str(os.getuid()),
        "-gid", str(os.getgid()),
        "-osirrox", "on",
        "-indev", source_path,
        "-extract", "/", tree,
    ]
    log_command(cmd)
    result = subprocess.run(cmd, capture_output=True, text=True, env=clean_env())
    if result.returncode != 0:
        raise BuildFailure(
            f"xorriso could not extract {source_path} "
            f"(rc={result.returncode}): {result.stderr.strip()[-500:]}")


def make_writable(tree):
    """chmod -R u+w, without following symlinks."""
    for dirpath, dirnames, filenames in os.walk(tree):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                continue
            mode = os.lstat(path).st_mode
            os.chmod(path, stat.S_IMODE(mode) | stat.S_IWUSR)
    mode = os.stat(tree).st_mode
    os.chmod(tree, stat.S_IMODE(mode) | stat.S_IWUSR)


def remove_boot_blobs(tree):
    path = os.path.join(tree, BOOT_BLOB_DIR)
    if os.path.lexists(path):
        shutil.rmtree(path)


def extract_hybrid_images(source_path, workspace):
    """Lift the EFI System Partition and hybrid MBR out of *source_path*."""
    log("Extracting EFI images from image...")
    esp = find_efi_partition(source_path)
    copy_partition(source_path, esp, workspace.efi_image)
    copy_mbr_template(source_path, workspace.mbr_template)
    log(f"Extracted EFI images (start sector {esp.start}, {esp.sectors} sectors)")
    return HybridImages(workspace.efi_image, workspace.mbr_template, esp)


def extract(source_path, workspace, layout):
    """Extract *source_path* for a release with the given layout.

    Returns HybridImages for GPT-appended layouts, otherwise None.
    """
    log("Extracting ISO image...")
    extract_tree(source_path, workspace.tree)
    make_writable(workspace.tree)
    remove_boot_blobs(workspace.tree)
    log(f"Extracted to {workspace.tree}")
    if layout.hybrid_partition:
        return extract_hybrid_images(source_path, workspace)
    return None
