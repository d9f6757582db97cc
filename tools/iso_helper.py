"""Repackage a patched installer tree into a hybrid BIOS+UEFI ISO.

Two layouts, chosen by the release table:

  eltorito      isolinux El-Torito entry + isohybrid MBR template from the
                syslinux package, UEFI via boot/grub/efi.img as an
                alternate El-Torito entry (focal and earlier).
  gpt-appended  GRUB El-Torito entry, the source's own MBR boot code, and
                the source's EFI System Partition appended as GPT
                partition 2 which the UEFI El-Torito entry points at
                (jammy and later).

xorriso writes to a temporary file next to the destination, which is
renamed into place only when xorriso succeeds.
"""

import os
import subprocess
import tempfile

from _env import clean_env, require_syslinux_file, require_tool
from _log import log, log_command
from autoinstall_errors import BuildFailure
from release_table import ELTORITO, GPT_APPENDED

# GPT type GUIDs in the byte order xorriso expects
EFI_SYSTEM_PART_TYPE = "28732ac11ff8d211ba4b00a0c93ec93b"
BASIC_DATA_PART_TYPE = "a2a0d0ebe5b9334487c068b6b72699c7"

ISOLINUX_BIN = "isolinux/isolinux.bin"
ISOLINUX_CAT = "isolinux/boot.cat"
GRUB_EFI_IMG = "boot/grub/efi.img"
GRUB_ELTORITO_IMG = "boot/grub/i386-pc/eltorito.img"


def _require_in_tree(tree, rel):
    if not os.path.isfile(os.path.join(tree, rel)):
        raise BuildFailure(f"boot loader image {rel} is missing from the tree")


def eltorito_args(tree, isohdpfx):
    """mkisofs arguments for the isolinux + efi.img layout."""
    _require_in_tree(tree, ISOLINUX_BIN)
    _require_in_tree(tree, GRUB_EFI_IMG)
    return [
        "-J",
        "-b", ISOLINUX_BIN,
        "-c", ISOLINUX_CAT,
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-isohybrid-mbr", isohdpfx,
        "-boot-info-table",
        "-input-charset", "utf-8",
        "-eltorito-alt-boot",
        "-e", GRUB_EFI_IMG, "-no-emul-boot", "-isohybrid-gpt-basdat",
    ]


def gpt_appended_args(tree, hybrid):
    """mkisofs arguments for the GRUB + appended ESP layout."""
    _require_in_tree(tree, GRUB_ELTORITO_IMG)
    if hybrid is None:
        raise BuildFailure("EFI partition image was not extracted from the source")
    for path in (hybrid.mbr_template, hybrid.efi_image):
        if not os.path.isfile(path):
            raise BuildFailure(f"hybrid boot image {path} is missing")
    return [
        "--grub2-mbr", hybrid.mbr_template,
        "-partition_offset", "16",
        "--mbr-force-bootable",
        "-append_partition", "2", EFI_SYSTEM_PART_TYPE, hybrid.efi_image,
        "-appended_part_as_gpt",
        "-iso_mbr_part_type", BASIC_DATA_PART_TYPE,
        "-c", "/boot.catalog",
        "-b", "/" + GRUB_ELTORITO_IMG,
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
        "--grub2-boot-info",
        "-eltorito-alt-boot",
        "-e", "--interval:appended_partition_2:::", "-no-emul-boot",
    ]


def build_command(xorriso, tree, output, volume_label, layout, hybrid=None,
                  isohdpfx=None):
    cmd = [xorriso, "-as", "mkisofs", "-r", "-V", volume_label]
    if layout.strategy == ELTORITO:
        cmd += eltorito_args(tree, isohdpfx)
    elif layout.strategy == GPT_APPENDED:
        cmd += gpt_appended_args(tree, hybrid)
    else:
        raise BuildFailure(f"unknown image layout {layout.strategy}")
    cmd += ["-o", output, "."]
    return cmd


def _run(cmd, cwd):
    """Run xorriso, raising BuildFailure with its stderr tail on error."""
    log_command(cmd)
    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True,
                            env=clean_env())
    if result.returncode != 0:
        raise BuildFailure(
            f"command failed (rc={result.returncode}): {cmd[0]}: "
            f"{result.stderr.strip()[-500:]}")
    return result


def repackage(tree, destination, volume_label, layout, hybrid=None):
    """Build *destination* from *tree*; nothing is left behind on failure."""
    log("Repackaging extracted files into an ISO image...")
    xorriso = require_tool("xorriso")
    isohdpfx = None
    if layout.strategy == ELTORITO:
        isohdpfx = require_syslinux_file("isohdpfx.bin")

    dest_dir = os.path.dirname(os.path.abspath(destination))
    try:
        fd, tmp_output = tempfile.mkstemp(
            prefix=".%s." % os.path.basename(destination), suffix=".part",
            dir=dest_dir)
    except OSError as e:
        raise BuildFailure(f"cannot write to {dest_dir}: {e}") from e
    os.close(fd)
    try:
        cmd = build_command(xorriso, tree, tmp_output, volume_label, layout,
                            hybrid=hybrid, isohdpfx=isohdpfx)
        _run(cmd, cwd=tree)
        try:
            os.chmod(tmp_output, 0o644)
            os.replace(tmp_output, destination)
        except OSError as e:
            raise BuildFailure(f"could not move image into place at {destination}: {e}") from e
    except BaseException:
        if os.path.exists(tmp_output):
            os.unlink(tmp_output)
        raise

    size = os.path.getsize(destination)
    log(f"Repackaged into {destination} ({size / 1048576:.1f} MiB)")
    return destination
