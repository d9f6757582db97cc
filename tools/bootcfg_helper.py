"""Rewrite the installer's boot menus for an unattended install.

Every edit is a plain text substitution on a marker the stock Ubuntu
configs are known to contain.  The kernel command line separator ``---``
is where arguments are inserted; a config that should have it but does not
means the media is not what we expect, and building an image that never
triggers autoinstall is worse than failing.
"""

import os
import re
import shutil

from _log import log, warn
from autoinstall_errors import StructuralAssumptionViolation

ISOLINUX_CFG = "isolinux/isolinux.cfg"
TXT_CFG = "isolinux/txt.cfg"
GRUB_CFG = "boot/grub/grub.cfg"
LOOPBACK_CFG = "boot/grub/loopback.cfg"

SEPARATOR = "---"
AUTOINSTALL_ARG = " autoinstall  "
NOCLOUD_DIR = "nocloud"
# isolinux passes ';' through, GRUB needs it escaped
NOCLOUD_ARG_ISOLINUX = " ds=nocloud;s=/cdrom/nocloud/  "
NOCLOUD_ARG_GRUB = " ds=nocloud\\;s=/cdrom/nocloud/  "

HWE_MARKER = "hwe-vmlinuz"
_HWE_SWAPS = (
    ("/casper/vmlinuz", "/casper/hwe-vmlinuz"),
    ("/casper/initrd", "/casper/hwe-initrd"),
)

_ISOLINUX_TIMEOUT_RE = re.compile(r"timeout\s+[0-9]+")
_GRUB_TIMEOUT_RE = re.compile(r"set timeout=.*")
_GRUB_TIMEOUT_SET_RE = re.compile(r"^\s*set timeout=", re.M)


class BootConfigSet:
    """Boot configuration files of one extracted tree, edited in memory.

    ``save()`` writes back only the files whose text changed and returns
    their tree-relative paths.
    """

    def __init__(self, tree, layout):
        self.tree = tree
        self.layout = layout
        self._original = {}
        self._text = {}
        for rel in self.kernel_configs() + self.timeout_configs():
            if rel in self._text:
                continue
            path = os.path.join(tree, rel)
            if not os.path.isfile(path):
                raise StructuralAssumptionViolation(
                    f"expected boot config {rel} is missing from the media")
            with open(path, "r") as f:
                text = f.read()
            self._original[rel] = text
            self._text[rel] = text

    def kernel_configs(self):
        """Configs whose kernel command lines get the autoinstall argument."""
        configs = [GRUB_CFG, LOOPBACK_CFG]
        if self.layout.legacy_isolinux:
            configs.insert(0, TXT_CFG)
        return configs

    def timeout_configs(self):
        configs = [GRUB_CFG]
        if self.layout.legacy_isolinux:
            configs.insert(0, ISOLINUX_CFG)
        return configs

    def text(self, rel):
        return self._text[rel]

    def set_text(self, rel, text):
        self._text[rel] = text

    def sub(self, rel, old, new):
        self._text[rel] = self._text[rel].replace(old, new)

    def insert_before_separator(self, rel, arg):
        if SEPARATOR not in self._text[rel]:
            raise StructuralAssumptionViolation(
                f"kernel argument separator '{SEPARATOR}' not found in {rel}")
        self.sub(rel, SEPARATOR, arg + SEPARATOR)

    def save(self):
        changed = []
        for rel, text in self._text.items():
            if text == self._original[rel]:
                continue
            with open(os.path.join(self.tree, rel), "w") as f:
                f.write(text)
            self._original[rel] = text
            changed.append(rel)
        return changed


def use_hwe_kernel(configs):
    """Point kernel/initrd paths at the HWE pair when the media ships one."""
    if HWE_MARKER not in configs.text(GRUB_CFG):
        warn("This source ISO does not support the HWE kernel. "
             "Proceeding with the regular kernel.")
        return False
    log("Destination ISO will use HWE kernel.")
    for rel in configs.kernel_configs():
        for old, new in _HWE_SWAPS:
            configs.sub(rel, old, new)
    return True


def add_autoinstall(configs):
    log("Adding autoinstall parameter to kernel command line...")
    for rel in configs.kernel_configs():
        configs.insert_before_separator(rel, AUTOINSTALL_ARG)


def reduce_timeouts(configs):
    """Force every boot menu timeout to 1."""
    for rel in configs.timeout_configs():
        text = configs.text(rel)
        if rel == GRUB_CFG:
            if _GRUB_TIMEOUT_SET_RE.search(text):
                text = _GRUB_TIMEOUT_RE.sub("set timeout=1", text)
            else:
                if text and not text.endswith("\n"):
                    text += "\n"
                text += "set timeout=1\n"
        else:
            text = _ISOLINUX_TIMEOUT_RE.sub("timeout 1", text)
        configs.set_text(rel, text)


def embed_answer_files(configs, user_data, meta_data=None):
    """Ship user-data/meta-data on the media and point the kernel at them."""
    log("Adding user-data and meta-data files...")
    nocloud = os.path.join(configs.tree, NOCLOUD_DIR)
    os.makedirs(nocloud, exist_ok=True)
    shutil.copyfile(user_data, os.path.join(nocloud, "user-data"))
    meta_dest = os.path.join(nocloud, "meta-data")
    if meta_data:
        shutil.copyfile(meta_data, meta_dest)
    else:
        open(meta_dest, "w").close()

    for rel in configs.kernel_configs():
        arg = NOCLOUD_ARG_ISOLINUX if rel == TXT_CFG else NOCLOUD_ARG_GRUB
        configs.insert_before_separator(rel, arg)
    log("Added data and configured kernel command line.")


def patch_boot_configs(tree, layout, hwe=False, user_data=None,
                       meta_data=None, all_in_one=False):
    """Apply every boot config edit to *tree*; return modified paths."""
    configs = BootConfigSet(tree, layout)
    if hwe:
        use_hwe_kernel(configs)
    add_autoinstall(configs)
    reduce_timeouts(configs)
    log("Added parameter to UEFI and BIOS kernel command lines.")
    if all_in_one:
        embed_answer_files(configs, user_data, meta_data)
    return configs.save()
