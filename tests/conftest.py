from __future__ import annotations

import hashlib
import os
import struct
import subprocess
import sys
import tarfile
import uuid
import zlib
from pathlib import Path

import httpx
import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

SIGNING_KEY = "843938DF228D22F7B3742BC0D94AA3F0EFE21092"
TODAY = "2026-10-17"

ISOLINUX_CFG = """\
# D-I config version 2.0
# search path for the c32 support libraries (libcom32, libutil etc.)
path
include menu.cfg
default vesamenu.c32
prompt 0
timeout 300
ui gfxboot bootlogo
"""

TXT_CFG = """\
default live
label live
  menu label ^Install Ubuntu Server
  kernel /casper/vmlinuz
  append   initrd=/casper/initrd quiet  ---
label hwe-live
  menu label ^Install Ubuntu Server with the HWE kernel
  kernel /casper/hwe-vmlinuz
  append   initrd=/casper/hwe-initrd quiet  ---
"""

GRUB_CFG = """\
set timeout=30

loadfont unicode

set menu_color_normal=white/black
set menu_color_highlight=black/light-gray

menuentry "Try or Install Ubuntu Server" {
\tset gfxpayload=keep
\tlinux\t/casper/vmlinuz  ---
\tinitrd\t/casper/initrd
}
menuentry "Ubuntu Server with the HWE kernel" {
\tset gfxpayload=keep
\tlinux\t/casper/hwe-vmlinuz  ---
\tinitrd\t/casper/hwe-initrd
}
"""

LOOPBACK_CFG = """\
menuentry "Try or Install Ubuntu Server" {
\tset gfxpayload=keep
\tlinux\t/casper/vmlinuz  iso-scan/filename=${iso_path} ---
\tinitrd\t/casper/initrd
}
"""


def _md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def _write(path: Path, content) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode()
    path.write_bytes(content)


@pytest.fixture
def make_iso_tree(tmp_path: Path):
    """Factory writing an extracted-ISO-like tree.

    make_iso_tree(dest, legacy=False, grub_cfg=None, hwe=True) -> Path
    """

    def _make(dest: Path | None = None, legacy: bool = False,
              grub_cfg: str | None = None, hwe: bool = True) -> Path:
        root = dest or tmp_path / "tree"
        grub = GRUB_CFG if grub_cfg is None else grub_cfg
        if not hwe:
            grub = grub.split('menuentry "Ubuntu Server with the HWE kernel"')[0]
        files = {
            "boot/grub/grub.cfg": grub,
            "boot/grub/loopback.cfg": LOOPBACK_CFG,
            "casper/vmlinuz": b"kernel",
            "casper/initrd": b"initrd",
            ".disk/info": "Ubuntu-Server 22.04 LTS",
        }
        if legacy:
            files.update({
                "isolinux/isolinux.cfg": ISOLINUX_CFG,
                "isolinux/txt.cfg": TXT_CFG,
                "isolinux/isolinux.bin": b"isolinux",
                "boot/grub/efi.img": b"efi",
            })
        else:
            files["boot/grub/i386-pc/eltorito.img"] = b"eltorito"
        for rel, content in files.items():
            _write(root / rel, content)
        lines = []
        for rel in sorted(files):
            data = files[rel].encode() if isinstance(files[rel], str) else files[rel]
            lines.append(f"{_md5(data)}  ./{rel}\n")
        _write(root / "md5sum.txt", "".join(lines))
        return root

    return _make


MBR_CODE = bytes((i * 7 + 3) % 256 for i in range(432))
ESP_GUID = uuid.UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B")
DATA_GUID = uuid.UUID("EBD0A0A2-B9E5-4433-87C0-68B6B72699C7")


def build_hybrid_image(path: Path, esp_start: int = 8, esp_sectors: int = 4,
                       gpt: bool = True, bad_crc: bool = False,
                       truncate_to: int | None = None) -> bytes:
    """Write a raw image with MBR boot code, a GPT and an ESP payload.

    Returns the ESP payload bytes.
    """
    total = esp_start + esp_sectors + 2
    image = bytearray(total * 512)
    image[:432] = MBR_CODE
    # one 0xEF entry in the MBR as well, pointing at the same range
    struct.pack_into("<B3sB3sII", image, 446, 0, b"\0\0\0", 0xEF, b"\0\0\0",
                     esp_start, esp_sectors)
    image[510:512] = b"\x55\xaa"

    if gpt:
        entries = bytearray(4 * 128)
        struct.pack_into("<16s16sQQQ72s", entries, 0, DATA_GUID.bytes_le,
                         uuid.uuid4().bytes_le, 64, 4000, 0,
                         "ISO9660".encode("utf-16-le"))
        struct.pack_into("<16s16sQQQ72s", entries, 128, ESP_GUID.bytes_le,
                         uuid.uuid4().bytes_le, esp_start,
                         esp_start + esp_sectors - 1, 0,
                         "Appended2".encode("utf-16-le"))
        header = bytearray(struct.pack(
            "<8sIIII QQQQ 16s QIII", b"EFI PART", 0x00010000, 92, 0, 0,
            1, total - 1, 4, total - 2, uuid.uuid4().bytes_le,
            2, 4, 128, zlib.crc32(bytes(entries)) & 0xFFFFFFFF))
        crc = zlib.crc32(bytes(header)) & 0xFFFFFFFF
        if bad_crc:
            crc ^= 0xFFFF
        struct.pack_into("<I", header, 16, crc)
        image[512:512 + len(header)] = header
        image[1024:1024 + len(entries)] = entries

    payload = bytes((b"ESP!" * (esp_sectors * 128))[:esp_sectors * 512])
    image[esp_start * 512:(esp_start + esp_sectors) * 512] = payload
    data = bytes(image)
    if truncate_to is not None:
        data = data[:truncate_to]
    path.write_bytes(data)
    return payload


@pytest.fixture
def hybrid_image(tmp_path: Path):
    """Factory: hybrid_image(**kwargs) -> (path, esp_payload)."""

    def _make(name: str = "source.iso", **kwargs):
        path = tmp_path / name
        payload = build_hybrid_image(path, **kwargs)
        return path, payload

    return _make


@pytest.fixture
def offline_client():
    """httpx client whose every request fails the test."""

    def handler(request: httpx.Request) -> httpx.Response:
        pytest.fail(f"unexpected network access: {request.url}")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


def gpg_status(*lines: str, returncode: int = 0) -> subprocess.CompletedProcess:
    stdout = "".join(f"[GNUPG:] {line}\n" for line in lines)
    return subprocess.CompletedProcess(args=["gpg"], returncode=returncode,
                                       stdout=stdout, stderr="")


def validsig(fingerprint: str = SIGNING_KEY) -> str:
    return (f"VALIDSIG {fingerprint} 2026-10-17 1792195200 0 4 0 1 10 00 "
            f"{fingerprint}")


@pytest.fixture
def fake_xorriso(monkeypatch, make_iso_tree):
    """Stand in for xorriso in extract_helper and iso_helper.

    Extraction writes a fixture tree (legacy layout when the source file
    name contains 'focal').  Repackaging writes a tar of the tree to the
    -o path, so tests can open the "image" with tarfile.  Returns a dict
    recording the calls.
    """
    import extract_helper
    import iso_helper

    calls = {"extract": [], "repackage": []}

    def extract_tree(source_path, tree):
        calls["extract"].append(source_path)
        make_iso_tree(Path(tree), legacy="focal" in os.path.basename(source_path))

    def run(cmd, cwd):
        calls["repackage"].append(list(cmd))
        output = cmd[cmd.index("-o") + 1]
        with tarfile.open(output, "w") as tf:
            tf.add(cwd, arcname=".")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(extract_helper, "extract_tree", extract_tree)
    monkeypatch.setattr(iso_helper, "_run", run)
    monkeypatch.setattr(iso_helper, "require_tool", lambda name: "/usr/bin/" + name)
    monkeypatch.setattr(iso_helper, "require_syslinux_file",
                        lambda name, search_dirs=None: "/usr/lib/ISOLINUX/" + name)
    return calls


def read_member(image: Path, rel: str) -> bytes:
    """Read a file out of an image produced by fake_xorriso."""
    with tarfile.open(image) as tf:
        member = tf.extractfile("./" + rel)
        assert member is not None, f"{rel} missing from image"
        return member.read()


def member_names(image: Path) -> set[str]:
    with tarfile.open(image) as tf:
        return {n[2:] if n.startswith("./") else n for n in tf.getnames()}
