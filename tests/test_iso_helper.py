"""Tests for xorriso command construction and atomic repackaging."""
from __future__ import annotations

import os
import types

import pytest

import iso_helper
from autoinstall_errors import BuildFailure
from release_table import layout_for

FOCAL = layout_for("focal")
JAMMY = layout_for("jammy")


@pytest.fixture
def hybrid(tmp_path):
    efi = tmp_path / "efi.img"
    mbr = tmp_path / "hybrid-mbr.img"
    efi.write_bytes(b"\0" * 2048)
    mbr.write_bytes(b"\0" * 432)
    return types.SimpleNamespace(efi_image=str(efi), mbr_template=str(mbr))


class TestBuildCommand:
    def test_eltorito_layout(self, make_iso_tree):
        tree = make_iso_tree(legacy=True)
        cmd = iso_helper.build_command("xorriso", str(tree), "/out/x.iso",
                                       "ubuntu-autoinstall-2026-10-17", FOCAL,
                                       isohdpfx="/usr/lib/ISOLINUX/isohdpfx.bin")
        assert cmd[:6] == ["xorriso", "-as", "mkisofs", "-r", "-V",
                           "ubuntu-autoinstall-2026-10-17"]
        assert cmd[cmd.index("-b") + 1] == "isolinux/isolinux.bin"
        assert cmd[cmd.index("-isohybrid-mbr") + 1] == "/usr/lib/ISOLINUX/isohdpfx.bin"
        assert cmd[cmd.index("-e") + 1] == "boot/grub/efi.img"
        assert "-isohybrid-gpt-basdat" in cmd
        assert cmd[-3:] == ["-o", "/out/x.iso", "."]

    def test_gpt_appended_layout(self, make_iso_tree, hybrid):
        tree = make_iso_tree()
        cmd = iso_helper.build_command("xorriso", str(tree), "/out/x.iso", "label",
                                       JAMMY, hybrid=hybrid)
        assert cmd[cmd.index("--grub2-mbr") + 1] == hybrid.mbr_template
        i = cmd.index("-append_partition")
        assert cmd[i + 1:i + 4] == ["2", iso_helper.EFI_SYSTEM_PART_TYPE, hybrid.efi_image]
        assert "-appended_part_as_gpt" in cmd
        assert cmd[cmd.index("-b") + 1] == "/boot/grub/i386-pc/eltorito.img"
        assert cmd[cmd.index("-e") + 1] == "--interval:appended_partition_2:::"
        assert "-isohybrid-mbr" not in cmd

    def test_missing_boot_image(self, make_iso_tree):
        tree = make_iso_tree(legacy=True)
        (tree / "isolinux/isolinux.bin").unlink()
        with pytest.raises(BuildFailure, match="isolinux.bin"):
            iso_helper.build_command("xorriso", str(tree), "/o.iso", "l", FOCAL,
                                     isohdpfx="/isohdpfx.bin")

    def test_gpt_layout_without_hybrid_images(self, make_iso_tree):
        tree = make_iso_tree()
        with pytest.raises(BuildFailure, match="EFI partition"):
            iso_helper.build_command("xorriso", str(tree), "/o.iso", "l", JAMMY)


class TestRepackage:
    def test_success_renames_into_place(self, make_iso_tree, fake_xorriso, tmp_path):
        tree = make_iso_tree(legacy=True)
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        dest = out_dir / "ubuntu-autoinstall.iso"

        assert iso_helper.repackage(str(tree), str(dest), "label", FOCAL) == str(dest)

        assert dest.is_file()
        assert os.listdir(out_dir) == ["ubuntu-autoinstall.iso"]
        assert oct(os.stat(dest).st_mode & 0o777) == oct(0o644)
        (cmd,) = fake_xorriso["repackage"]
        assert cmd[cmd.index("-o") + 1] != str(dest)

    def test_failure_leaves_destination_untouched(self, make_iso_tree, fake_xorriso,
                                                  monkeypatch, tmp_path):
        tree = make_iso_tree(legacy=True)
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        dest = out_dir / "ubuntu-autoinstall.iso"
        dest.write_bytes(b"previous build")

        def failing_run(cmd, cwd):
            with open(cmd[cmd.index("-o") + 1], "wb") as f:
                f.write(b"half an image")
            raise BuildFailure("command failed (rc=5): xorriso: write error")

        monkeypatch.setattr(iso_helper, "_run", failing_run)
        with pytest.raises(BuildFailure):
            iso_helper.repackage(str(tree), str(dest), "label", FOCAL)

        assert dest.read_bytes() == b"previous build"
        assert os.listdir(out_dir) == ["ubuntu-autoinstall.iso"]

    def test_missing_image_leaves_nothing(self, make_iso_tree, fake_xorriso, tmp_path):
        tree = make_iso_tree()
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        with pytest.raises(BuildFailure):
            iso_helper.repackage(str(tree), str(out_dir / "x.iso"), "label", JAMMY)
        assert os.listdir(out_dir) == []
        assert fake_xorriso["repackage"] == []

    def test_rename_failure_is_build_failure(self, make_iso_tree, fake_xorriso,
                                             monkeypatch, tmp_path):
        tree = make_iso_tree(legacy=True)
        out_dir = tmp_path / "out"
        out_dir.mkdir()

        def refuse(src, dst):
            raise IsADirectoryError(21, "Is a directory", src, None, dst)

        monkeypatch.setattr(iso_helper.os, "replace", refuse)
        with pytest.raises(BuildFailure, match="could not move image into place"):
            iso_helper.repackage(str(tree), str(out_dir / "x.iso"), "label", FOCAL)
        assert os.listdir(out_dir) == []
