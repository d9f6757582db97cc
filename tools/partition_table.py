"""Read the partition table of a hybrid ISO image directly from its bytes.

Hybrid Ubuntu media carry an MBR in sector 0 and a GPT whose header sits at
LBA 1.  Only what the image rebuild needs is parsed: the location of the EFI
System Partition, and the MBR boot code preceding the partition entries.
Sectors are 512 bytes.
"""

import struct
import uuid
import zlib
from dataclasses import dataclass

from autoinstall_errors import StructuralAssumptionViolation

SECTOR_SIZE = 512
# Boot code area of the MBR that precedes the disk signature and partition table.
MBR_TEMPLATE_SIZE = 432

EFI_SYSTEM_GUID = uuid.UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B")
MBR_EFI_TYPE = 0xEF

_GPT_SIGNATURE = b"EFI PART"
# signature, revision, header size, header crc, reserved, current lba,
# backup lba, first usable, last usable, disk guid, entries lba,
# entry count, entry size, entries crc
_GPT_HEADER_FMT = "<8sIIII QQQQ 16s QIII"
_GPT_ENTRY_FMT = "<16s16sQQQ72s"
_MBR_ENTRY_FMT = "<B3sB3sII"
_MBR_TABLE_OFFSET = 446
_MBR_SIGNATURE = b"\x55\xaa"


@dataclass(frozen=True)
class Partition:
    """A partition as (start sector, sector count)."""
    start: int
    sectors: int
    name: str = ""

    @property
    def offset(self):
        return self.start * SECTOR_SIZE

    @property
    def size(self):
        return self.sectors * SECTOR_SIZE


def _read_at(f, offset, size):
    f.seek(offset)
    return f.read(size)


def _gpt_esp(f):
    """Return the ESP from a valid GPT, or None when there is no usable GPT."""
    header_size = struct.calcsize(_GPT_HEADER_FMT)
    raw = _read_at(f, SECTOR_SIZE, SECTOR_SIZE)
    if len(raw) < header_size or raw[:8] != _GPT_SIGNATURE:
        return None
    (_sig, _rev, hdr_size, hdr_crc, _resv, _cur, _backup, _first, _last,
     _guid, entries_lba, count, entry_size, _entries_crc) = struct.unpack_from(
        _GPT_HEADER_FMT, raw, 0)
    if hdr_size < header_size or hdr_size > SECTOR_SIZE:
        return None
    check = bytearray(raw[:hdr_size])
    check[16:20] = b"\x00\x00\x00\x00"
    if zlib.crc32(bytes(check)) & 0xFFFFFFFF != hdr_crc:
        return None
    if entry_size < struct.calcsize(_GPT_ENTRY_FMT):
        return None

    entries = _read_at(f, entries_lba * SECTOR_SIZE, count * entry_size)
    for i in range(len(entries) // entry_size):
        (type_guid, _part_guid, first_lba, last_lba, _attrs,
         name) = struct.unpack_from(_GPT_ENTRY_FMT, entries, i * entry_size)
        if uuid.UUID(bytes_le=type_guid) != EFI_SYSTEM_GUID:
            continue
        if last_lba < first_lba:
            continue
        label = name.decode("utf-16-le", errors="replace").rstrip("\x00")
        return Partition(first_lba, last_lba - first_lba + 1, label)
    return None


def _mbr_esp(f):
    sector = _read_at(f, 0, SECTOR_SIZE)
    if len(sector) < SECTOR_SIZE or sector[510:512] != _MBR_SIGNATURE:
        return None
    entry_size = struct.calcsize(_MBR_ENTRY_FMT)
    for i in range(4):
        (_status, _chs_first, ptype, _chs_last, lba,
         sectors) = struct.unpack_from(
            _MBR_ENTRY_FMT, sector, _MBR_TABLE_OFFSET + i * entry_size)
        if ptype == MBR_EFI_TYPE and sectors:
            return Partition(lba, sectors)
    return None


def find_efi_partition(image_path):
    """Locate the EFI System Partition, preferring the GPT over the MBR."""
    try:
        with open(image_path, "rb") as f:
            esp = _gpt_esp(f) or _mbr_esp(f)
    except OSError as e:
        raise StructuralAssumptionViolation(
            f"cannot read partition table of {image_path}: {e}") from e
    if esp is None:
        raise StructuralAssumptionViolation(
            f"no EFI System Partition found in {image_path}")
    return esp


def copy_partition(image_path, partition, dest):
    """Copy exactly the partition's sector range into *dest*."""
    remaining = partition.size
    with open(image_path, "rb") as src, open(dest, "wb") as out:
        src.seek(partition.offset)
        while remaining:
            chunk = src.read(min(remaining, 1 << 20))
            if not chunk:
                break
            out.write(chunk)
            remaining -= len(chunk)
    if remaining:
        raise StructuralAssumptionViolation(
            f"{image_path} ends {remaining} bytes before the end of its "
            f"EFI System Partition")
    return dest


def copy_mbr_template(image_path, dest):
    """Copy the first 432 bytes (MBR boot code) into *dest*."""
    with open(image_path, "rb") as src:
        data = src.read(MBR_TEMPLATE_SIZE)
    if len(data) != MBR_TEMPLATE_SIZE:
        raise StructuralAssumptionViolation(
            f"{image_path} is too short to carry a hybrid MBR")
    with open(dest, "wb") as out:
        out.write(data)
    return dest
