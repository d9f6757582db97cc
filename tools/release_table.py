"""Supported Ubuntu releases and the media layout each one ships.

Adding or dropping a release only touches ``RELEASES``; the helpers branch
on the ``ReleaseLayout`` attributes, never on codenames.
"""

from dataclasses import dataclass

from autoinstall_errors import InputValidation

ELTORITO = "eltorito"
GPT_APPENDED = "gpt-appended"


@dataclass(frozen=True)
class ReleaseLayout:
    """How a release's installer media is laid out."""
    strategy: str
    # isolinux/txt.cfg and isolinux/isolinux.cfg carry the BIOS menu
    legacy_isolinux: bool
    # EFI System Partition and hybrid MBR must be lifted out of the source
    hybrid_partition: bool


_ELTORITO_LAYOUT = ReleaseLayout(
    strategy=ELTORITO, legacy_isolinux=True, hybrid_partition=False)
_GPT_LAYOUT = ReleaseLayout(
    strategy=GPT_APPENDED, legacy_isolinux=False, hybrid_partition=True)

RELEASES = {
    "bionic": _ELTORITO_LAYOUT,
    "focal": _ELTORITO_LAYOUT,
    "groovy": _ELTORITO_LAYOUT,
    "hirsute": _ELTORITO_LAYOUT,
    "impish": _ELTORITO_LAYOUT,
    "jammy": _GPT_LAYOUT,
    "kinetic": _GPT_LAYOUT,
    "lunar": _GPT_LAYOUT,
    "mantic": _GPT_LAYOUT,
    "noble": _GPT_LAYOUT,
}

DEFAULT_RELEASE = "jammy"


def layout_for(codename):
    """Return the ReleaseLayout for *codename* or raise InputValidation."""
    try:
        return RELEASES[codename]
    except KeyError:
        supported = ", ".join(sorted(RELEASES))
        raise InputValidation(
            f"unsupported Ubuntu release '{codename}' (supported: {supported})"
        ) from None
