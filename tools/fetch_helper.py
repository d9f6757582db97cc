"""Locate and download the source installer image.

Daily images come from cdimage.ubuntu.com; numbered releases from
releases.ubuntu.com, where the exact filename is found by matching the
directory listing.  Downloads stream into ``<dest>.part`` and are renamed
into place only once the transfer completes, so a cached file is always
a complete one.  Existing cached files are reused without re-fetching.
"""

import os
import re
import tempfile
from dataclasses import dataclass

import httpx
from tqdm import tqdm

from _log import log, warn
from autoinstall_errors import NetworkFailure, StructuralAssumptionViolation

DAILY_URL = "https://cdimage.ubuntu.com/ubuntu-server/{codename}/daily-live/current"
RELEASE_URL = "https://releases.ubuntu.com/{codename}"

DAILY = "daily"
RELEASE = "release"

_CHUNK = 1 << 20


@dataclass
class SourceImage:
    """Where the source image lives locally and where it came from."""
    path: str
    codename: str
    channel: str
    download_url: str
    filename: str
    # date (daily) or version (release) keying the cached SHA256SUMS files
    sha_suffix: str
    explicit: bool = False


def make_client():
    """HTTP client used for every download in a run."""
    return httpx.Client(follow_redirects=True)


def release_pattern(release_type):
    """Regex matching numbered release ISO names, e.g. ubuntu-22.04.3-live-server-amd64.iso."""
    return re.compile(
        r"ubuntu-\d+\.\d+(?:\.\d+)?[^\"'<>\s/]*-"
        + re.escape(release_type)
        + r"-amd64\.iso")


def resolve_release_filename(client, url, release_type):
    """Return the first ISO name in the release directory listing at *url*."""
    log("Checking for current release...")
    try:
        response = client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise NetworkFailure(f"could not list releases at {url}: {e}") from e
    match = release_pattern(release_type).search(response.text)
    if match is None:
        raise StructuralAssumptionViolation(
            f"no '{release_type}' release ISO found in listing at {url}")
    return match.group(0)


def release_version(filename):
    """'ubuntu-22.04.3-live-server-amd64.iso' -> '22.04.3'."""
    return filename.split("-")[1]


def resolve_source(opts, client):
    """Work out which image to use, without downloading anything."""
    codename = opts.version
    if opts.use_release_iso:
        url = RELEASE_URL.format(codename=codename)
        filename = resolve_release_filename(client, url, opts.release_type)
        version = release_version(filename)
        log(f"Current release is {version}")
        return SourceImage(
            path=os.path.join(opts.cache_dir, filename),
            codename=codename,
            channel=RELEASE,
            download_url=url,
            filename=filename,
            sha_suffix=version,
        )

    url = DAILY_URL.format(codename=codename)
    default_path = os.path.join(opts.cache_dir, f"ubuntu-original-{opts.today}.iso")
    path = opts.source or default_path
    return SourceImage(
        path=path,
        codename=codename,
        channel=DAILY,
        download_url=url,
        filename=f"{codename}-live-server-amd64.iso",
        sha_suffix=opts.today,
        explicit=bool(opts.source) and path != default_path,
    )


def download(client, url, dest, desc=None):
    """Stream *url* to *dest* via a .part file; raise NetworkFailure on error."""
    # unique per download so concurrent runs sharing a cache never share a partial
    fd, part = tempfile.mkstemp(prefix=os.path.basename(dest) + ".", suffix=".part",
                                dir=os.path.dirname(os.path.abspath(dest)))
    os.close(fd)
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with open(part, "wb") as f, tqdm(
                total=total, unit="B", unit_scale=True,
                desc=desc or os.path.basename(dest), leave=False,
            ) as bar:
                for chunk in response.iter_bytes(_CHUNK):
                    f.write(chunk)
                    bar.update(len(chunk))
    except httpx.HTTPError as e:
        if os.path.exists(part):
            os.unlink(part)
        raise NetworkFailure(f"the download of {url} failed: {e}") from e
    except BaseException:
        if os.path.exists(part):
            os.unlink(part)
        raise
    os.replace(part, dest)
    return dest


def fetch_if_missing(client, url, dest, desc=None):
    """Download *url* to *dest* unless *dest* already exists.

    Returns True when a download happened.
    """
    if os.path.exists(dest):
        return False
    download(client, url, dest, desc)
    return True


def fetch_source(source: SourceImage, client, verify: bool = True):
    """Make sure the source image exists locally."""
    if source.explicit:
        log(f"Using existing {source.path} file.")
        if verify:
            warn("automatic GPG verification is enabled. If the source ISO file "
                 "is not the latest daily or release image, verification will fail!")
        return source.path

    url = f"{source.download_url}/{source.filename}"
    if not os.path.exists(source.path):
        log(f"Downloading ISO image {source.filename} for Ubuntu {source.codename.capitalize()}...")
    if fetch_if_missing(client, url, source.path, desc=source.filename):
        log(f"Downloaded and saved to {source.path}")
    else:
        log(f"Using existing {source.path} file.")
    return source.path
