"""Authenticate the source image against Ubuntu's signed SHA256SUMS.

The manifest and its detached signature are cached per sha suffix; the
signing key is cached as a standalone keyring named after its pinned
fingerprint.  Cached material is reused but the signature is re-checked
on every run, inside a GnuPG home that lives in the run's workspace.
The cached keyring is copied into that home first so gpg never writes
to the cache.
"""

import hashlib
import os
import shutil
import subprocess
import tempfile

from _env import clean_env, require_tool
from _log import log, log_command
from autoinstall_errors import IntegrityFailure, NetworkFailure
from fetch_helper import fetch_if_missing


def manifest_paths(cache_dir, sha_suffix):
    """Return (manifest, signature) cache paths for *sha_suffix*."""
    manifest = os.path.join(cache_dir, f"SHA256SUMS-{sha_suffix}")
    return manifest, manifest + ".gpg"


def keyring_path(cache_dir, fingerprint):
    return os.path.join(cache_dir, f"{fingerprint}.keyring")


def sha256_file(path):
    """Compute SHA256 of a single file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _gpg(gnupg_home, args):
    gpg = require_tool("gpg")
    cmd = [gpg, "--batch", "--homedir", gnupg_home] + args
    log_command(cmd)
    return subprocess.run(
        cmd, capture_output=True, text=True,
        env=clean_env(GNUPGHOME=gnupg_home),
    )


def _ensure_home(gnupg_home):
    os.makedirs(gnupg_home, mode=0o700, exist_ok=True)


def fetch_manifest(client, download_url, cache_dir, sha_suffix):
    """Download SHA256SUMS and SHA256SUMS.gpg unless cached."""
    manifest, signature = manifest_paths(cache_dir, sha_suffix)
    if os.path.exists(manifest) and os.path.exists(signature):
        log(f"Using existing SHA256SUMS-{sha_suffix} & SHA256SUMS-{sha_suffix}.gpg files.")
        return manifest, signature
    log("Downloading SHA256SUMS & SHA256SUMS.gpg files...")
    fetch_if_missing(client, f"{download_url}/SHA256SUMS", manifest)
    fetch_if_missing(client, f"{download_url}/SHA256SUMS.gpg", signature)
    return manifest, signature


def fetch_signing_key(gnupg_home, cache_dir, fingerprint, keyserver):
    """Receive the pinned key into the cached keyring unless it exists."""
    keyring = keyring_path(cache_dir, fingerprint)
    if os.path.exists(keyring):
        log(f"Using existing Ubuntu signing key saved in {keyring}")
        return keyring

    log("Downloading and saving Ubuntu signing key...")
    _ensure_home(gnupg_home)
    # private scratch dir per run; gpg also leaves a "~" backup next to it
    part_dir = tempfile.mkdtemp(prefix=os.path.basename(keyring) + ".", suffix=".part",
                                dir=cache_dir)
    try:
        part = os.path.join(part_dir, "keyring")
        result = _gpg(gnupg_home, [
            "-q", "--no-default-keyring", "--keyring", part,
            "--keyserver", keyserver, "--recv-keys", fingerprint,
        ])
        if result.returncode != 0 or not os.path.exists(part):
            raise NetworkFailure(
                f"could not fetch signing key {fingerprint} from {keyserver}: "
                f"{result.stderr.strip()}")
        os.replace(part, keyring)
    finally:
        shutil.rmtree(part_dir, ignore_errors=True)
    log(f"Downloaded and saved to {keyring}")
    return keyring


def parse_status(status_text):
    """Return (valid_fingerprints, bad_signature) from gpg --status-fd output.

    VALIDSIG lines carry the signing (sub)key fingerprint first and the
    primary key fingerprint last; both are collected.
    """
    valid = set()
    bad = False
    for line in status_text.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] != "[GNUPG:]":
            continue
        keyword = parts[1]
        if keyword == "VALIDSIG" and len(parts) >= 3:
            valid.add(parts[2].upper())
            if len(parts) >= 12:
                valid.add(parts[-1].upper())
        elif keyword == "BADSIG":
            bad = True
    return valid, bad


def verify_signature(gnupg_home, keyring, manifest, signature, fingerprint):
    """Check *signature* over *manifest* was made by the pinned key."""
    _ensure_home(gnupg_home)
    work_keyring = os.path.join(gnupg_home, "ubuntu.keyring")
    shutil.copyfile(keyring, work_keyring)
    result = _gpg(gnupg_home, [
        "--no-default-keyring", "--keyring", work_keyring,
        "--status-fd", "1", "--verify", signature, manifest,
    ])
    valid, bad = parse_status(result.stdout)
    if bad or fingerprint.upper() not in valid:
        raise IntegrityFailure("Verification of SHA256SUMS signature failed.")


def verify_digest(image_path, manifest):
    """The image's SHA-256 must appear verbatim in the manifest text."""
    digest = sha256_file(image_path)
    with open(manifest, "r", errors="replace") as f:
        text = f.read()
    if digest not in text:
        raise IntegrityFailure(f"Verification of ISO digest failed ({digest}).")
    return digest


def verify_source(source, workspace, client, cache_dir, fingerprint, keyserver):
    """Run the full verification chain; raise IntegrityFailure on mismatch."""
    manifest, signature = fetch_manifest(
        client, source.download_url, cache_dir, source.sha_suffix)
    keyring = fetch_signing_key(workspace.gnupg_home, cache_dir, fingerprint, keyserver)
    log(f"Verifying {source.path} integrity and authenticity...")
    verify_signature(workspace.gnupg_home, keyring, manifest, signature, fingerprint)
    verify_digest(source.path, manifest)
    log("Verification succeeded.")
