"""Run options for the autoinstall generator.

Defaults can be overridden from an INI file (``autoinstall.cfg`` in the
working directory, or ``--config``) with an ``[autoinstall]`` section::

    [autoinstall]
    cache_dir = /var/cache/autoinstall
    version = noble
    keyserver = hkp://keyserver.ubuntu.com
    signing_key = 843938DF228D22F7B3742BC0D94AA3F0EFE21092

Command-line values always win over the file.
"""

import configparser
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, Optional

from _log import warn
from autoinstall_errors import InputValidation
from release_table import DEFAULT_RELEASE, layout_for

CONFIG_FILENAME = "autoinstall.cfg"
UBUNTU_SIGNING_KEY = "843938DF228D22F7B3742BC0D94AA3F0EFE21092"
DEFAULT_KEYSERVER = "hkp://keyserver.ubuntu.com"


def read_config_defaults(config_path: Optional[str] = None) -> Dict:
    """Read generator defaults from an INI file.

    Returns:
        Dict with 'cache_dir', 'version', 'keyserver' and 'signing_key'
    """
    defaults = {
        'cache_dir': os.getcwd(),
        'version': DEFAULT_RELEASE,
        'keyserver': DEFAULT_KEYSERVER,
        'signing_key': UBUNTU_SIGNING_KEY,
    }

    if config_path:
        search_paths = [Path(config_path)]
        if not search_paths[0].is_file():
            raise InputValidation(f"config file not found: {config_path}")
    else:
        search_paths = [Path.cwd() / CONFIG_FILENAME]

    for cfg_path in search_paths:
        if not cfg_path.exists():
            continue
        try:
            config = configparser.ConfigParser()
            config.read(cfg_path)
            if config.has_section('autoinstall'):
                return {
                    key: config.get('autoinstall', key, fallback=value)
                    for key, value in defaults.items()
                }
        except (configparser.Error, ValueError) as e:
            warn(f"failed to parse {cfg_path}: {e}")

    return defaults


@dataclass
class Options:
    """Everything one pipeline run needs to know."""
    version: str = DEFAULT_RELEASE
    cache_dir: str = field(default_factory=os.getcwd)
    all_in_one: bool = False
    use_hwe_kernel: bool = False
    user_data: Optional[str] = None
    meta_data: Optional[str] = None
    verify: bool = True
    md5_checksum: bool = True
    use_release_iso: bool = False
    release_type: str = "server"
    source: Optional[str] = None
    destination: Optional[str] = None
    additional_files: Optional[str] = None
    keyserver: str = DEFAULT_KEYSERVER
    signing_key: str = UBUNTU_SIGNING_KEY
    today: str = field(default_factory=lambda: date.today().isoformat())

    @property
    def layout(self):
        return layout_for(self.version)

    @property
    def volume_label(self):
        return f"ubuntu-autoinstall-{self.today}"

    def default_destination(self):
        return os.path.join(self.cache_dir, f"ubuntu-autoinstall-{self.today}.iso")


def validate_options(opts: Options) -> Options:
    """Check required inputs and option consistency; resolve paths.

    Returns the same Options with absolute paths filled in.
    """
    layout_for(opts.version)

    if opts.all_in_one:
        if not opts.user_data:
            raise InputValidation("user-data file was not specified.")
        if not os.path.isfile(opts.user_data):
            raise InputValidation(f"user-data file could not be found: {opts.user_data}")
        if opts.meta_data and not os.path.isfile(opts.meta_data):
            raise InputValidation(f"meta-data file could not be found: {opts.meta_data}")
    elif opts.user_data or opts.meta_data:
        warn("user-data/meta-data are only embedded with --all-in-one; ignoring them.")

    if opts.use_release_iso:
        if not opts.release_type:
            raise InputValidation("--use-release-iso requires a release type (e.g. server).")
        if opts.source:
            raise InputValidation("--source cannot be combined with --use-release-iso.")

    if opts.source and not os.path.isfile(opts.source):
        raise InputValidation(f"Source ISO file could not be found: {opts.source}")

    if opts.additional_files and not os.path.isdir(opts.additional_files):
        raise InputValidation(
            f"additional files directory could not be found: {opts.additional_files}")

    if not os.path.isdir(opts.cache_dir):
        raise InputValidation(f"cache directory does not exist: {opts.cache_dir}")

    opts.cache_dir = os.path.realpath(opts.cache_dir)
    opts.destination = os.path.realpath(opts.destination or opts.default_destination())
    if opts.source:
        opts.source = os.path.realpath(opts.source)
    if not os.path.isdir(os.path.dirname(opts.destination)):
        raise InputValidation(
            f"destination directory does not exist: {os.path.dirname(opts.destination)}")
    if os.path.isdir(opts.destination):
        raise InputValidation(
            f"destination is a directory, expected an ISO file path: {opts.destination}")
    return opts
