#!/usr/bin/env python3
"""Create fully-automated Ubuntu installation media using autoinstall.

Pipeline, each step running to completion before the next:

  1. check host dependencies
  2. resolve and download the source ISO
  3. verify it against Ubuntu's signed SHA256SUMS
  4. extract it into a private workspace
  5. patch the BIOS and UEFI boot menus
  6. overlay additional files
  7. refresh or clear md5sum.txt
  8. repackage into a hybrid BIOS+UEFI ISO

Any failure aborts the run; the workspace is removed on every exit path.
"""

from contextlib import contextmanager

import click

from _env import require_syslinux_file, require_tool
from _log import log, set_verbose
from autoinstall_config import Options, read_config_defaults, validate_options
from autoinstall_errors import AutoinstallError, BuildFailure
import bootcfg_helper
import extract_helper
import fetch_helper
import iso_helper
import md5sum_helper
import overlay_helper
import verify_helper
from release_table import ELTORITO
from workspace_helper import Workspace


@contextmanager
def stage(name):
    """Tag errors escaping the block with the stage name.

    OSError from file handling becomes BuildFailure.
    """
    try:
        yield
    except AutoinstallError as e:
        if e.stage is None:
            e.stage = name
        raise
    except OSError as e:
        raise BuildFailure(str(e), stage=name) from e


def check_dependencies(opts):
    """Fail early if a required host tool is missing."""
    log("Checking for required utilities...")
    require_tool("xorriso")
    if opts.verify:
        require_tool("gpg")
    if opts.layout.strategy == ELTORITO:
        require_syslinux_file("isohdpfx.bin")
    log("All required utilities are installed.")


def run(opts, client=None):
    """Build the autoinstall ISO described by *opts*; return its path."""
    with stage("validate"):
        opts = validate_options(opts)
        layout = opts.layout
    with stage("dependencies"):
        check_dependencies(opts)

    own_client = client is None
    if own_client:
        client = fetch_helper.make_client()
    try:
        with Workspace.acquire() as ws:
            with stage("fetch"):
                source = fetch_helper.resolve_source(opts, client)
                fetch_helper.fetch_source(source, client, verify=opts.verify)

            with stage("verify"):
                if opts.verify:
                    verify_helper.verify_source(
                        source, ws, client, opts.cache_dir,
                        opts.signing_key, opts.keyserver)
                else:
                    log("Skipping verification of source ISO.")

            with stage("extract"):
                hybrid = extract_helper.extract(source.path, ws, layout)

            with stage("patch"):
                modified = bootcfg_helper.patch_boot_configs(
                    ws.tree, layout,
                    hwe=opts.use_hwe_kernel,
                    user_data=opts.user_data,
                    meta_data=opts.meta_data,
                    all_in_one=opts.all_in_one,
                )

            with stage("additional-files"):
                overlay_helper.add_files(ws.tree, opts.additional_files)

            with stage("checksums"):
                md5sum_helper.regenerate(ws.tree, modified, enabled=opts.md5_checksum)

            with stage("repackage"):
                iso_helper.repackage(
                    ws.tree, opts.destination, opts.volume_label, layout,
                    hybrid=hybrid)
    finally:
        if own_client:
            client.close()
    return opts.destination


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option('-a', '--all-in-one', is_flag=True,
              help='Bake user-data and meta-data into the generated ISO. By default '
                   'systems must boot with a CIDATA volume attached.')
@click.option('-e', '--use-hwe-kernel', is_flag=True,
              help='Boot the generated ISO with the hardware enablement (HWE) kernel.')
@click.option('-u', '--user-data', type=click.Path(), help='Path to user-data file. Required with -a.')
@click.option('-m', '--meta-data', type=click.Path(),
              help='Path to meta-data file. An empty file is used with -a if omitted.')
@click.option('-k', '--no-verify', is_flag=True,
              help='Disable GPG verification of the source ISO file.')
@click.option('-c', '--no-md5', is_flag=True, help='Disable MD5 checksum on boot.')
@click.option('-V', '--version', 'version', default=None,
              help='Ubuntu release codename (default: jammy).')
@click.option('-r', '--use-release-iso', 'release_type', default=None, metavar='TYPE',
              help='Use the current release ISO of TYPE (e.g. server) instead of the daily ISO.')
@click.option('-s', '--source', type=click.Path(), help='Source ISO file.')
@click.option('-d', '--destination', type=click.Path(), help='Destination ISO file.')
@click.option('-A', '--additional-files', type=click.Path(),
              help='Directory whose contents are copied into the ISO root.')
@click.option('--cache-dir', type=click.Path(), default=None,
              help='Where downloaded ISOs, SHA256SUMS and the signing keyring are kept.')
@click.option('--config', 'config_path', type=click.Path(), default=None,
              help='INI file with an [autoinstall] section of defaults.')
@click.option('-v', '--verbose', is_flag=True, help='Print external commands as they run.')
def main(all_in_one, use_hwe_kernel, user_data, meta_data, no_verify, no_md5,
         version, release_type, source, destination, additional_files,
         cache_dir, config_path, verbose):
    """Create fully-automated Ubuntu installation media using autoinstall."""
    set_verbose(verbose)
    log("Starting up...")
    try:
        defaults = read_config_defaults(config_path)
        opts = Options(
            version=version or defaults['version'],
            cache_dir=cache_dir or defaults['cache_dir'],
            all_in_one=all_in_one,
            use_hwe_kernel=use_hwe_kernel,
            user_data=user_data,
            meta_data=meta_data,
            verify=not no_verify,
            md5_checksum=not no_md5,
            use_release_iso=release_type is not None,
            release_type="server" if release_type is None else release_type,
            source=source,
            destination=destination,
            additional_files=additional_files,
            keyserver=defaults['keyserver'],
            signing_key=defaults['signing_key'],
        )
        run(opts)
    except AutoinstallError as e:
        click.echo(f"error: [{e.stage or 'setup'}] {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("error: interrupted", err=True)
        raise SystemExit(130)
    log("Completed.")


if __name__ == '__main__':
    main()
