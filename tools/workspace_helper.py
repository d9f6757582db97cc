"""Session-scoped scratch directory for one image build.

The workspace holds the extracted ISO tree, the EFI/MBR sub-images lifted
from hybrid sources and the per-run GnuPG home.  It is removed on every
exit path: normal return, exceptions, SIGINT (KeyboardInterrupt), SIGTERM
and SIGHUP (converted to SystemExit while the workspace is held) and, as a
last resort, interpreter shutdown via atexit.
"""

import atexit
import os
import shutil
import signal
import tempfile

from _log import log
from autoinstall_errors import BuildFailure

_FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _raise_exit(signum, _frame):
    raise SystemExit(128 + signum)


class Workspace:
    """An owner-only temporary directory removed exactly once."""

    def __init__(self, root):
        self.root = root
        self.tree = os.path.join(root, "tree")
        self.gnupg_home = os.path.join(root, "gnupg")
        self.efi_image = os.path.join(root, "efi.img")
        self.mbr_template = os.path.join(root, "hybrid-mbr.img")
        self._released = False
        self._old_handlers = {}

    @classmethod
    def acquire(cls, prefix="autoinstall-"):
        root = None
        try:
            root = tempfile.mkdtemp(prefix=prefix)
            ws = cls(root)
            os.makedirs(ws.tree)
        except OSError as e:
            if root is not None:
                shutil.rmtree(root, ignore_errors=True)
            raise BuildFailure(
                f"could not create temporary working directory: {e}",
                stage="workspace") from e
        ws._install_cleanup()
        log(f"Created temporary working directory {root}")
        return ws

    def _install_cleanup(self):
        atexit.register(self.release)
        for sig in _FORWARDED_SIGNALS:
            try:
                self._old_handlers[sig] = signal.signal(sig, _raise_exit)
            except ValueError:
                # signal handlers can only be set from the main thread
                pass

    def release(self):
        """Remove the workspace; later calls are no-ops."""
        if self._released:
            return
        self._released = True
        for sig, handler in self._old_handlers.items():
            signal.signal(sig, handler)
        self._old_handlers.clear()
        atexit.unregister(self.release)
        if os.path.lexists(self.root):
            shutil.rmtree(self.root, ignore_errors=True)
            log(f"Deleted temporary working directory {self.root}")

    @property
    def released(self):
        return self._released

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def acquire(prefix="autoinstall-"):
    return Workspace.acquire(prefix)


def release(workspace):
    workspace.release()
