"""Error taxonomy shared by the provisioning phases.

Every exception carries the ``result`` kind the CLI reports for it; the kind
selects the process exit code from ``cli.RESULT_CODES``.
"""

from __future__ import annotations

from typing import Sequence


class LuksMediaError(Exception):
    result = "FAIL_UNHANDLED"

    def __init__(self, message: str, *, result: str | None = None) -> None:
        super().__init__(message)
        if result:
            self.result = result


class UsageError(LuksMediaError):
    """Malformed arguments; raised before any side effect."""

    result = "FAIL_USAGE"


class NotBlockDeviceError(UsageError):
    result = "FAIL_NOT_BLOCK_DEVICE"


class DeviceTooSmallError(UsageError):
    result = "FAIL_DEVICE_TOO_SMALL"


class NotRootError(UsageError):
    result = "FAIL_NOT_ROOT"


class PreconditionError(LuksMediaError):
    """The target device is not safe to touch."""

    result = "FAIL_DEVICE_BUSY"


class DeviceMountedError(PreconditionError):
    result = "FAIL_DEVICE_MOUNTED"

    def __init__(self, device: str, mountpoints: Sequence[str]) -> None:
        self.device = device
        self.mountpoints = list(mountpoints)
        listing = ", ".join(self.mountpoints)
        super().__init__(f"{device} has mounted partitions: {listing}")


class DeviceBusyError(PreconditionError):
    result = "FAIL_DEVICE_BUSY"


class LiveDiskError(PreconditionError):
    result = "FAIL_LIVE_DISK"


class NotConfirmedError(PreconditionError):
    result = "FAIL_NOT_CONFIRMED"


class ExternalToolFailure(LuksMediaError):
    """A delegated command exited non-zero."""

    result = "FAIL_UNHANDLED"

    def __init__(
            self,
            cmd: Sequence[str],
            rc: int,
            out: str = "",
            err: str = "",
            *,
            result: str | None = None,
    ) -> None:
        self.cmd = list(cmd)
        self.rc = rc
        self.out = out or ""
        self.err = err or ""
        detail = self.err.strip() or self.out.strip() or f"exit status {rc}"
        super().__init__(f"{self.cmd[0] if self.cmd else '<empty>'} failed (rc={rc}): {detail}", result=result)


class InputMismatchError(LuksMediaError):
    """Passphrase confirmation did not match; handled by re-prompting."""


class AuthenticationError(LuksMediaError):
    result = "FAIL_AUTH"


class AlreadyFormattedError(LuksMediaError):
    result = "FAIL_LUKS"


class AlreadyOpenError(LuksMediaError):
    result = "FAIL_LUKS"


class ContainerNotOpenError(LuksMediaError):
    result = "FAIL_LVM"


class VolumeCapacityError(LuksMediaError):
    result = "FAIL_LVM"


class WaitTimeoutError(LuksMediaError):
    pass


class WaitCancelledError(LuksMediaError):
    pass


class InstallerTimeoutError(LuksMediaError):
    result = "FAIL_INSTALLER_TIMEOUT"


class KeyMaterialError(LuksMediaError):
    """The key file or its directory could not be created securely."""

    result = "FAIL_KEY_MATERIAL"


class KeyBindingError(LuksMediaError):
    """Binding failed after the key existed; passphrase unlock still works."""

    result = "FAIL_KEY_BINDING"
