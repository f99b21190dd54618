# src/wg_registry/errors.py
from __future__ import annotations


class WgConfigError(Exception):
    """Base class for every failure reported to the user."""

    exit_code = 1


class NotFound(WgConfigError):
    pass


class PermissionDenied(WgConfigError):
    pass


class AlreadyExists(WgConfigError):
    pass


class InvalidArgument(WgConfigError):
    exit_code = 2


class AddressSpaceExhausted(WgConfigError):
    pass


class DependencyFailure(WgConfigError):
    """An external tool (wg, wg-quick, systemctl, sysrc...) failed."""


class MalformedConfig(WgConfigError):
    """An interface or peer file could not be parsed."""


# Abort the whole multi-name command instead of skipping one name.
FATAL_ERRORS = (InvalidArgument, PermissionDenied)
