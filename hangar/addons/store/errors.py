from __future__ import annotations


class StoreError(RuntimeError):
    """Errors raised by the store layer before the install engine is involved."""

    status_code = 400


class CatalogLoadError(StoreError):
    status_code = 503


class AddonNotFoundError(StoreError):
    status_code = 404


class ChannelNotAvailableError(StoreError):
    status_code = 404


class InstallBusyError(StoreError):
    status_code = 409


class InstallPathNotSetError(StoreError):
    status_code = 400
