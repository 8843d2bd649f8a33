class ReconciliationError(Exception):
    status_code = 500


class InvalidScanRequest(ReconciliationError, ValueError):
    status_code = 422


class ManifestNotFound(ReconciliationError):
    status_code = 404

    def __init__(self, day) -> None:
        super().__init__(f"no manifest found for {day}")
        self.day = day


class ScanRecordNotFound(ReconciliationError):
    status_code = 404


class BarcodeNotInManifest(ReconciliationError):
    status_code = 404


class PersistenceError(ReconciliationError):
    """A transaction failed and was rolled back. Safe for the caller to retry."""

    status_code = 503


class StoreUnavailable(ReconciliationError):
    """The backing store could not be read to refill a cache entry."""

    status_code = 503
