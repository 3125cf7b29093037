"""
Observer Errors

Exception hierarchy shared by the ledger, indexer and API layers.
"""

from typing import Optional


class ObserverError(Exception):
    """Base class for all observer errors."""
    pass


class ConfigError(ObserverError):
    """Raised when configuration is missing or invalid. Fatal at startup."""
    pass


class LedgerError(ObserverError):
    """Raised when the ledger returns something the observer cannot use."""
    pass


class TransientLedgerError(LedgerError):
    """Raised when a ledger fetch fails in a way that may succeed on retry."""
    pass


class ProjectionError(ObserverError):
    """Raised when a decoded event cannot be applied to the store."""

    fault_kind = "projection_error"

    def __init__(
        self,
        message: str,
        block_height: Optional[int] = None,
        log_index: Optional[int] = None
    ):
        self.block_height = block_height
        self.log_index = log_index
        super().__init__(message)


class VolumeOutOfRange(ProjectionError):
    """Raised when an event carries a volume the store cannot represent."""

    fault_kind = "volume_out_of_range"

    def __init__(
        self,
        barcode: str,
        volume: int,
        limit: int,
        block_height: Optional[int] = None,
        log_index: Optional[int] = None
    ):
        self.barcode = barcode
        self.volume = volume
        self.limit = limit
        super().__init__(
            f"Volume {volume} for {barcode} exceeds the storable maximum {limit}",
            block_height=block_height,
            log_index=log_index
        )


class ConservationViolation(ProjectionError):
    """Raised when a transfer exceeds the source holder's recorded volume."""

    fault_kind = "conservation_violation"

    def __init__(
        self,
        barcode: str,
        holder: str,
        requested: int,
        available: int,
        block_height: Optional[int] = None,
        log_index: Optional[int] = None
    ):
        self.barcode = barcode
        self.holder = holder
        self.requested = requested
        self.available = available
        super().__init__(
            f"Transfer of {requested} units of {barcode} from {holder} "
            f"exceeds recorded volume {available}",
            block_height=block_height,
            log_index=log_index
        )
