from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from streamrelay.models import SendResult


class ErrorKind(str, Enum):
    """Categories of relay failures. Handlers branch on the kind, not the class."""
    CONNECTION = "connection"
    TRANSIENT = "transient"
    RECLAMATION = "reclamation"
    PARTIAL_DELIVERY = "partial_delivery"
    OVERSIZED = "oversized"
    CONFIGURATION = "configuration"


class RelayError(Exception):
    """
    Single error type raised by the relay core.

    Attributes:
        kind (ErrorKind): What went wrong.
        cause (Exception): The underlying transport/library error, if any.
        record_id (str): Originating stream record, when the error concerns one.
        result (SendResult): Partial delivery report for PARTIAL_DELIVERY errors.
    """
    def __init__(self,
                 kind: ErrorKind,
                 message: str,
                 cause: Optional[BaseException] = None,
                 record_id: Optional[str] = None,
                 result: Optional["SendResult"] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        self.record_id = record_id
        self.result = result

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.kind.value}] {self.message}: {self.cause}"
        return f"[{self.kind.value}] {self.message}"

    def is_kind(self, *kinds: ErrorKind) -> bool:
        return self.kind in kinds
