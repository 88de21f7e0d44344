"""
External collaborator interfaces consumed by the saga.

Neither is implemented here.  Tests supply fakes; production supplies a
wallet signer and a client for the private transfer rail.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, Union, runtime_checkable

from payroll_execution.domain.types import (
    BatchAuthorization,
    PaymentInstruction,
    ProgressEvent,
    TransferOutcome,
)

RailEvent = Union[ProgressEvent, TransferOutcome]


@runtime_checkable
class Signer(Protocol):
    """Signing capability held by the owner of a real private key."""

    def sign(self, message: bytes) -> bytes:
        ...


@runtime_checkable
class TransferRail(Protocol):
    """The private transfer rail.

    ``submit_batch`` returns a finite stream.  Every submitted payment is
    expected to yield exactly one TransferOutcome; ProgressEvents may be
    interleaved in any order.  Raising before any outcome means the rail
    refused the whole batch; adapters raise RailRejectedError for that.
    """

    def submit_batch(
        self,
        payments: Sequence[PaymentInstruction],
        authorization: BatchAuthorization,
    ) -> Iterable[RailEvent]:
        ...
