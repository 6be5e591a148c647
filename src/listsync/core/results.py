from __future__ import annotations

import enum
import typing as t
from dataclasses import dataclass

from .errors import RemoteError

if t.TYPE_CHECKING:
    from .models import OperationRecord


@dataclass(frozen=True)
class Success:
    value: t.Any = None

    ok: t.ClassVar[bool] = True


@dataclass(frozen=True)
class Failure:
    error: RemoteError

    ok: t.ClassVar[bool] = False


RemoteResult = t.Union[Success, Failure]


class MutationStatus(str, enum.Enum):
    SUCCESS = "success"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a mutating call.

    DEFERRED means the mutation was accepted and will be completed by the
    queue processor; `operation` then holds the queued record.
    """

    status: MutationStatus
    value: t.Any = None
    error: t.Optional[RemoteError] = None
    operation: t.Optional["OperationRecord"] = None

    @property
    def ok(self) -> bool:
        return self.status is MutationStatus.SUCCESS

    @property
    def deferred(self) -> bool:
        return self.status is MutationStatus.DEFERRED

    @property
    def failed(self) -> bool:
        return self.status is MutationStatus.FAILED

    @classmethod
    def success(cls, value: t.Any = None) -> "MutationResult":
        return cls(MutationStatus.SUCCESS, value=value)

    @classmethod
    def pending(cls, operation: "OperationRecord") -> "MutationResult":
        return cls(MutationStatus.DEFERRED, operation=operation)

    @classmethod
    def failure(cls, error: RemoteError) -> "MutationResult":
        return cls(MutationStatus.FAILED, error=error)
