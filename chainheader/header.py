"""Header interface, header errors and the mandatory verification rules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

__all__ = [
    "CLOCK_DRIFT",
    "DEFAULT_HEIGHT_THRESHOLD",
    "FromFutureError",
    "Header",
    "HeaderError",
    "HeightFromFutureError",
    "KnownHeaderError",
    "NoHeadError",
    "NonAdjacentError",
    "NotFoundError",
    "UnorderedTimeError",
    "VerifyError",
    "WrongChainIDError",
    "ZeroHeaderError",
    "verify",
]

# Headers further than this above the trusted one are rejected.
# Compared against the subjective head, which is guaranteed to be non-expired.
DEFAULT_HEIGHT_THRESHOLD = 80_000  # ~ 14 days of 15 second headers

# How far into the future a new header's time may drift relative to now.
CLOCK_DRIFT = timedelta(seconds=10)


@runtime_checkable
class Header(Protocol):
    """A chain header as seen by the store and the syncer."""

    @property
    def height(self) -> int: ...

    @property
    def chain_id(self) -> str: ...

    @property
    def hash(self) -> bytes: ...

    @property
    def last_header(self) -> bytes: ...

    @property
    def time(self) -> datetime: ...

    def is_zero(self) -> bool:
        """Report whether the header is empty."""
        ...

    def verify(self, untrusted: "Header") -> None:
        """Raise if ``untrusted`` does not follow from this header."""
        ...

    def marshal_binary(self) -> bytes:
        """Serialise the header."""
        ...


class HeaderError(Exception):
    """Base class of all header errors."""

    message = "header error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)


class NotFoundError(HeaderError):
    """The requested header is not known."""

    message = "header not found"


class NoHeadError(HeaderError):
    """The store holds no head yet."""

    message = "no chain head"


class NonAdjacentError(HeaderError):
    """A header was appended that does not directly follow the head."""

    message = "non-adjacent header"

    def __init__(self, head: int, attempted: int) -> None:
        self.head = head
        self.attempted = attempted
        super().__init__(f"head {head}, attempted {attempted}")


class ZeroHeaderError(HeaderError):
    message = "zero header"


class WrongChainIDError(HeaderError):
    message = "wrong chain id"


class UnorderedTimeError(HeaderError):
    message = "unordered headers"


class FromFutureError(HeaderError):
    message = "header is from the future"


class KnownHeaderError(HeaderError):
    message = "known header"


class HeightFromFutureError(HeaderError):
    message = "header height is far from future"


class VerifyError(HeaderError):
    """Raised whenever a header fails verification.

    ``soft_failure`` means there was not enough information to conclude
    definitively whether the header is correct.
    """

    def __init__(self, reason: BaseException, soft_failure: bool = False) -> None:
        self.reason = reason
        self.soft_failure = soft_failure
        Exception.__init__(self, f"header verification failed: {reason}")


def verify(trusted, untrusted, height_threshold: int = 0) -> None:
    """Verify ``untrusted`` against ``trusted``; always raises VerifyError on failure.

    A zero ``height_threshold`` means DEFAULT_HEIGHT_THRESHOLD.
    """
    try:
        _check(trusted, untrusted, height_threshold)
    except HeaderError as exc:
        raise VerifyError(exc) from exc

    try:
        trusted.verify(untrusted)
    except Exception as exc:
        err = exc if isinstance(exc, VerifyError) else VerifyError(exc)
        # A failed non-adjacent verification does not prove the header wrong.
        if untrusted.height != trusted.height + 1:
            err.soft_failure = True
        if err is exc:
            raise
        raise err from exc


def _check(trusted, untrusted, height_threshold: int) -> None:
    if not height_threshold:
        height_threshold = DEFAULT_HEIGHT_THRESHOLD

    if untrusted is None or untrusted.is_zero():
        raise ZeroHeaderError()

    if untrusted.chain_id != trusted.chain_id:
        raise WrongChainIDError(f"'{untrusted.chain_id}' != '{trusted.chain_id}'")

    if untrusted.time < trusted.time:
        raise UnorderedTimeError(
            f"timestamp '{_format_time(untrusted.time)}' < current '{_format_time(trusted.time)}'"
        )

    now = datetime.now(untrusted.time.tzinfo)
    if untrusted.time > now + CLOCK_DRIFT:
        raise FromFutureError(
            f"timestamp '{_format_time(untrusted.time)}' > now '{_format_time(now)}', "
            f"clock_drift '{CLOCK_DRIFT.total_seconds():g}s'"
        )

    if untrusted.height <= trusted.height:
        raise KnownHeaderError(f"'{untrusted.height}' <= current '{trusted.height}'")

    # Reject headers too far ahead; essential for headers that failed
    # non-adjacent verification yet were taken as a sync target.
    if untrusted.height - trusted.height >= height_threshold:
        raise HeightFromFutureError(
            f"'{untrusted.height}' - current '{trusted.height}' >= threshold '{height_threshold}'"
        )


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    return moment.strftime("%Y-%m-%dT%H:%M:%S")