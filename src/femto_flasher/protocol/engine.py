"""
Bootloader Protocol Engine

Executes framed commands against the bootloader and detects resets.

This module provides:
- The command error taxonomy
- A bounded retry combinator driven by a RetryPolicy
- ProtocolEngine.execute(): send frame, await ack (with retries), await result
- ProtocolEngine.wait_for_reset(): the two-byte reset handshake
- Reset reason decoding

Command exchange:
    HOST -> [r0 | r1 | z_low | z_high | cmd | checksum]
    DEV  -> ack byte ('@' or 'A' depending on revision), or 'W' on bad checksum
    DEV  -> result byte

A lost ack is recovered by injecting one filler byte (so the device's
framing state advances), discarding whatever the device answers to the
frame the filler completed, and resending. A lost result byte cannot be
recovered; the engine refuses all further commands afterwards.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import Callable, List, Optional, Tuple, TypeVar

from .frame import Frame
from .transport import Transport, TransportError
from ..models.registry import ProtocolProfile, get_profile, DEFAULT_PROFILE

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILLER_BYTE = b"\x00"


class ProtocolError(Exception):
    """Base exception for bootloader command failures"""
    pass


class ChecksumRejected(ProtocolError):
    """Device replied with the checksum-error byte"""
    pass


class AckTimeout(ProtocolError):
    """No acknowledge byte arrived within the window"""
    pass


class UnexpectedReply(ProtocolError):
    """Device replied with a byte that is neither ack nor checksum error"""

    def __init__(self, byte: int):
        self.byte = byte
        super().__init__(f"Unexpected reply 0x{byte:02X}")


class RetriesExhausted(ProtocolError):
    """
    Every attempt of a command failed.

    Attributes:
        failures: One exception per failed attempt, in order
    """

    def __init__(self, failures: List[ProtocolError]):
        self.failures = list(failures)
        kinds = ", ".join(type(f).__name__ for f in self.failures)
        super().__init__(
            f"Command failed after {len(self.failures)} attempts ({kinds})"
        )

    @property
    def last(self) -> Optional[ProtocolError]:
        return self.failures[-1] if self.failures else None


class ResultTimeout(ProtocolError):
    """Command was acknowledged but its result byte never arrived"""
    pass


class ConnectionPoisoned(ProtocolError):
    """Engine refused a command after an unrecoverable failure"""
    pass


class MalformedReset(ProtocolError):
    """Reset reason byte has a non-zero high nibble"""

    def __init__(self, reason: int):
        self.reason = reason
        super().__init__(f"Strange reset reason 0x{reason:02X}")


class OperationCancelled(ProtocolError):
    """Cancellation was requested"""
    pass


class FailureKind(Enum):
    """Recoverable per-attempt failure classes."""
    CHECKSUM = "checksum"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


def classify_failure(exc: Exception) -> Optional[FailureKind]:
    """Map an attempt failure to a retryable kind, or None if fatal."""
    if isinstance(exc, ChecksumRejected):
        return FailureKind.CHECKSUM
    if isinstance(exc, AckTimeout):
        return FailureKind.TIMEOUT
    if isinstance(exc, UnexpectedReply):
        return FailureKind.UNEXPECTED
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Ack retry policy: one ack timeout (seconds) per attempt.

    At 38400 baud a 6-byte frame takes ~1.6ms on the wire, so 20ms is
    already a generous first window.
    """
    ack_timeouts: Tuple[float, ...] = (0.020, 0.040, 0.080)

    @property
    def attempts(self) -> int:
        return len(self.ack_timeouts)


@dataclass(frozen=True)
class Timing:
    """Timeouts (seconds) outside the ack retry loop."""
    result_timeout: float = 0.100
    reset_poll_timeout: float = 0.200
    ready_timeout: float = 0.010
    drain_timeout: float = 0.050


def retry_bounded(
    operation: Callable[[int, float], T],
    policy: RetryPolicy,
    classify: Callable[[Exception], Optional[FailureKind]] = classify_failure,
    on_failure: Optional[Callable[[int, FailureKind, ProtocolError], None]] = None,
) -> T:
    """
    Run operation(attempt_number, timeout) until it succeeds or the policy
    runs out of attempts.

    Failures that classify() maps to None propagate immediately.

    Raises:
        RetriesExhausted: If every attempt failed with a retryable error
    """
    failures: List[ProtocolError] = []
    for number, timeout in enumerate(policy.ack_timeouts, start=1):
        try:
            return operation(number, timeout)
        except ProtocolError as exc:
            kind = classify(exc)
            if kind is None:
                raise
            failures.append(exc)
            if on_failure:
                on_failure(number, kind, exc)
    raise RetriesExhausted(failures)


class ResetCause(IntFlag):
    """Reset cause flags reported by the bootloader."""
    POWER_ON = 0x01
    EXTERNAL = 0x02
    BROWN_OUT = 0x04
    WATCHDOG = 0x08


_CAUSE_LABELS = [
    (ResetCause.POWER_ON, "Power On"),
    (ResetCause.EXTERNAL, "External"),
    (ResetCause.BROWN_OUT, "Brown-out"),
    (ResetCause.WATCHDOG, "Watchdog"),
]


@dataclass(frozen=True)
class ResetEvent:
    """Reset reported by the bootloader on entry."""
    reason: int

    @classmethod
    def from_byte(cls, reason: int) -> "ResetEvent":
        """
        Raises:
            MalformedReset: If the high nibble is set
        """
        if reason & 0xF0:
            raise MalformedReset(reason)
        return cls(reason)

    @property
    def causes(self) -> ResetCause:
        return ResetCause(self.reason & 0x0F)

    @property
    def app_missing(self) -> bool:
        """Bootloader found no application to start."""
        return self.reason == 0

    def describe(self) -> List[str]:
        """Human-readable cause lines."""
        if self.app_missing:
            return ["no app to be started"]
        return [label for flag, label in _CAUSE_LABELS if self.causes & flag]


@dataclass
class EngineStats:
    """Counters accumulated over the engine's lifetime."""
    frames_sent: int = 0
    fillers_sent: int = 0
    checksum_errors: int = 0
    ack_timeouts: int = 0
    unexpected_replies: int = 0
    bytes_discarded: int = 0
    retries_exhausted: int = 0
    commands_completed: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class ProtocolEngine:
    """
    Single owner of the bootloader connection.

    Commands are strictly sequential: a frame is never sent before the
    result of the previous one has been consumed.

    Example:
        engine = ProtocolEngine(transport)
        event = engine.wait_for_reset()
        value = engine.execute(Frame.build(CMD_READ_FLASH, z=0x0000))
    """

    def __init__(
        self,
        transport: Transport,
        profile: Optional[ProtocolProfile] = None,
        policy: Optional[RetryPolicy] = None,
        timing: Optional[Timing] = None,
    ):
        self.transport = transport
        self.profile = profile or get_profile(DEFAULT_PROFILE)
        self.policy = policy or RetryPolicy()
        self.timing = timing or Timing()
        self.stats = EngineStats()
        self._healthy = True
        self._failure: Optional[str] = None
        self._cancel = threading.Event()

    @property
    def healthy(self) -> bool:
        return self._healthy

    @property
    def failure_reason(self) -> Optional[str]:
        """Why the engine became unhealthy, if it did."""
        return self._failure

    def request_cancel(self) -> None:
        """
        Ask the engine to stop.

        Honoured at the next reset poll or before the next command; a
        command already in flight runs to completion.
        """
        self._cancel.set()

    def clear_cancel(self) -> None:
        self._cancel.clear()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def close(self) -> None:
        """Close the transport; the engine is unusable afterwards."""
        self.transport.close()
        if self._healthy:
            self._healthy = False
            self._failure = "connection closed"
            logger.debug("Connection closed")

    def _poison(self, reason: str) -> None:
        self._healthy = False
        self._failure = reason
        logger.error(f"Connection unusable: {reason}")

    def _check_usable(self) -> None:
        if not self._healthy:
            raise ConnectionPoisoned(f"Connection unusable: {self._failure}")
        if self._cancel.is_set():
            raise OperationCancelled("Cancelled by user")

    # -- transport wrappers: any transport failure is fatal -----------------

    def _send(self, data: bytes) -> None:
        try:
            written = self.transport.write(data)
        except TransportError as e:
            self._poison(str(e))
            raise
        if written is not None and written != len(data):
            self._poison(f"incomplete write ({written}/{len(data)} bytes)")
            raise TransportError(
                f"Incomplete write: sent {written}/{len(data)} bytes"
            )

    def _ready(self, timeout: float) -> bool:
        try:
            return self.transport.read_ready(timeout)
        except TransportError as e:
            self._poison(str(e))
            raise

    def _read(self) -> int:
        try:
            return self.transport.read_byte()
        except TransportError as e:
            self._poison(str(e))
            raise

    def _drain(self, timeout: float) -> bytes:
        try:
            return self.transport.drain(timeout)
        except TransportError as e:
            self._poison(str(e))
            raise

    # -- command execution --------------------------------------------------

    def _attempt(self, frame: Frame, number: int, ack_timeout: float) -> None:
        wire = frame.finalize(self.profile.seed)
        self._send(wire)
        self.stats.frames_sent += 1

        if not self._ready(ack_timeout):
            # Resynchronize the device's byte counter before resending
            self._send(FILLER_BYTE)
            self.stats.fillers_sent += 1
            # The filler may complete a frame the device then answers
            junk = self._drain(self.timing.drain_timeout)
            if junk:
                self.stats.bytes_discarded += len(junk)
                logger.warning(f"Discarded {len(junk)} stray bytes after filler: {junk.hex().upper()}")
            raise AckTimeout(
                f"No ack within {ack_timeout * 1000:.0f}ms (attempt {number})"
            )

        reply = self._read()
        if reply == self.profile.ack_byte:
            return
        if reply == self.profile.checksum_error_byte:
            raise ChecksumRejected(f"Checksum rejected (attempt {number})")
        raise UnexpectedReply(reply)

    def _record_failure(self, number: int, kind: FailureKind, exc: ProtocolError) -> None:
        if kind is FailureKind.CHECKSUM:
            self.stats.checksum_errors += 1
        elif kind is FailureKind.TIMEOUT:
            self.stats.ack_timeouts += 1
        else:
            self.stats.unexpected_replies += 1
        logger.warning(f"{exc}: retry required")

    def execute(self, frame: Frame) -> int:
        """
        Send one command and return its result byte.

        Args:
            frame: Command to execute; its checksum is recomputed here

        Returns:
            Result byte reported by the device

        Raises:
            RetriesExhausted: No valid ack within the retry policy
                (connection remains usable)
            ResultTimeout: Result byte lost (connection becomes unusable)
            ConnectionPoisoned: Engine already unusable
            OperationCancelled: Cancellation requested before sending
            TransportError: Serial I/O failed (connection becomes unusable)
        """
        self._check_usable()

        try:
            retry_bounded(
                lambda number, timeout: self._attempt(frame, number, timeout),
                self.policy,
                on_failure=self._record_failure,
            )
        except RetriesExhausted as e:
            self.stats.retries_exhausted += 1
            logger.error(f"{frame}: {e}")
            raise

        if not self._ready(self.timing.result_timeout):
            self._poison(f"result of {frame} never arrived")
            raise ResultTimeout(f"Communication timeout waiting for result of {frame}")

        result = self._read()
        self.stats.commands_completed += 1
        return result

    # -- reset handshake ----------------------------------------------------

    def wait_for_reset(self, on_idle: Optional[Callable[[], None]] = None) -> ResetEvent:
        """
        Wait until the device announces that it entered the bootloader.

        The device sends a reason byte followed by the ready marker. The
        loop has no bound; it ends on a valid handshake or when
        request_cancel() is called.

        Args:
            on_idle: Called each time a poll window passes with no data

        Returns:
            Decoded ResetEvent

        Raises:
            OperationCancelled: If cancellation was requested
            ConnectionPoisoned: Engine already unusable
        """
        ready = self.profile.ready_byte
        candidate: Optional[int] = None

        while True:
            self._check_usable()

            if candidate is None:
                if not self._ready(self.timing.reset_poll_timeout):
                    if on_idle:
                        on_idle()
                    continue
                candidate = self._read()
                if candidate == ready:
                    logger.debug("Ignoring stray ready marker")
                    candidate = None
                    continue

            if not self._ready(self.timing.ready_timeout):
                logger.debug(f"No ready marker after 0x{candidate:02X}")
                candidate = None
                continue

            marker = self._read()
            if marker != ready:
                # Not a handshake; the follow-up byte may start the real one
                logger.warning(f"Discarding reset byte 0x{candidate:02X} (followed by 0x{marker:02X})")
                candidate = marker
                continue

            try:
                event = ResetEvent.from_byte(candidate)
            except MalformedReset as e:
                logger.warning(f"{e}, still waiting")
                candidate = None
                continue

            logger.info(f"Reset detected: {', '.join(event.describe()) or 'no cause flags'}")
            return event
