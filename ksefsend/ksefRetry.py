import time
import logging

from ksefsend import ksefError


class ksefClock:
    """Time source for polling loops. Tests substitute a fake that only advances on sleep()."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)


class ksefPoller:
    """
    Bounded, rate-limit aware polling shared by auth, session, UPO and metadata loops.

    The attempt callable returns a (done, value) pair. HTTP 429 waits for the
    server supplied Retry-After, HTTP 404 is treated as "not visible yet" and
    retried after a short delay. Every retry counts as an attempt.
    """

    def __init__(
        self,
        clock: ksefClock = None,
        logger: logging.Logger = None,
        not_found_delay: float = 0.5,
        default_retry_after: float = 30
    ):
        self.clock = clock or ksefClock()
        self.logger = logger or logging.getLogger(__name__)
        self.not_found_delay = not_found_delay
        self.default_retry_after = default_retry_after

    def run(
        self,
        attempt,
        interval: float,
        max_wait: float = None,
        max_attempts: int = None,
        retry_on=(),
        label: str = 'poll'
    ):
        """
        Call attempt() until it reports done or a bound runs out.

        Args:
            attempt: callable returning (done, value)
            interval: seconds between regular attempts
            max_wait: wall clock bound in seconds
            max_attempts: attempt count bound
            retry_on: extra exception types retried after `interval`
            label: name used in log lines and timeout messages

        Returns:
            value of the first attempt reporting done

        Raises:
            ksefTimeout: a bound ran out; carries the last value seen
            ksefInputValidationError: neither bound was given
        """
        if max_wait is None and max_attempts is None:
            raise ksefError.ksefInputValidationError(f"{label}: max_wait or max_attempts is required")

        deadline = self.clock.monotonic() + max_wait if max_wait is not None else None
        last_value = None
        attempts = 0

        while True:
            attempts += 1
            try:
                done, value = attempt()
                if done:
                    return value
                last_value = value
                delay = interval
            except ksefError.ksefRateLimited as e:
                delay = e.retry_after if e.retry_after is not None else self.default_retry_after
                self.logger.warning(f"{label}: rate limited, waiting {delay}s")
            except ksefError.ksefNotYetVisible:
                delay = max(self.not_found_delay, interval)
                self.logger.debug(f"{label}: not visible yet, waiting {delay}s")
            except retry_on as e:
                delay = interval
                self.logger.warning(f"{label}: attempt {attempts} failed: {e}")

            if max_attempts is not None and attempts >= max_attempts:
                break
            if deadline is not None:
                remaining = deadline - self.clock.monotonic()
                if remaining <= 0:
                    break
                delay = min(delay, remaining)

            self.logger.debug(f"{label}: attempt {attempts} not finished")
            self.clock.sleep(delay)

        raise ksefError.ksefTimeout(f"{label}: gave up after {attempts} attempts", last_value=last_value)
