import logging
from typing import Callable

from eksplane.errors import PollTimeoutError
from eksplane.workflow import ActivityContext

logger = logging.getLogger(__name__)


def poll_until(
    ctx: ActivityContext,
    check: Callable[[], bool],
    interval: float,
    max_attempts: int,
    description: str,
) -> int:
    """Call ``check`` on a fixed interval until it returns True.

    Terminal failures are raised by ``check`` itself. The attempt counter is
    heartbeated on every tick, so a resumed activity continues from the last
    recorded attempt instead of restarting the wait. Returns the number of
    the attempt that succeeded.
    """
    details = ctx.heartbeat_details() or {}
    attempt = int(details.get("attempt", 0))
    if attempt:
        logger.info("Resuming wait for %s at attempt %d", description, attempt)

    while attempt < max_attempts:
        attempt += 1
        ctx.heartbeat({"attempt": attempt})
        if check():
            logger.info("%s finished after %d attempt(s)", description, attempt)
            return attempt
        ctx.sleep(interval)

    # the next activity attempt starts a fresh wait
    ctx.heartbeat({"attempt": 0})
    raise PollTimeoutError(f"timed out waiting for {description} after {max_attempts} attempts")
