# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
from enum import Enum, auto
import time

from loguru import logger as LOG

# How often the container status is polled
DEFAULT_POLLING_INTERVAL_S = 1

# Maximum duration the all-in-one image may take to report healthy
DEFAULT_HEALTH_CHECK_TIMEOUT_S = 180

# Status strings reported by the container runtime listing, e.g.
#   "Up 12 seconds (health: starting)"
#   "Up 2 minutes (healthy)"
#   "Up 2 minutes (unhealthy)"
#   "Exited (1) 3 seconds ago"
# Only the trailing health annotation is interpreted. Without one, a running
# ("Up ...") container is unknown and anything else unreachable.
RUNNING_PREFIX = "Up "
HEALTHY_SUFFIX = " (healthy)"
STARTING_SUFFIX = " (health: starting)"


class HealthState(Enum):
    unknown = auto()  # Running, but health is not (yet) conclusive
    starting = auto()  # Health check declared, first probe still pending
    healthy = auto()  # Services accept connections
    unreachable = auto()  # Container is not running or could not be queried


class HealthCheckTimeoutError(TimeoutError):
    def __init__(self, timeout, last_state=None, last_error=None):
        msg = f"Container did not report healthy within {timeout}s (last state: {last_state.name if last_state else None})"
        if last_error is not None:
            msg += f" -> {last_error!r}"
        super().__init__(msg)
        self.timeout = timeout
        self.last_state = last_state
        self.last_error = last_error


def parse_health_state(status):
    if not status:
        return HealthState.unreachable
    if status.endswith(HEALTHY_SUFFIX):
        return HealthState.healthy
    if status.endswith(STARTING_SUFFIX):
        return HealthState.starting
    if status.startswith(RUNNING_PREFIX):
        return HealthState.unknown
    return HealthState.unreachable


def wait_for_healthy(
    get_status,
    timeout=DEFAULT_HEALTH_CHECK_TIMEOUT_S,
    poll_interval_s=DEFAULT_POLLING_INTERVAL_S,
):
    """
    Polls `get_status` (returning the container status string) until the
    container reports healthy. Failing probes count as unreachable and do not
    end the loop; only exceeding `timeout` seconds does, with a
    :py:class:`HealthCheckTimeoutError` carrying the last probe failure.
    """
    start_time = time.monotonic()
    end_time = start_time + timeout
    last_error = None
    while True:
        try:
            state = parse_health_state(get_status())
        except Exception as e:
            LOG.debug(f"Health probe failed: {e}")
            state = HealthState.unreachable
            last_error = e

        if state == HealthState.healthy:
            LOG.success(
                f"Container healthy after {time.monotonic() - start_time:.1f}s"
            )
            return state

        now = time.monotonic()
        if now >= end_time:
            LOG.error(f"Container not healthy after {timeout}s: {state.name}")
            raise HealthCheckTimeoutError(timeout, state, last_error)

        LOG.trace(f"Container health: {state.name}")
        time.sleep(min(poll_interval_s, end_time - now))
