"""
Retry helpers shared by the job store and the workers.
"""
import logging
import threading
import time

from engine.errors import DiscoveryTimeout, StoreUnavailable


def retry_delay(attempt, base_delay, max_delay):
    """
    Delay before attempt number `attempt` may be re-claimed: base * 2^(attempt-1), capped at max_delay.
    """
    if attempt < 1:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def retry_store_write(func, *args, base_delay=1.0, max_delay=30.0, stop_event=None, description="store write", **kwargs):
    """
    Keep calling `func` until it stops raising StoreUnavailable.

    A worker must not walk away from a job it could not ack or fail, otherwise the job sits
    leased until its lease runs out. The only way out without success is `stop_event`, in which
    case the last StoreUnavailable is re-raised.
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except StoreUnavailable as e:
            attempt += 1
            delay = retry_delay(attempt, base_delay, max_delay)
            logging.error(f"{description} failed (attempt {attempt}), retrying in {delay:.1f}s: {e}")
            if stop_event is not None:
                if stop_event.wait(delay):
                    logging.error(f"{description} abandoned on shutdown after {attempt} attempt(s)")
                    raise
            else:
                time.sleep(delay)


def call_with_timeout(func, timeout, *args, name="discovery-call", **kwargs):
    """
    Run `func` on a daemon thread and wait at most `timeout` seconds for it.

    There is no way to interrupt the call; on timeout the thread is left to finish on its own
    and its result is discarded.
    """
    outcome = {}

    def _target():
        try:
            outcome["result"] = func(*args, **kwargs)
        except BaseException as e:  # re-raised on the caller's thread
            outcome["error"] = e

    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise DiscoveryTimeout(f"{name} did not finish within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")
